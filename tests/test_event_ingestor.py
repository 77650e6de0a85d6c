from __future__ import annotations

import json

import pytest

from settlebot.domain.models import LifecycleStatus, PayoutStatus
from settlebot.services.event_ingestor import EventIngestor

SECRET = "whsec_test_0123456789"
AUTH = f"Bearer {SECRET}"
PLAYER1 = "0x1111111111111111111111111111111111111111"


def _body(payload: object) -> bytes:
    return json.dumps(payload).encode("utf-8")


@pytest.fixture
def ingestor(harness) -> EventIngestor:
    return EventIngestor(store=harness.store, pipeline=harness.pipeline, webhook_secret=SECRET)


def test_empty_secret_is_rejected(harness) -> None:
    with pytest.raises(ValueError):
        EventIngestor(store=harness.store, pipeline=harness.pipeline, webhook_secret="")


@pytest.mark.parametrize("authorization", [None, "", "Bearer wrong", SECRET, f"Basic {SECRET}"])
def test_requests_without_the_shared_secret_are_unauthorized(ingestor, authorization) -> None:
    response = ingestor.handle(authorization, _body({"id": "dh-1001", "finished": True}))

    assert response.status_code == 401


@pytest.mark.parametrize(
    "raw_body",
    [b"not json", b"\xff\xfe", _body([1, 2]), _body({"type": "match_ended"})],
)
def test_unreadable_payloads_are_bad_requests(ingestor, raw_body: bytes) -> None:
    response = ingestor.handle(AUTH, raw_body)

    assert response.status_code == 400


def test_untracked_match_is_acknowledged(ingestor, harness) -> None:
    response = ingestor.handle(AUTH, _body({"id": "dh-unknown", "finished": True}))

    assert response.status_code == 200
    assert response.body["note"] == "match_not_tracked"
    assert harness.ledger.calls == []


def test_match_ended_pays_winner_and_records_audit_event(ingestor, harness) -> None:
    harness.create_match("1001")

    response = ingestor.handle(
        AUTH,
        _body({"id": "dh-1001", "eventId": "evt-1", "type": "match_ended", "winner": "team1"}),
    )

    assert response.status_code == 200
    assert response.body["outcome"] == "paid"
    record = harness.store.get("1001")
    assert record is not None
    assert record.payout_status is PayoutStatus.PAID
    assert record.winner_address == PLAYER1
    assert record.payout_event_id == "evt-1"
    assert json.loads(record.hosting_status_snapshot or "{}")["winner"] == "team1"
    events = harness.store.list_events("1001")
    assert [(event["source"], event["event_id"]) for event in events] == [("webhook", "evt-1")]


def test_duplicate_delivery_is_idempotent(ingestor, harness) -> None:
    harness.create_match("1001")
    body = _body({"id": "dh-1001", "eventId": "evt-1", "finished": True, "winner": "team1"})

    first = ingestor.handle(AUTH, body)
    second = ingestor.handle(AUTH, body)

    assert first.body["outcome"] == "paid"
    assert second.status_code == 200
    assert second.body["outcome"] == "reconciled"
    assert harness.ledger.call_count("settle") == 1
    assert len(harness.store.list_events("1001")) == 1


def test_cancellation_refunds_players(ingestor, harness) -> None:
    harness.create_match("2002")

    response = ingestor.handle(AUTH, _body({"id": "dh-2002", "cancel_reason": "MISSING_PLAYERS"}))

    assert response.body["outcome"] == "refunded"
    record = harness.store.get("2002")
    assert record is not None
    assert record.payout_status is PayoutStatus.REFUNDED


def _started(*steam_ids: str) -> bytes:
    return _body(
        {
            "id": "dh-3003",
            "type": "match_started",
            "players": [{"steam_id_64": steam_id, "connected": True} for steam_id in steam_ids],
        }
    )


def test_match_started_marks_live_once_both_players_connect(ingestor, harness) -> None:
    harness.create_match("3003", lifecycle_status=LifecycleStatus.DEPOSITING)

    response = ingestor.handle(AUTH, _started("76561198000000001", "76561198000000002"))

    assert response.status_code == 200
    assert response.body["type"] == "match_started"
    record = harness.store.get("3003")
    assert record is not None
    assert record.lifecycle_status is LifecycleStatus.LIVE
    assert record.match_started_at == harness.store.now()
    assert harness.ledger_writes() == []


def test_match_started_with_one_player_keeps_lifecycle(ingestor, harness) -> None:
    harness.create_match("3003", lifecycle_status=LifecycleStatus.DEPOSITING)

    ingestor.handle(AUTH, _started("76561198000000001", "76561198000000001"))

    record = harness.store.get("3003")
    assert record is not None
    assert record.lifecycle_status is LifecycleStatus.DEPOSITING


class _ExplodingPipeline:
    def run(self, *args, **kwargs):
        raise RuntimeError("database is locked")


def test_processing_errors_are_acknowledged(harness) -> None:
    harness.create_match("1001")
    ingestor = EventIngestor(
        store=harness.store, pipeline=_ExplodingPipeline(), webhook_secret=SECRET
    )

    response = ingestor.handle(AUTH, _body({"id": "dh-1001", "finished": True, "winner": "team1"}))

    assert response.status_code == 200
    assert response.body["note"] == "processing_error"
