from __future__ import annotations

import hmac
import json
import logging
from dataclasses import dataclass, field
from typing import Any

from settlebot.domain.events import (
    HostingEvent,
    MalformedEventError,
    MatchStartedEvent,
    decision_for_event,
    parse_hosting_event,
)
from settlebot.domain.models import EventSource, LifecycleStatus
from settlebot.logging_context import with_logging_context
from settlebot.persistence.match_store import MatchStore
from settlebot.services.settlement_pipeline import SettlementPipeline

logger = logging.getLogger(__name__)

_MIN_CONNECTED_PLAYERS_FOR_LIVE = 2


@dataclass(frozen=True)
class IngestResponse:
    status_code: int
    body: dict[str, Any] = field(default_factory=dict)


class EventIngestor:
    """Push path: authenticates hosting-provider events and feeds the pipeline.

    Anything other than a bad secret or an unreadable payload is acknowledged
    with 200 so the provider does not retry business-level no-ops.
    """

    def __init__(
        self,
        *,
        store: MatchStore,
        pipeline: SettlementPipeline,
        webhook_secret: str,
    ) -> None:
        if not webhook_secret:
            raise ValueError("webhook_secret must not be empty")
        self._store = store
        self._pipeline = pipeline
        self._expected_authorization = f"Bearer {webhook_secret}"

    def is_authorized(self, authorization: str | None) -> bool:
        if authorization is None:
            return False
        return hmac.compare_digest(
            authorization.strip().encode("utf-8"),
            self._expected_authorization.encode("utf-8"),
        )

    def handle(self, authorization: str | None, raw_body: bytes) -> IngestResponse:
        if not self.is_authorized(authorization):
            logger.warning("webhook_unauthorized")
            return IngestResponse(401, {"error": "Unauthorized"})
        try:
            payload = json.loads(raw_body)
        except ValueError:
            return IngestResponse(400, {"error": "Invalid JSON"})
        try:
            event = parse_hosting_event(payload)
        except MalformedEventError as exc:
            logger.warning("webhook_malformed_event", extra={"extra": {"error_message": str(exc)}})
            return IngestResponse(400, {"error": str(exc)})
        try:
            return self.ingest(event)
        except Exception as exc:  # noqa: BLE001
            logger.exception(
                "webhook_processing_failed",
                extra={
                    "extra": {
                        "correlation_id": event.correlation_id,
                        "error_type": type(exc).__name__,
                    }
                },
            )
            return IngestResponse(200, {"received": True, "note": "processing_error"})

    def ingest(self, event: HostingEvent) -> IngestResponse:
        record = self._store.find_by_correlation_id(event.correlation_id)
        if record is None:
            logger.info(
                "webhook_match_not_tracked",
                extra={
                    "extra": {
                        "correlation_id": event.correlation_id,
                        "event_type": event.event_type,
                    }
                },
            )
            return IngestResponse(200, {"received": True, "note": "match_not_tracked"})

        with with_logging_context(match_id=record.match_id):
            self._store.append_event(
                record.match_id,
                source=EventSource.WEBHOOK,
                event_type=event.event_type,
                event_id=event.dedupe_id,
                payload=event.payload,
            )
            self._store.record_snapshot(record.match_id, event.payload)

            decision = decision_for_event(event)
            if decision is None:
                if isinstance(event, MatchStartedEvent):
                    self._handle_started(record.match_id, event)
                return IngestResponse(200, {"received": True, "type": event.event_type})

            result = self._pipeline.run(
                record.match_id,
                decision,
                source=EventSource.WEBHOOK,
                event_id=event.dedupe_id,
            )
            return IngestResponse(
                200,
                {"received": True, "outcome": result.outcome.value, "reason": result.reason},
            )

    def _handle_started(self, match_id: str, event: MatchStartedEvent) -> None:
        connected = event.connected_player_count
        if connected < _MIN_CONNECTED_PLAYERS_FOR_LIVE:
            logger.info(
                "match_started_ignored_missing_players",
                extra={"extra": {"match_id": match_id, "connected_players": connected}},
            )
            return
        moved = self._store.set_lifecycle(
            match_id, LifecycleStatus.LIVE, match_started_at=self._store.now()
        )
        logger.info(
            "match_marked_live",
            extra={"extra": {"match_id": match_id, "updated": moved}},
        )
