from __future__ import annotations

import httpx
import pytest

from settlebot.adapters.hosting import DatHostHttpClient, match_status_from_payload
from settlebot.domain.events import HostingMatchState
from settlebot.domain.models import HostingProviderError


def _client(handler, sleeps: list[float] | None = None) -> DatHostHttpClient:
    return DatHostHttpClient(
        username="ops@example.com",
        password="hunter2",
        transport=httpx.MockTransport(handler),
        sleep_fn=(sleeps.append if sleeps is not None else lambda _s: None),
    )


def test_get_match_status_parses_ended_match() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"id": "dh-1", "finished": True, "winner": "team1"})

    status = _client(handler).get_match_status("dh-1")

    assert status.state is HostingMatchState.ENDED
    assert status.winner_team == "team1"
    assert status.raw["id"] == "dh-1"
    assert seen[0].method == "GET"
    assert seen[0].url.path == "/api/0.1/cs2-matches/dh-1"
    assert seen[0].headers["Authorization"].startswith("Basic ")


def test_missing_match_maps_to_not_found() -> None:
    status = _client(lambda request: httpx.Response(404, text="not found")).get_match_status("x")

    assert status.state is HostingMatchState.NOT_FOUND


@pytest.mark.parametrize(
    ("payload", "state"),
    [
        ({"status": "cancelled"}, HostingMatchState.CANCELLED),
        ({"cancel_reason": "MISSING_PLAYERS"}, HostingMatchState.CANCELLED),
        ({"status": "ended", "winner": "team2"}, HostingMatchState.ENDED),
        ({"status": "live"}, HostingMatchState.IN_PROGRESS),
        ({}, HostingMatchState.IN_PROGRESS),
    ],
)
def test_match_status_from_payload(payload: dict, state: HostingMatchState) -> None:
    assert match_status_from_payload(payload).state is state


def test_server_errors_are_retried() -> None:
    calls = {"n": 0}
    sleeps: list[float] = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls["n"] += 1
        if calls["n"] == 1:
            return httpx.Response(503, headers={"Retry-After": "1"})
        return httpx.Response(200, json={"status": "ended", "winner": "team2"})

    status = _client(handler, sleeps).get_match_status("dh-1")

    assert status.state is HostingMatchState.ENDED
    assert calls["n"] == 2
    assert sleeps == [1.0]


def test_persistent_server_errors_raise_after_retries() -> None:
    calls = {"n": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        calls["n"] += 1
        return httpx.Response(502)

    with pytest.raises(HostingProviderError) as exc_info:
        _client(handler).get_match_status("dh-1")

    assert exc_info.value.status_code == 502
    assert calls["n"] == 4


def test_transport_errors_are_retried_then_raised() -> None:
    calls = {"n": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        calls["n"] += 1
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(HostingProviderError):
        _client(handler).get_match_status("dh-1")

    assert calls["n"] == 4


def test_client_errors_are_not_retried_and_body_is_redacted() -> None:
    calls = {"n": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        calls["n"] += 1
        return httpx.Response(401, text='{"error": "bad auth", "password": "hunter2hunter2"}')

    with pytest.raises(HostingProviderError) as exc_info:
        _client(handler).get_match_status("dh-1")

    assert calls["n"] == 1
    assert exc_info.value.status_code == 401
    assert "hunter2hunter2" not in str(exc_info.value)


def test_invalid_json_is_a_provider_error() -> None:
    with pytest.raises(HostingProviderError):
        _client(lambda request: httpx.Response(200, text="<html>")).get_match_status("dh-1")


def test_console_command_and_release_hit_server_endpoints() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200)

    client = _client(handler)
    client.send_server_command("srv-9", "css_endmatch")
    client.release_server("srv-9")

    assert [request.url.path for request in seen] == [
        "/api/0.1/game-servers/srv-9/console",
        "/api/0.1/game-servers/srv-9/stop",
    ]
    assert seen[0].content == b"line=css_endmatch"
    assert seen[0].headers["Content-Type"] == "application/x-www-form-urlencoded"
