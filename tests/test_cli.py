from __future__ import annotations

import json

import pytest

from settlebot import cli
from settlebot.config import Settings
from settlebot.domain.models import LifecycleStatus
from settlebot.persistence.match_store import MatchStore
from settlebot.services.runtime import build_runtime


@pytest.fixture(autouse=True)
def _quiet_cli(monkeypatch) -> None:
    monkeypatch.setattr(cli, "setup_logging", lambda level=None: None)
    monkeypatch.setenv("LEDGER_BACKEND", "memory")


def test_single_cycle_returns_cycle_rc() -> None:
    rc = cli.run_with_optional_loop(
        command="janitor",
        cycle_fn=lambda: 7,
        loop_enabled=False,
        cycle_seconds=10,
        max_cycles=None,
        jitter_seconds=0,
    )
    assert rc == 7


@pytest.mark.parametrize(
    ("cycle_seconds", "max_cycles", "jitter_seconds"),
    [(-1, None, 0), (10, 0, 0), (10, -2, 0), (10, None, -1)],
)
def test_invalid_loop_arguments(
    cycle_seconds: int, max_cycles: int | None, jitter_seconds: int
) -> None:
    rc = cli.run_with_optional_loop(
        command="janitor",
        cycle_fn=lambda: 0,
        loop_enabled=True,
        cycle_seconds=cycle_seconds,
        max_cycles=max_cycles,
        jitter_seconds=jitter_seconds,
    )
    assert rc == 2


def test_loop_runs_until_max_cycles() -> None:
    calls = {"n": 0}
    sleeps: list[float] = []

    def _cycle() -> int:
        calls["n"] += 1
        return 0

    rc = cli.run_with_optional_loop(
        command="janitor",
        cycle_fn=_cycle,
        loop_enabled=True,
        cycle_seconds=30,
        max_cycles=3,
        jitter_seconds=0,
        sleep_fn=sleeps.append,
    )

    assert rc == 0
    assert calls["n"] == 3
    assert sleeps == [30, 30]


def test_loop_retries_failing_cycle_with_backoff() -> None:
    sleeps: list[float] = []

    def _cycle() -> int:
        raise RuntimeError("boom")

    rc = cli.run_with_optional_loop(
        command="janitor",
        cycle_fn=_cycle,
        loop_enabled=True,
        cycle_seconds=5,
        max_cycles=1,
        jitter_seconds=0,
        sleep_fn=sleeps.append,
    )

    assert rc == 1
    assert sleeps == [1, 2]


def test_loop_stops_cleanly_on_keyboard_interrupt(capsys) -> None:
    def _cycle() -> int:
        raise KeyboardInterrupt

    rc = cli.run_with_optional_loop(
        command="janitor",
        cycle_fn=_cycle,
        loop_enabled=True,
        cycle_seconds=5,
        max_cycles=None,
        jitter_seconds=0,
        sleep_fn=lambda _s: None,
    )

    assert rc == 0
    assert "interrupted" in capsys.readouterr().out


def test_status_prints_match_and_events(capsys) -> None:
    store = MatchStore(Settings().state_db_path)
    store.create_match("1001", correlation_id="dh-1001", lifecycle_status=LifecycleStatus.LIVE)

    rc = cli.main(["status", "--match-id", "1001"])

    assert rc == 0
    payload = json.loads(capsys.readouterr().out)
    assert payload["match"]["match_id"] == "1001"
    assert payload["match"]["lifecycle_status"] == "LIVE"
    assert payload["events"] == []


def test_status_for_unknown_match_fails() -> None:
    assert cli.main(["status", "--match-id", "nope"]) == 1


def test_reconcile_reports_open_match(capsys) -> None:
    store = MatchStore(Settings().state_db_path)
    store.create_match("1001")

    rc = cli.main(["reconcile", "--match-id", "1001"])

    assert rc == 0
    payload = json.loads(capsys.readouterr().out)
    assert payload == {"match_id": "1001", "done": False, "reason": "not_settled"}


def test_settle_requires_winner_or_refund() -> None:
    with pytest.raises(SystemExit) as exc_info:
        cli.main(["settle", "--match-id", "1001"])
    assert exc_info.value.code == 2


def test_janitor_single_pass_with_no_candidates(capsys) -> None:
    rc = cli.main(["janitor"])

    assert rc == 0
    assert "scanned=0" in capsys.readouterr().out


def test_invalid_configuration_exits_with_usage_code(monkeypatch, capsys) -> None:
    monkeypatch.setenv("LOCK_STALE_SECONDS", "0")

    assert cli.main(["janitor"]) == 2
    assert "invalid configuration" in capsys.readouterr().err


def test_web3_backend_without_credentials_exits_with_usage_code(monkeypatch) -> None:
    monkeypatch.setenv("LEDGER_BACKEND", "web3")

    assert cli.main(["status", "--match-id", "1001"]) == 2


def test_serve_requires_webhook_secret() -> None:
    assert cli.main(["serve"]) == 2


def test_build_runtime_uses_memory_backend() -> None:
    runtime = build_runtime(Settings())
    try:
        assert type(runtime.ledger).__name__ == "InMemoryLedger"
        assert runtime.store.db_path == Settings().state_db_path
    finally:
        runtime.close()
