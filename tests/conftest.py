from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

import pytest

from settlebot.adapters.hosting import HostingProvider
from settlebot.adapters.memory_ledger import InMemoryLedger
from settlebot.config import Settings
from settlebot.domain.events import HostingMatchState, HostingMatchStatus
from settlebot.domain.models import HostingProviderError, LifecycleStatus, MatchSettlement
from settlebot.persistence.match_store import MatchStore
from settlebot.services.janitor import Janitor
from settlebot.services.lock_manager import LockManager
from settlebot.services.receipt_oracle import ReceiptOracle
from settlebot.services.reconciler import Reconciler
from settlebot.services.settlement_executor import SettlementExecutor
from settlebot.services.settlement_pipeline import SettlementPipeline

PLAYER1 = "0x1111111111111111111111111111111111111111"
PLAYER2 = "0x2222222222222222222222222222222222222222"
STAKE_WEI = 10**18


@pytest.fixture(autouse=True)
def isolate_settings_from_host_env(monkeypatch: pytest.MonkeyPatch):
    original_env_file = Settings.model_config.get("env_file")
    Settings.model_config["env_file"] = None

    settings_env_keys: set[str] = set()
    for model_field in Settings.model_fields.values():
        if isinstance(model_field.alias, str):
            settings_env_keys.add(model_field.alias)

    for key in list(os.environ):
        if key in settings_env_keys:
            monkeypatch.delenv(key, raising=False)

    yield

    Settings.model_config["env_file"] = original_env_file


@pytest.fixture(autouse=True)
def isolate_default_state_db_per_test(
    isolate_settings_from_host_env: None,
    monkeypatch: pytest.MonkeyPatch,
    tmp_path: Path,
) -> None:
    del isolate_settings_from_host_env
    monkeypatch.setenv("STATE_DB_PATH", str(tmp_path / "settlebot-test.sqlite"))


class FakeClock:
    """Shared wall and monotonic clock; sleeping advances it."""

    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.value = start
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.value

    def advance(self, seconds: float) -> None:
        self.value += seconds

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.advance(seconds)


class FakeHosting(HostingProvider):
    def __init__(self) -> None:
        self.statuses: dict[str, HostingMatchStatus] = {}
        self.errors: dict[str, Exception] = {}
        self.status_calls: list[str] = []
        self.commands: list[tuple[str, str]] = []
        self.released: list[str] = []
        self.fail_commands = False

    def get_match_status(self, external_id: str) -> HostingMatchStatus:
        self.status_calls.append(external_id)
        if external_id in self.errors:
            raise self.errors[external_id]
        return self.statuses.get(
            external_id, HostingMatchStatus(state=HostingMatchState.IN_PROGRESS)
        )

    def send_server_command(self, server_id: str, command: str) -> None:
        if self.fail_commands:
            raise HostingProviderError("console unavailable", status_code=503)
        self.commands.append((server_id, command))

    def release_server(self, server_id: str) -> None:
        self.released.append(server_id)


@dataclass
class Harness:
    clock: FakeClock
    store: MatchStore
    ledger: InMemoryLedger
    hosting: FakeHosting
    oracle: ReceiptOracle
    reconciler: Reconciler
    lock_manager: LockManager
    executor: SettlementExecutor
    pipeline: SettlementPipeline
    janitor: Janitor

    def create_match(
        self,
        match_id: str = "1001",
        *,
        deposits: tuple[bool, bool] = (True, True),
        lifecycle_status: LifecycleStatus = LifecycleStatus.LIVE,
        correlation_id: str | None = None,
        server_id: str | None = "srv-1",
        on_ledger: bool = True,
    ) -> MatchSettlement:
        record = self.store.create_match(
            match_id,
            player1=PLAYER1,
            player2=PLAYER2,
            stake_wei=STAKE_WEI,
            correlation_id=correlation_id or f"dh-{match_id}",
            server_id=server_id,
            lifecycle_status=lifecycle_status,
        )
        if on_ledger:
            self.ledger.create_match(record.ledger_match_id, PLAYER1, PLAYER2, STAKE_WEI)
            self.ledger.mine_pending()
            for player, deposited in zip((PLAYER1, PLAYER2), deposits, strict=True):
                if deposited:
                    self.ledger.deposit(record.ledger_match_id, player)
        # Setup traffic is not part of what the tests assert on.
        self.ledger.calls.clear()
        return record

    def ledger_writes(self) -> list[str]:
        return [
            name
            for name, _ in self.ledger.calls
            if name in {"settle", "cancel", "withdraw_to", "create_match"}
        ]


@pytest.fixture
def make_harness(tmp_path: Path):
    counter = {"n": 0}

    def _make(
        *,
        auto_mine: bool = True,
        receipt_timeout_seconds: float = 30.0,
        stale_seconds: int = 120,
        max_attempts: int = 10,
        push_withdraw_enabled: bool = True,
        release_server_on_settle: bool = True,
        server_end_commands: tuple[str, ...] = ("kickall", "css_endmatch"),
        db_path: str | None = None,
        ledger: InMemoryLedger | None = None,
    ) -> Harness:
        counter["n"] += 1
        clock = FakeClock()
        store = MatchStore(
            db_path or str(tmp_path / f"harness-{counter['n']}.sqlite"),
            now_fn=lambda: int(clock()),
        )
        ledger = ledger or InMemoryLedger(auto_mine=auto_mine)
        hosting = FakeHosting()
        oracle = ReceiptOracle(ledger, poll_seconds=1.0, sleep_fn=clock.sleep, monotonic_fn=clock)
        reconciler = Reconciler(store, ledger, oracle)
        lock_manager = LockManager(store, stale_seconds=stale_seconds, max_attempts=max_attempts)
        executor = SettlementExecutor(
            store=store,
            ledger=ledger,
            oracle=oracle,
            reconciler=reconciler,
            hosting=hosting,
            receipt_timeout_seconds=receipt_timeout_seconds,
            push_withdraw_enabled=push_withdraw_enabled,
            release_server_on_settle=release_server_on_settle,
            server_end_commands=server_end_commands,
        )
        pipeline = SettlementPipeline(
            store=store, reconciler=reconciler, lock_manager=lock_manager, executor=executor
        )
        janitor = Janitor(
            store=store,
            hosting=hosting,
            pipeline=pipeline,
            depositing_grace_seconds=300,
            live_grace_seconds=1200,
            max_attempts=max_attempts,
        )
        return Harness(
            clock=clock,
            store=store,
            ledger=ledger,
            hosting=hosting,
            oracle=oracle,
            reconciler=reconciler,
            lock_manager=lock_manager,
            executor=executor,
            pipeline=pipeline,
            janitor=janitor,
        )

    return _make


@pytest.fixture
def harness(make_harness) -> Harness:
    return make_harness()


@pytest.fixture
def players() -> tuple[str, str]:
    return (PLAYER1, PLAYER2)
