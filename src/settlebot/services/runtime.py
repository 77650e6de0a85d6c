from __future__ import annotations

from dataclasses import dataclass

from settlebot.adapters.hosting import DatHostHttpClient, HostingProvider
from settlebot.adapters.ledger import LedgerClient
from settlebot.adapters.memory_ledger import InMemoryLedger
from settlebot.config import Settings
from settlebot.persistence.match_store import MatchStore
from settlebot.services.janitor import Janitor
from settlebot.services.lock_manager import LockManager
from settlebot.services.receipt_oracle import ReceiptOracle
from settlebot.services.reconciler import Reconciler
from settlebot.services.settlement_executor import SettlementExecutor
from settlebot.services.settlement_pipeline import SettlementPipeline


@dataclass
class SettlementRuntime:
    settings: Settings
    store: MatchStore
    ledger: LedgerClient
    hosting: HostingProvider
    reconciler: Reconciler
    pipeline: SettlementPipeline
    janitor: Janitor

    def close(self) -> None:
        self.hosting.close()
        self.ledger.close()


def build_ledger(settings: Settings) -> LedgerClient:
    if settings.ledger_backend == "memory":
        return InMemoryLedger()
    settings.require_ledger_credentials()
    from settlebot.adapters.web3_ledger import Web3LedgerClient

    private_key = settings.payout_private_key
    return Web3LedgerClient(
        rpc_url=str(settings.rpc_url),
        escrow_address=str(settings.escrow_address),
        private_key=private_key.get_secret_value() if private_key else "",
        chain_id=settings.chain_id,
    )


def build_hosting(settings: Settings) -> HostingProvider:
    return DatHostHttpClient(
        username=settings.hosting_username,
        password=(
            settings.hosting_password.get_secret_value() if settings.hosting_password else None
        ),
        base_url=settings.hosting_api_base,
        timeout=settings.hosting_timeout_seconds,
    )


def build_runtime(
    settings: Settings,
    *,
    ledger: LedgerClient | None = None,
    hosting: HostingProvider | None = None,
    store: MatchStore | None = None,
) -> SettlementRuntime:
    store = store or MatchStore(settings.state_db_path, key_bytes=settings.ledger_key_bytes)
    ledger = ledger or build_ledger(settings)
    hosting = hosting or build_hosting(settings)
    oracle = ReceiptOracle(ledger, poll_seconds=settings.receipt_poll_seconds)
    reconciler = Reconciler(store, ledger, oracle)
    lock_manager = LockManager(
        store,
        stale_seconds=settings.lock_stale_seconds,
        max_attempts=settings.max_settlement_attempts,
    )
    executor = SettlementExecutor(
        store=store,
        ledger=ledger,
        oracle=oracle,
        reconciler=reconciler,
        hosting=hosting,
        receipt_timeout_seconds=settings.receipt_timeout_seconds,
        push_withdraw_enabled=settings.push_withdraw_enabled,
        release_server_on_settle=settings.release_server_on_settle,
        server_end_commands=settings.server_end_commands,
    )
    pipeline = SettlementPipeline(
        store=store, reconciler=reconciler, lock_manager=lock_manager, executor=executor
    )
    janitor = Janitor(
        store=store,
        hosting=hosting,
        pipeline=pipeline,
        depositing_grace_seconds=settings.depositing_grace_seconds,
        live_grace_seconds=settings.live_grace_seconds,
        max_attempts=settings.max_settlement_attempts,
    )
    return SettlementRuntime(
        settings=settings,
        store=store,
        ledger=ledger,
        hosting=hosting,
        reconciler=reconciler,
        pipeline=pipeline,
        janitor=janitor,
    )
