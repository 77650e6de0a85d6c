from __future__ import annotations

import logging
from collections.abc import Sequence

from settlebot.adapters.hosting import HostingProvider
from settlebot.adapters.ledger import LedgerClient
from settlebot.domain.models import (
    HostingProviderError,
    LedgerError,
    LedgerRevertError,
    MatchSettlement,
    PayoutStatus,
    ReceiptStatus,
    SettlementKind,
    SettlementOutcome,
    SettlementResult,
    SettlementValidationError,
    is_already_finalized,
    is_nothing_to_refund,
)
from settlebot.logging_context import with_logging_context
from settlebot.observability import get_instrumentation
from settlebot.persistence.match_store import MatchStore
from settlebot.services.receipt_oracle import ReceiptOracle
from settlebot.services.reconciler import Reconciler

logger = logging.getLogger(__name__)


class _LegFailed(Exception):
    pass


class SettlementExecutor:
    """Runs a payout or refund for a match whose lock the caller holds.

    Every transaction reference is persisted right after broadcast and before
    waiting for it, so a crash at any point leaves enough on the record for
    the reconciler to avoid sending the same transaction twice.
    """

    def __init__(
        self,
        *,
        store: MatchStore,
        ledger: LedgerClient,
        oracle: ReceiptOracle,
        reconciler: Reconciler,
        hosting: HostingProvider | None = None,
        receipt_timeout_seconds: float = 120.0,
        push_withdraw_enabled: bool = True,
        release_server_on_settle: bool = True,
        server_end_commands: Sequence[str] = (),
    ) -> None:
        self._store = store
        self._ledger = ledger
        self._oracle = oracle
        self._reconciler = reconciler
        self._hosting = hosting
        self._receipt_timeout_seconds = receipt_timeout_seconds
        self._push_withdraw_enabled = push_withdraw_enabled
        self._release_server_on_settle = release_server_on_settle
        self._server_end_commands = tuple(server_end_commands)

    def payout(
        self,
        record: MatchSettlement,
        winner_address: str | None,
        *,
        event_id: str | None = None,
    ) -> SettlementResult:
        if record.lock_id is None:
            raise ValueError(f"payout for match {record.match_id} requires a held lock")
        leg = record.player_leg(winner_address)
        if leg is None:
            message = (
                f"winner {winner_address!r} is not a participant of match {record.match_id}"
                if winner_address
                else f"match {record.match_id} ended without a winner"
            )
            self._store.record_failure(
                record.match_id, payout_status=PayoutStatus.FAILED, error=message
            )
            raise SettlementValidationError(message)
        winner = str(record.players[leg - 1])

        intent = self._store.mark_intent(
            record.match_id,
            record.lock_id,
            kind=SettlementKind.PAYOUT,
            payout_status=PayoutStatus.PROCESSING,
            winner_address=winner,
            payout_event_id=event_id,
        )
        if intent is None:
            logger.warning("settlement_lock_lost", extra={"extra": {"match_id": record.match_id}})
            return SettlementResult(SettlementOutcome.LOCK_LOST, "lock_lost_before_payout")

        try:
            tx_ref = self._ledger.settle(record.ledger_match_id, winner)
        except LedgerRevertError as exc:
            if is_already_finalized(exc):
                return self._resolve_already_finalized(record, exc)
            return self._fail(record, PayoutStatus.FAILED, f"settle reverted: {exc.reason}")
        except LedgerError as exc:
            return self._fail(record, PayoutStatus.FAILED, f"settle failed: {exc}")

        self._store.record_payout_tx_ref(record.match_id, tx_ref)
        with with_logging_context(tx_ref=tx_ref):
            logger.info(
                "settlement_payout_broadcast",
                extra={"extra": {"match_id": record.match_id, "winner": winner}},
            )
            try:
                status = self._oracle.wait_for_confirmation(
                    tx_ref, timeout_seconds=self._receipt_timeout_seconds
                )
            except LedgerError as exc:
                return self._fail(record, PayoutStatus.FAILED, str(exc))
            if status is not ReceiptStatus.CONFIRMED_SUCCESS:
                return self._fail(record, PayoutStatus.FAILED, f"settle tx {tx_ref} reverted")

            self._store.finalize_paid(record.match_id, winner_address=winner, tx_ref=tx_ref)
            logger.info(
                "settlement_payout_confirmed",
                extra={"extra": {"match_id": record.match_id, "winner": winner}},
            )
        get_instrumentation().counter("ledger_tx_confirmed", 1, attrs={"kind": "payout"})
        self._wind_down_server(record)
        self._push_withdraw(record, winner)
        return SettlementResult(SettlementOutcome.PAID, "payout_confirmed", (tx_ref,))

    def refund(
        self,
        record: MatchSettlement,
        *,
        reason: str = "",
        event_id: str | None = None,
    ) -> SettlementResult:
        if record.lock_id is None:
            raise ValueError(f"refund for match {record.match_id} requires a held lock")
        intent = self._store.mark_intent(
            record.match_id,
            record.lock_id,
            kind=SettlementKind.REFUND,
            payout_status=PayoutStatus.REFUND_PROCESSING,
            payout_event_id=event_id,
        )
        if intent is None:
            logger.warning("settlement_lock_lost", extra={"extra": {"match_id": record.match_id}})
            return SettlementResult(SettlementOutcome.LOCK_LOST, "lock_lost_before_refund")

        tx_refs: list[str] = []
        for leg, player in ((1, intent.player1), (2, intent.player2)):
            if not player:
                continue
            try:
                tx_ref = self._refund_leg(intent, leg, player, reason)
            except _LegFailed as exc:
                return self._fail(record, PayoutStatus.REFUND_FAILED, str(exc))
            except LedgerRevertError as exc:
                if is_already_finalized(exc):
                    return self._resolve_already_finalized(record, exc)
                return self._fail(
                    record, PayoutStatus.REFUND_FAILED, f"refund leg {leg} reverted: {exc.reason}"
                )
            except LedgerError as exc:
                return self._fail(
                    record, PayoutStatus.REFUND_FAILED, f"refund leg {leg} failed: {exc}"
                )
            if tx_ref is not None:
                tx_refs.append(tx_ref)

        self._store.finalize_refunded(record.match_id)
        logger.info(
            "settlement_refund_confirmed",
            extra={"extra": {"match_id": record.match_id, "tx_refs": tx_refs}},
        )
        self._wind_down_server(record)
        return SettlementResult(SettlementOutcome.REFUNDED, "refund_confirmed", tuple(tx_refs))

    def _refund_leg(
        self, record: MatchSettlement, leg: int, player: str, reason: str
    ) -> str | None:
        existing = record.refund_tx_ref(leg)
        if existing:
            status = self._oracle.classify(existing)
            if status is ReceiptStatus.PENDING:
                status = self._await(existing)
            if status is ReceiptStatus.CONFIRMED_SUCCESS:
                logger.info(
                    "refund_leg_already_confirmed",
                    extra={"extra": {"match_id": record.match_id, "leg": leg, "tx_ref": existing}},
                )
                return existing

        try:
            tx_ref = self._ledger.cancel(record.ledger_match_id, player, reason)
        except LedgerRevertError as exc:
            if is_nothing_to_refund(exc):
                logger.info(
                    "refund_leg_nothing_to_refund",
                    extra={"extra": {"match_id": record.match_id, "leg": leg, "player": player}},
                )
                return None
            raise

        self._store.record_refund_tx_ref(record.match_id, leg, tx_ref)
        logger.info(
            "settlement_refund_broadcast",
            extra={"extra": {"match_id": record.match_id, "leg": leg, "tx_ref": tx_ref}},
        )
        if self._await(tx_ref) is not ReceiptStatus.CONFIRMED_SUCCESS:
            raise _LegFailed(f"refund leg {leg} tx {tx_ref} reverted")
        get_instrumentation().counter("ledger_tx_confirmed", 1, attrs={"kind": "refund"})
        return tx_ref

    def _await(self, tx_ref: str) -> ReceiptStatus:
        try:
            return self._oracle.wait_for_confirmation(
                tx_ref, timeout_seconds=self._receipt_timeout_seconds
            )
        except LedgerError as exc:
            raise _LegFailed(str(exc)) from exc

    def _resolve_already_finalized(
        self, record: MatchSettlement, exc: LedgerRevertError
    ) -> SettlementResult:
        logger.info(
            "settlement_ledger_already_finalized",
            extra={"extra": {"match_id": record.match_id, "reason": exc.reason}},
        )
        current = self._store.get(record.match_id) or record
        result = self._reconciler.reconcile(current)
        if result.done:
            return SettlementResult(SettlementOutcome.RECONCILED, result.reason)
        status = (
            PayoutStatus.REFUND_FAILED
            if current.settlement_kind is SettlementKind.REFUND
            else PayoutStatus.FAILED
        )
        return self._fail(record, status, f"ledger rejected call: {exc.reason}")

    def _fail(
        self, record: MatchSettlement, payout_status: PayoutStatus, message: str
    ) -> SettlementResult:
        self._store.record_failure(record.match_id, payout_status=payout_status, error=message)
        get_instrumentation().counter(
            "settlement_failed", 1, attrs={"payout_status": payout_status.value}
        )
        logger.warning(
            "settlement_failed",
            extra={
                "extra": {
                    "match_id": record.match_id,
                    "payout_status": payout_status.value,
                    "error_message": message,
                }
            },
        )
        return SettlementResult(SettlementOutcome.FAILED, message)

    def _wind_down_server(self, record: MatchSettlement) -> None:
        if self._hosting is None or not record.server_id or not self._release_server_on_settle:
            return
        for command in self._server_end_commands:
            try:
                self._hosting.send_server_command(record.server_id, command)
            except HostingProviderError as exc:
                logger.warning(
                    "server_command_failed",
                    extra={
                        "extra": {
                            "match_id": record.match_id,
                            "server_id": record.server_id,
                            "command": command,
                            "error_message": str(exc),
                        }
                    },
                )
        try:
            self._hosting.release_server(record.server_id)
        except HostingProviderError as exc:
            logger.warning(
                "server_release_failed",
                extra={
                    "extra": {
                        "match_id": record.match_id,
                        "server_id": record.server_id,
                        "error_message": str(exc),
                    }
                },
            )
            return
        logger.info(
            "server_released",
            extra={"extra": {"match_id": record.match_id, "server_id": record.server_id}},
        )

    def _push_withdraw(self, record: MatchSettlement, winner: str) -> None:
        if not self._push_withdraw_enabled:
            return
        try:
            balance = self._ledger.claimable_balance_of(winner)
            if balance <= 0:
                return
            tx_ref = self._ledger.withdraw_to(winner)
            status = self._oracle.wait_for_confirmation(
                tx_ref, timeout_seconds=self._receipt_timeout_seconds
            )
        except LedgerError as exc:
            logger.warning(
                "push_withdraw_failed",
                extra={
                    "extra": {
                        "match_id": record.match_id,
                        "winner": winner,
                        "error_type": type(exc).__name__,
                        "error_message": str(exc),
                    }
                },
            )
            return
        logger.info(
            "push_withdraw_done",
            extra={
                "extra": {
                    "match_id": record.match_id,
                    "winner": winner,
                    "amount_wei": balance,
                    "tx_ref": tx_ref,
                    "confirmed": status is ReceiptStatus.CONFIRMED_SUCCESS,
                }
            },
        )
