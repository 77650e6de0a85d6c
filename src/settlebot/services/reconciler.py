from __future__ import annotations

import logging

from settlebot.adapters.ledger import LedgerClient
from settlebot.domain.models import (
    LedgerError,
    LedgerMatch,
    MatchSettlement,
    ReceiptStatus,
    ReconcileResult,
)
from settlebot.observability import get_instrumentation
from settlebot.persistence.match_store import MatchStore
from settlebot.services.receipt_oracle import ReceiptOracle

logger = logging.getLogger(__name__)


class Reconciler:
    """Idempotence gate consulted before any settlement action.

    Never sends a ledger transaction. The only writes it makes are terminal
    finalizations that the ledger or a confirmed receipt already proves.
    """

    def __init__(self, store: MatchStore, ledger: LedgerClient, oracle: ReceiptOracle) -> None:
        self._store = store
        self._ledger = ledger
        self._oracle = oracle

    def reconcile(self, record: MatchSettlement) -> ReconcileResult:
        result = self._reconcile(record)
        get_instrumentation().counter(
            "reconcile_done", 1, attrs={"done": result.done, "reason": result.reason}
        )
        logger.info(
            "reconcile_result",
            extra={
                "extra": {
                    "match_id": record.match_id,
                    "done": result.done,
                    "reason": result.reason,
                }
            },
        )
        return result

    def _reconcile(self, record: MatchSettlement) -> ReconcileResult:
        if record.is_terminal:
            return ReconcileResult(done=True, reason=f"already_{record.payout_status.lower()}")

        if record.payout_tx_ref:
            status = self._oracle.classify(record.payout_tx_ref)
            if status is ReceiptStatus.CONFIRMED_SUCCESS:
                return self._finalize_confirmed_payout(record)
            if status is ReceiptStatus.PENDING:
                return ReconcileResult(done=True, reason="payout_tx_pending")

        for leg in (1, 2):
            tx_ref = record.refund_tx_ref(leg)
            if tx_ref and self._oracle.classify(tx_ref) is ReceiptStatus.PENDING:
                return ReconcileResult(done=True, reason=f"refund_tx_{leg}_pending")

        ledger_state = self._read_ledger(record)
        if ledger_state is None:
            return ReconcileResult(done=False, reason="ledger_state_unavailable")
        if ledger_state.is_closed:
            if ledger_state.winner:
                self._store.finalize_paid(record.match_id, winner_address=ledger_state.winner)
                return ReconcileResult(done=True, reason="ledger_closed_with_winner")
            self._store.finalize_refunded(record.match_id)
            return ReconcileResult(done=True, reason="ledger_closed_refunded")
        return ReconcileResult(done=False, reason="not_settled")

    def _finalize_confirmed_payout(self, record: MatchSettlement) -> ReconcileResult:
        winner = record.winner_address
        if winner is None:
            ledger_state = self._read_ledger(record)
            winner = ledger_state.winner if ledger_state is not None else None
        if winner is None:
            # The payout landed; never re-send it even though the winner is not yet known.
            return ReconcileResult(done=True, reason="payout_tx_confirmed_winner_unknown")
        self._store.finalize_paid(
            record.match_id, winner_address=winner, tx_ref=record.payout_tx_ref
        )
        return ReconcileResult(done=True, reason="payout_tx_confirmed")

    def _read_ledger(self, record: MatchSettlement) -> LedgerMatch | None:
        try:
            return self._ledger.get_match(record.ledger_match_id)
        except LedgerError as exc:
            logger.warning(
                "reconcile_ledger_read_failed",
                extra={
                    "extra": {
                        "match_id": record.match_id,
                        "ledger_match_id": record.ledger_match_id,
                        "error_type": type(exc).__name__,
                        "error_message": str(exc),
                    }
                },
            )
            return None
