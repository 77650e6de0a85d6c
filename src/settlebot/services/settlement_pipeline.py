from __future__ import annotations

import logging

from settlebot.domain.events import SettlementDecision, resolve_winner_address
from settlebot.domain.models import (
    EventSource,
    SettlementKind,
    SettlementOutcome,
    SettlementResult,
    SettlementValidationError,
)
from settlebot.logging_context import with_logging_context
from settlebot.observability import get_instrumentation
from settlebot.persistence.match_store import MatchStore
from settlebot.services.lock_manager import LockManager
from settlebot.services.reconciler import Reconciler
from settlebot.services.settlement_executor import SettlementExecutor

logger = logging.getLogger(__name__)


class SettlementPipeline:
    """Reconciler -> LockManager -> SettlementExecutor, shared by push and pull paths."""

    def __init__(
        self,
        *,
        store: MatchStore,
        reconciler: Reconciler,
        lock_manager: LockManager,
        executor: SettlementExecutor,
    ) -> None:
        self._store = store
        self._reconciler = reconciler
        self._lock_manager = lock_manager
        self._executor = executor

    def run(
        self,
        match_id: str,
        decision: SettlementDecision,
        *,
        source: EventSource,
        event_id: str | None = None,
    ) -> SettlementResult:
        with with_logging_context(match_id=match_id):
            with get_instrumentation().trace(
                "settlement_pipeline", attrs={"source": str(source), "kind": str(decision.kind)}
            ):
                result = self._run(match_id, decision, event_id=event_id)
            get_instrumentation().counter(
                "settlement_outcome",
                1,
                attrs={"path": str(source), "outcome": result.outcome.value},
            )
            logger.info(
                "settlement_pipeline_finished",
                extra={
                    "extra": {
                        "match_id": match_id,
                        "source": str(source),
                        "kind": str(decision.kind),
                        "outcome": result.outcome.value,
                        "reason": result.reason,
                    }
                },
            )
            return result

    def _run(
        self, match_id: str, decision: SettlementDecision, *, event_id: str | None
    ) -> SettlementResult:
        record = self._store.get(match_id)
        if record is None:
            return SettlementResult(SettlementOutcome.NOT_FOUND, "match_not_found")
        precheck = self._reconciler.reconcile(record)
        if precheck.done:
            return SettlementResult(SettlementOutcome.RECONCILED, precheck.reason)

        locked = self._lock_manager.acquire(match_id)
        if locked is None:
            return SettlementResult(SettlementOutcome.LOCK_NOT_ACQUIRED, "lock_held_or_exhausted")

        with with_logging_context(lock_id=locked.lock_id):
            # Another executor may have broadcast between the precheck and the claim.
            recheck = self._reconciler.reconcile(locked)
            if recheck.done:
                self._lock_manager.release(locked, payout_status=record.payout_status)
                return SettlementResult(SettlementOutcome.RECONCILED, recheck.reason)

            kind = decision.kind
            winner = resolve_winner_address(decision.winner, locked.player1, locked.player2)
            if (
                kind is SettlementKind.REFUND
                and locked.settlement_kind is SettlementKind.PAYOUT
                and locked.winner_address
            ):
                logger.warning(
                    "stored_payout_intent_kept",
                    extra={
                        "extra": {
                            "match_id": match_id,
                            "winner": locked.winner_address,
                            "decision_reason": decision.reason,
                        }
                    },
                )
                kind = SettlementKind.PAYOUT
                winner = locked.winner_address
            elif (
                kind is SettlementKind.PAYOUT
                and locked.settlement_kind is SettlementKind.REFUND
                and (locked.refund_tx_ref(1) or locked.refund_tx_ref(2))
            ):
                # A refund leg may already have moved funds; only the missing leg may follow.
                logger.warning(
                    "stored_refund_intent_kept",
                    extra={
                        "extra": {
                            "match_id": match_id,
                            "refund_tx_refs": [locked.refund_tx_ref_1, locked.refund_tx_ref_2],
                            "decision_reason": decision.reason,
                        }
                    },
                )
                kind = SettlementKind.REFUND

            try:
                if kind is SettlementKind.PAYOUT:
                    return self._executor.payout(locked, winner, event_id=event_id)
                return self._executor.refund(locked, reason=decision.reason, event_id=event_id)
            except SettlementValidationError as exc:
                logger.error(
                    "settlement_validation_failed",
                    extra={
                        "extra": {
                            "match_id": match_id,
                            "kind": str(kind),
                            "winner": winner,
                            "players": [locked.player1, locked.player2],
                            "error_message": str(exc),
                        }
                    },
                )
                return SettlementResult(SettlementOutcome.INVALID, str(exc))
