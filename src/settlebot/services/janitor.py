from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass, field

from settlebot.adapters.hosting import HostingProvider
from settlebot.domain.events import decision_for_status
from settlebot.domain.models import EventSource, HostingProviderError
from settlebot.logging_context import with_logging_context
from settlebot.observability import get_instrumentation
from settlebot.persistence.match_store import MatchStore
from settlebot.services.settlement_pipeline import SettlementPipeline

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class JanitorReport:
    scanned: int
    skipped: int
    provider_errors: int
    outcomes: dict[str, int] = field(default_factory=dict)


class Janitor:
    """Pull path: finds stuck matches and asks the hosting provider for ground truth."""

    def __init__(
        self,
        *,
        store: MatchStore,
        hosting: HostingProvider,
        pipeline: SettlementPipeline,
        depositing_grace_seconds: int = 300,
        live_grace_seconds: int = 1200,
        max_attempts: int = 10,
        batch_limit: int = 100,
    ) -> None:
        self._store = store
        self._hosting = hosting
        self._pipeline = pipeline
        self._depositing_grace_seconds = depositing_grace_seconds
        self._live_grace_seconds = live_grace_seconds
        self._max_attempts = max_attempts
        self._batch_limit = batch_limit

    def run_once(self) -> JanitorReport:
        candidates = self._store.list_settlement_candidates(
            depositing_grace_seconds=self._depositing_grace_seconds,
            live_grace_seconds=self._live_grace_seconds,
            max_attempts=self._max_attempts,
            limit=self._batch_limit,
        )
        get_instrumentation().counter("janitor_candidates", len(candidates))
        skipped = 0
        provider_errors = 0
        outcomes: Counter[str] = Counter()

        for record in candidates:
            # Candidates are selected with a non-null correlation id.
            assert record.correlation_id is not None
            with with_logging_context(match_id=record.match_id):
                try:
                    status = self._hosting.get_match_status(record.correlation_id)
                except HostingProviderError as exc:
                    provider_errors += 1
                    self._store.record_error(record.match_id, f"hosting fetch: {exc}")
                    logger.warning(
                        "janitor_hosting_fetch_failed",
                        extra={
                            "extra": {
                                "match_id": record.match_id,
                                "status_code": exc.status_code,
                                "error_message": str(exc),
                            }
                        },
                    )
                    continue

                self._store.append_event(
                    record.match_id,
                    source=EventSource.JANITOR_POLL,
                    event_type=f"provider_{status.state.value}",
                    event_id=f"poll:{status.state.value}",
                    payload=status.raw or {"state": status.state.value},
                )
                decision = decision_for_status(status)
                if decision is None:
                    skipped += 1
                    logger.info(
                        "janitor_match_still_running",
                        extra={
                            "extra": {"match_id": record.match_id, "state": status.state.value}
                        },
                    )
                    continue
                if status.raw:
                    self._store.record_snapshot(record.match_id, status.raw)
                result = self._pipeline.run(
                    record.match_id, decision, source=EventSource.JANITOR_POLL
                )
                outcomes[result.outcome.value] += 1

        report = JanitorReport(
            scanned=len(candidates),
            skipped=skipped,
            provider_errors=provider_errors,
            outcomes=dict(outcomes),
        )
        logger.info(
            "janitor_pass_finished",
            extra={
                "extra": {
                    "scanned": report.scanned,
                    "skipped": report.skipped,
                    "provider_errors": report.provider_errors,
                    "outcomes": report.outcomes,
                }
            },
        )
        return report
