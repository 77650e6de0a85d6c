from __future__ import annotations

import logging
from collections.abc import Callable
from uuid import uuid4

from settlebot.domain.models import MatchSettlement, PayoutStatus
from settlebot.observability import get_instrumentation
from settlebot.persistence.match_store import MatchStore

logger = logging.getLogger(__name__)


class LockManager:
    def __init__(
        self,
        store: MatchStore,
        *,
        stale_seconds: int = 120,
        max_attempts: int = 10,
        token_factory: Callable[[], str] | None = None,
    ) -> None:
        self._store = store
        self.stale_seconds = stale_seconds
        self.max_attempts = max_attempts
        self._token_factory = token_factory or (lambda: uuid4().hex)

    def acquire(self, match_id: str) -> MatchSettlement | None:
        """Claim ``match_id`` for settlement.

        ``None`` means another executor holds a fresh lock, the match is
        terminal or at the attempt ceiling; callers skip without error.
        """
        lock_id = self._token_factory()
        record = self._store.compare_and_set_lock(
            match_id,
            lock_id=lock_id,
            stale_before=self._store.now() - self.stale_seconds,
            max_attempts=self.max_attempts,
        )
        acquired = record is not None
        get_instrumentation().counter("lock_acquire", 1, attrs={"acquired": acquired})
        logger.info(
            "lock_acquired" if acquired else "lock_not_acquired",
            extra={"extra": {"match_id": match_id, "lock_id": lock_id if acquired else None}},
        )
        return record

    def release(
        self, record: MatchSettlement, *, payout_status: PayoutStatus | None = None
    ) -> bool:
        if record.lock_id is None:
            return False
        released = self._store.release_lock(
            record.match_id, record.lock_id, payout_status=payout_status
        )
        logger.info(
            "lock_released",
            extra={
                "extra": {
                    "match_id": record.match_id,
                    "lock_id": record.lock_id,
                    "released": released,
                }
            },
        )
        return released
