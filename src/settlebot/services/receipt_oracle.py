from __future__ import annotations

import logging
import time
from collections.abc import Callable

from settlebot.adapters.ledger import LedgerClient
from settlebot.domain.models import LedgerError, ReceiptStatus, ReceiptTimeoutError

logger = logging.getLogger(__name__)


class ReceiptOracle:
    """Classifies transaction references against the ledger.

    ``classify`` never raises: RPC failures are reported as ``NOT_FOUND`` and
    the caller decides whether that warrants a retry.
    """

    def __init__(
        self,
        ledger: LedgerClient,
        *,
        poll_seconds: float = 2.0,
        sleep_fn: Callable[[float], None] | None = None,
        monotonic_fn: Callable[[], float] | None = None,
    ) -> None:
        self._ledger = ledger
        self._poll_seconds = poll_seconds
        self._sleep = sleep_fn or time.sleep
        self._monotonic = monotonic_fn or time.monotonic

    def classify(self, tx_ref: str) -> ReceiptStatus:
        try:
            lookup = self._ledger.lookup_transaction(tx_ref)
        except (LedgerError, OSError, ValueError) as exc:
            logger.warning(
                "receipt_lookup_failed",
                extra={"extra": {"tx_ref": tx_ref, "error_type": type(exc).__name__}},
            )
            return ReceiptStatus.NOT_FOUND
        if not lookup.found:
            return ReceiptStatus.NOT_FOUND
        if not lookup.mined or lookup.status is None:
            return ReceiptStatus.PENDING
        if lookup.status == 1:
            return ReceiptStatus.CONFIRMED_SUCCESS
        return ReceiptStatus.CONFIRMED_FAILURE

    def wait_for_confirmation(self, tx_ref: str, *, timeout_seconds: float) -> ReceiptStatus:
        """Poll until the transaction is mined.

        Returns ``CONFIRMED_SUCCESS`` or ``CONFIRMED_FAILURE``; raises
        ``ReceiptTimeoutError`` if neither is observed within the timeout.
        A transaction that is briefly unknown right after broadcast is
        treated like a pending one.
        """
        deadline = self._monotonic() + timeout_seconds
        while True:
            status = self.classify(tx_ref)
            if status in (ReceiptStatus.CONFIRMED_SUCCESS, ReceiptStatus.CONFIRMED_FAILURE):
                return status
            if self._monotonic() >= deadline:
                raise ReceiptTimeoutError(
                    f"transaction {tx_ref} not confirmed within {timeout_seconds}s (last={status})",
                    tx_ref=tx_ref,
                )
            self._sleep(self._poll_seconds)
