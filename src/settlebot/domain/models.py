from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"


class LifecycleStatus(StrEnum):
    LOBBY = "LOBBY"
    DEPOSITING = "DEPOSITING"
    LIVE = "LIVE"
    COMPLETE = "COMPLETE"
    CANCELLED = "CANCELLED"


class PayoutStatus(StrEnum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    PAID = "PAID"
    FAILED = "FAILED"
    REFUND_PROCESSING = "REFUND_PROCESSING"
    REFUNDED = "REFUNDED"
    REFUND_FAILED = "REFUND_FAILED"


TERMINAL_PAYOUT_STATUSES = frozenset({PayoutStatus.PAID, PayoutStatus.REFUNDED})


class SettlementKind(StrEnum):
    PAYOUT = "PAYOUT"
    REFUND = "REFUND"


class ReceiptStatus(StrEnum):
    PENDING = "pending"
    CONFIRMED_SUCCESS = "confirmed_success"
    CONFIRMED_FAILURE = "confirmed_failure"
    NOT_FOUND = "notfound"


class EventSource(StrEnum):
    WEBHOOK = "webhook"
    JANITOR_POLL = "janitor_poll"
    MANUAL = "manual"


def normalize_address(address: str | None) -> str | None:
    if address is None:
        return None
    cleaned = address.strip()
    return cleaned.lower() if cleaned else None


def same_address(left: str | None, right: str | None) -> bool:
    a = normalize_address(left)
    return a is not None and a == normalize_address(right)


class SettlementError(RuntimeError):
    """Base class for settlement failures."""


class SettlementValidationError(SettlementError):
    """Raised for logic errors that must not be retried blindly."""


class LedgerError(SettlementError):
    """Raised when the ledger RPC transport fails."""


class LedgerRevertError(LedgerError):
    """Raised when the ledger rejects a call."""

    def __init__(self, message: str, *, reason: str | None = None) -> None:
        super().__init__(message)
        self.reason = reason or message


class ReceiptTimeoutError(LedgerError):
    """Raised when a broadcast transaction is not mined in time."""

    def __init__(self, message: str, *, tx_ref: str) -> None:
        super().__init__(message)
        self.tx_ref = tx_ref


class HostingProviderError(SettlementError):
    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class ConfigurationError(ValueError):
    """Raised when required runtime configuration is missing or invalid."""


_NOTHING_TO_REFUND_MARKERS = ("nothing to refund",)
_ALREADY_FINALIZED_MARKERS = (
    "already settled",
    "already complete",
    "already finalized",
    "match not active",
)


def _revert_reason(exc: BaseException) -> str:
    reason = getattr(exc, "reason", None) or str(exc)
    return str(reason).casefold()


def is_nothing_to_refund(exc: BaseException) -> bool:
    if not isinstance(exc, LedgerRevertError):
        return False
    reason = _revert_reason(exc)
    return any(marker in reason for marker in _NOTHING_TO_REFUND_MARKERS)


def is_already_finalized(exc: BaseException) -> bool:
    if not isinstance(exc, LedgerRevertError):
        return False
    reason = _revert_reason(exc)
    return any(marker in reason for marker in _ALREADY_FINALIZED_MARKERS)


@dataclass(frozen=True)
class MatchSettlement:
    match_id: str
    ledger_match_id: str
    player1: str | None
    player2: str | None
    lifecycle_status: LifecycleStatus
    payout_status: PayoutStatus
    stake_wei: int = 0
    winner_address: str | None = None
    settlement_kind: SettlementKind | None = None
    lock_id: str | None = None
    lock_acquired_at: int | None = None
    settlement_attempts: int = 0
    payout_tx_ref: str | None = None
    refund_tx_ref_1: str | None = None
    refund_tx_ref_2: str | None = None
    last_settlement_error: str | None = None
    settled_at: int | None = None
    correlation_id: str | None = None
    server_id: str | None = None
    payout_event_id: str | None = None
    hosting_status_snapshot: str | None = None
    match_started_at: int | None = None
    created_at: int = 0
    updated_at: int = 0

    @property
    def players(self) -> tuple[str | None, str | None]:
        return (self.player1, self.player2)

    @property
    def is_terminal(self) -> bool:
        return self.payout_status in TERMINAL_PAYOUT_STATUSES

    def refund_tx_ref(self, leg: int) -> str | None:
        if leg == 1:
            return self.refund_tx_ref_1
        if leg == 2:
            return self.refund_tx_ref_2
        raise ValueError(f"refund leg must be 1 or 2, got {leg}")

    def player_leg(self, address: str | None) -> int | None:
        if same_address(address, self.player1):
            return 1
        if same_address(address, self.player2):
            return 2
        return None


@dataclass(frozen=True)
class LedgerMatch:
    """Escrow state for one match key as reported by the ledger."""

    player1: str | None
    player2: str | None
    stake_wei: int
    pot_wei: int
    player1_deposited: bool
    player2_deposited: bool
    is_complete: bool
    is_active: bool
    winner: str | None

    @property
    def exists(self) -> bool:
        return self.player1 is not None or self.player2 is not None

    @property
    def is_closed(self) -> bool:
        return self.exists and self.is_complete and not self.is_active and self.pot_wei == 0


@dataclass(frozen=True)
class TxLookup:
    found: bool
    block_number: int | None = None
    status: int | None = None

    @property
    def mined(self) -> bool:
        return self.block_number is not None


@dataclass(frozen=True)
class ReconcileResult:
    done: bool
    reason: str


class SettlementOutcome(StrEnum):
    NOT_FOUND = "not_found"
    RECONCILED = "reconciled"
    LOCK_NOT_ACQUIRED = "lock_not_acquired"
    LOCK_LOST = "lock_lost"
    PAID = "paid"
    REFUNDED = "refunded"
    FAILED = "failed"
    INVALID = "invalid"


@dataclass(frozen=True)
class SettlementResult:
    outcome: SettlementOutcome
    reason: str
    tx_refs: tuple[str, ...] = ()
