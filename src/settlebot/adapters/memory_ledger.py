from __future__ import annotations

import threading
from collections.abc import Callable
from dataclasses import dataclass

from settlebot.adapters.ledger import LedgerClient
from settlebot.domain.models import (
    LedgerMatch,
    LedgerRevertError,
    TxLookup,
    normalize_address,
)


@dataclass
class _EscrowMatch:
    player1: str
    player2: str
    stake_wei: int
    player1_deposited: bool = False
    player2_deposited: bool = False
    pot_wei: int = 0
    is_complete: bool = False
    is_active: bool = True
    winner: str | None = None


@dataclass
class _Transaction:
    kind: str
    apply: Callable[[], None]
    check: Callable[[], None]
    block_number: int | None = None
    status: int | None = None


class InMemoryLedger(LedgerClient):
    """Single-process escrow simulation used for dry runs and tests.

    Calls are checked when broadcast (so rejections surface as
    ``LedgerRevertError`` like a failed gas estimate) and applied when mined.
    With ``auto_mine`` disabled transactions stay pending until
    ``mine_pending`` is called.
    """

    def __init__(self, *, fee_bps: int = 0, auto_mine: bool = True) -> None:
        self.fee_bps = fee_bps
        self.auto_mine = auto_mine
        self.calls: list[tuple[str, tuple[object, ...]]] = []
        self.wallet_balances: dict[str, int] = {}
        self._matches: dict[str, _EscrowMatch] = {}
        self._claimable: dict[str, int] = {}
        self._transactions: dict[str, _Transaction] = {}
        self._injected: dict[str, list[Exception]] = {}
        self._block_number = 0
        self._tx_counter = 0
        self._lock = threading.RLock()

    def call_count(self, method: str) -> int:
        with self._lock:
            return sum(1 for name, _ in self.calls if name == method)

    def fail_next(self, method: str, exc: Exception) -> None:
        with self._lock:
            self._injected.setdefault(method, []).append(exc)

    def deposit(self, ledger_key: str, player: str) -> str:
        """Player-side deposit; settlement never calls this."""
        with self._lock:
            match = self._require_match(ledger_key)
            leg = self._leg_of(match, player)
            if leg is None:
                raise LedgerRevertError("Not a player", reason="Not a player")
            if getattr(match, f"player{leg}_deposited"):
                raise LedgerRevertError("Already deposited", reason="Already deposited")
            setattr(match, f"player{leg}_deposited", True)
            match.pot_wei += match.stake_wei
            return self._next_tx_ref()

    def mine_pending(self) -> list[str]:
        with self._lock:
            mined: list[str] = []
            for tx_ref, tx in self._transactions.items():
                if tx.block_number is None:
                    self._mine(tx)
                    mined.append(tx_ref)
            return mined

    def drop_transaction(self, tx_ref: str) -> None:
        with self._lock:
            tx = self._transactions.get(tx_ref)
            if tx is not None and tx.block_number is None:
                del self._transactions[tx_ref]

    def create_match(self, ledger_key: str, player1: str, player2: str, stake_wei: int) -> str:
        def check() -> None:
            if ledger_key in self._matches:
                raise LedgerRevertError("Match already exists", reason="Match already exists")

        def apply() -> None:
            self._matches[ledger_key] = _EscrowMatch(
                player1=player1, player2=player2, stake_wei=int(stake_wei)
            )

        return self._submit("create_match", (ledger_key, player1, player2, stake_wei), check, apply)

    def settle(self, ledger_key: str, winner: str) -> str:
        def check() -> None:
            match = self._require_match(ledger_key)
            if match.is_complete or not match.is_active:
                raise LedgerRevertError("Match not active", reason="Match not active")
            if self._leg_of(match, winner) is None:
                raise LedgerRevertError("Winner not a player", reason="Winner not a player")
            if match.pot_wei <= 0:
                raise LedgerRevertError("Empty pot", reason="Empty pot")

        def apply() -> None:
            match = self._matches[ledger_key]
            fee = match.pot_wei * self.fee_bps // 10_000
            key = normalize_address(winner) or winner
            self._claimable[key] = self._claimable.get(key, 0) + match.pot_wei - fee
            match.pot_wei = 0
            match.winner = winner
            match.is_complete = True
            match.is_active = False

        return self._submit("settle", (ledger_key, winner), check, apply)

    def cancel(self, ledger_key: str, player: str, reason: str = "") -> str:
        def check() -> None:
            match = self._require_match(ledger_key)
            leg = self._leg_of(match, player)
            if leg is None or not getattr(match, f"player{leg}_deposited"):
                raise LedgerRevertError("Nothing to refund", reason="Nothing to refund")
            if not match.is_active:
                raise LedgerRevertError("Match not active", reason="Match not active")

        def apply() -> None:
            match = self._matches[ledger_key]
            leg = self._leg_of(match, player)
            setattr(match, f"player{leg}_deposited", False)
            match.pot_wei -= match.stake_wei
            key = normalize_address(player) or player
            self.wallet_balances[key] = self.wallet_balances.get(key, 0) + match.stake_wei
            if match.pot_wei == 0:
                match.is_complete = True
                match.is_active = False

        return self._submit("cancel", (ledger_key, player, reason), check, apply)

    def claimable_balance_of(self, address: str) -> int:
        with self._lock:
            self._raise_injected("claimable_balance_of")
            return self._claimable.get(normalize_address(address) or address, 0)

    def withdraw_to(self, address: str) -> str:
        key = normalize_address(address) or address

        def check() -> None:
            if self._claimable.get(key, 0) <= 0:
                raise LedgerRevertError("Nothing to withdraw", reason="Nothing to withdraw")

        def apply() -> None:
            amount = self._claimable.pop(key, 0)
            self.wallet_balances[key] = self.wallet_balances.get(key, 0) + amount

        return self._submit("withdraw_to", (address,), check, apply)

    def get_match(self, ledger_key: str) -> LedgerMatch:
        with self._lock:
            self.calls.append(("get_match", (ledger_key,)))
            self._raise_injected("get_match")
            match = self._matches.get(ledger_key)
            if match is None:
                return LedgerMatch(
                    player1=None,
                    player2=None,
                    stake_wei=0,
                    pot_wei=0,
                    player1_deposited=False,
                    player2_deposited=False,
                    is_complete=False,
                    is_active=False,
                    winner=None,
                )
            return LedgerMatch(
                player1=match.player1,
                player2=match.player2,
                stake_wei=match.stake_wei,
                pot_wei=match.pot_wei,
                player1_deposited=match.player1_deposited,
                player2_deposited=match.player2_deposited,
                is_complete=match.is_complete,
                is_active=match.is_active,
                winner=match.winner,
            )

    def lookup_transaction(self, tx_ref: str) -> TxLookup:
        with self._lock:
            self._raise_injected("lookup_transaction")
            tx = self._transactions.get(tx_ref)
            if tx is None:
                return TxLookup(found=False)
            return TxLookup(found=True, block_number=tx.block_number, status=tx.status)

    def _submit(
        self,
        method: str,
        args: tuple[object, ...],
        check: Callable[[], None],
        apply: Callable[[], None],
    ) -> str:
        with self._lock:
            self.calls.append((method, args))
            self._raise_injected(method)
            check()
            tx_ref = self._next_tx_ref()
            tx = _Transaction(kind=method, apply=apply, check=check)
            self._transactions[tx_ref] = tx
            if self.auto_mine:
                self._mine(tx)
            return tx_ref

    def _mine(self, tx: _Transaction) -> None:
        self._block_number += 1
        tx.block_number = self._block_number
        try:
            tx.check()
        except LedgerRevertError:
            tx.status = 0
            return
        tx.apply()
        tx.status = 1

    def _raise_injected(self, method: str) -> None:
        queued = self._injected.get(method)
        if queued:
            raise queued.pop(0)

    def _next_tx_ref(self) -> str:
        self._tx_counter += 1
        return f"0x{self._tx_counter:064x}"

    def _require_match(self, ledger_key: str) -> _EscrowMatch:
        match = self._matches.get(ledger_key)
        if match is None:
            raise LedgerRevertError("Match not found", reason="Match not found")
        return match

    @staticmethod
    def _leg_of(match: _EscrowMatch, address: str) -> int | None:
        target = normalize_address(address)
        if target is None:
            return None
        if target == normalize_address(match.player1):
            return 1
        if target == normalize_address(match.player2):
            return 2
        return None

