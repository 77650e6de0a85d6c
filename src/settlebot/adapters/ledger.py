from __future__ import annotations

from abc import ABC, abstractmethod

from settlebot.domain.models import LedgerMatch, TxLookup


class LedgerClient(ABC):
    """Escrow ledger operations used by settlement.

    Write methods return the transaction reference as soon as the transaction
    is broadcast; they never wait for it to be mined. Rejections raise
    ``LedgerRevertError`` and transport failures raise ``LedgerError``.
    """

    @abstractmethod
    def create_match(self, ledger_key: str, player1: str, player2: str, stake_wei: int) -> str:
        raise NotImplementedError

    @abstractmethod
    def settle(self, ledger_key: str, winner: str) -> str:
        raise NotImplementedError

    @abstractmethod
    def cancel(self, ledger_key: str, player: str, reason: str = "") -> str:
        """Refund ``player``'s deposit for ``ledger_key``."""
        raise NotImplementedError

    @abstractmethod
    def claimable_balance_of(self, address: str) -> int:
        raise NotImplementedError

    @abstractmethod
    def withdraw_to(self, address: str) -> str:
        raise NotImplementedError

    @abstractmethod
    def get_match(self, ledger_key: str) -> LedgerMatch:
        raise NotImplementedError

    @abstractmethod
    def lookup_transaction(self, tx_ref: str) -> TxLookup:
        raise NotImplementedError

    def close(self) -> None:
        return None
