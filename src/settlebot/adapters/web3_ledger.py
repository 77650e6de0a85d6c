from __future__ import annotations

import logging
import threading
from typing import Any

from web3 import Web3
from web3.exceptions import ContractLogicError, TransactionNotFound, Web3Exception

from settlebot.adapters.ledger import LedgerClient
from settlebot.domain.match_key import ledger_key_bytes
from settlebot.domain.models import (
    ZERO_ADDRESS,
    ConfigurationError,
    LedgerError,
    LedgerMatch,
    LedgerRevertError,
    TxLookup,
)
from settlebot.observability import get_instrumentation

logger = logging.getLogger(__name__)

_BYTES32 = {"internalType": "bytes32", "name": "matchId", "type": "bytes32"}

ESCROW_ABI: list[dict[str, Any]] = [
    {
        "type": "function",
        "name": "createMatch",
        "stateMutability": "nonpayable",
        "inputs": [
            _BYTES32,
            {"internalType": "address", "name": "player1", "type": "address"},
            {"internalType": "address", "name": "player2", "type": "address"},
            {"internalType": "uint256", "name": "stake", "type": "uint256"},
        ],
        "outputs": [],
    },
    {
        "type": "function",
        "name": "distributeWinnings",
        "stateMutability": "nonpayable",
        "inputs": [_BYTES32, {"internalType": "address", "name": "winner", "type": "address"}],
        "outputs": [],
    },
    {
        "type": "function",
        "name": "refundMatch",
        "stateMutability": "nonpayable",
        "inputs": [_BYTES32, {"internalType": "address", "name": "player", "type": "address"}],
        "outputs": [],
    },
    {
        "type": "function",
        "name": "claimable",
        "stateMutability": "view",
        "inputs": [{"internalType": "address", "name": "account", "type": "address"}],
        "outputs": [{"internalType": "uint256", "name": "", "type": "uint256"}],
    },
    {
        "type": "function",
        "name": "withdrawTo",
        "stateMutability": "nonpayable",
        "inputs": [{"internalType": "address", "name": "account", "type": "address"}],
        "outputs": [],
    },
    {
        "type": "function",
        "name": "getMatch",
        "stateMutability": "view",
        "inputs": [_BYTES32],
        "outputs": [
            {"internalType": "address", "name": "player1", "type": "address"},
            {"internalType": "address", "name": "player2", "type": "address"},
            {"internalType": "uint256", "name": "stake", "type": "uint256"},
            {"internalType": "uint256", "name": "pot", "type": "uint256"},
            {"internalType": "bool", "name": "player1Deposited", "type": "bool"},
            {"internalType": "bool", "name": "player2Deposited", "type": "bool"},
            {"internalType": "bool", "name": "isComplete", "type": "bool"},
            {"internalType": "bool", "name": "isActive", "type": "bool"},
            {"internalType": "address", "name": "winner", "type": "address"},
        ],
    },
]

_TRANSPORT_ERRORS = (Web3Exception, OSError, ValueError)


def _revert_reason(exc: ContractLogicError) -> str:
    message = getattr(exc, "message", None) or str(exc)
    prefix = "execution reverted: "
    return message[len(prefix):] if message.startswith(prefix) else message


def _optional_address(value: str | None) -> str | None:
    if not value or value.lower() == ZERO_ADDRESS:
        return None
    return str(value)


class Web3LedgerClient(LedgerClient):
    def __init__(
        self,
        *,
        rpc_url: str,
        escrow_address: str,
        private_key: str,
        chain_id: int | None = None,
        request_timeout_seconds: float = 20.0,
        web3: Web3 | None = None,
    ) -> None:
        if not private_key:
            raise ConfigurationError("PAYOUT_PRIVATE_KEY is required for the web3 ledger")
        self.web3 = web3 or Web3(
            Web3.HTTPProvider(rpc_url, request_kwargs={"timeout": request_timeout_seconds})
        )
        self._account = self.web3.eth.account.from_key(private_key)
        self._contract = self.web3.eth.contract(
            address=Web3.to_checksum_address(escrow_address), abi=ESCROW_ABI
        )
        self._chain_id = chain_id
        self._send_lock = threading.Lock()

    @property
    def sender(self) -> str:
        return str(self._account.address)

    def create_match(self, ledger_key: str, player1: str, player2: str, stake_wei: int) -> str:
        return self._transact(
            "createMatch",
            ledger_key_bytes(ledger_key),
            Web3.to_checksum_address(player1),
            Web3.to_checksum_address(player2),
            int(stake_wei),
        )

    def settle(self, ledger_key: str, winner: str) -> str:
        return self._transact(
            "distributeWinnings", ledger_key_bytes(ledger_key), Web3.to_checksum_address(winner)
        )

    def cancel(self, ledger_key: str, player: str, reason: str = "") -> str:
        logger.info(
            "ledger_refund_requested",
            extra={"extra": {"ledger_match_id": ledger_key, "player": player, "reason": reason}},
        )
        return self._transact(
            "refundMatch", ledger_key_bytes(ledger_key), Web3.to_checksum_address(player)
        )

    def claimable_balance_of(self, address: str) -> int:
        return int(self._call("claimable", Web3.to_checksum_address(address)))

    def withdraw_to(self, address: str) -> str:
        return self._transact("withdrawTo", Web3.to_checksum_address(address))

    def get_match(self, ledger_key: str) -> LedgerMatch:
        (
            player1,
            player2,
            stake,
            pot,
            player1_deposited,
            player2_deposited,
            is_complete,
            is_active,
            winner,
        ) = self._call("getMatch", ledger_key_bytes(ledger_key))
        return LedgerMatch(
            player1=_optional_address(player1),
            player2=_optional_address(player2),
            stake_wei=int(stake),
            pot_wei=int(pot),
            player1_deposited=bool(player1_deposited),
            player2_deposited=bool(player2_deposited),
            is_complete=bool(is_complete),
            is_active=bool(is_active),
            winner=_optional_address(winner),
        )

    def lookup_transaction(self, tx_ref: str) -> TxLookup:
        try:
            tx = self.web3.eth.get_transaction(tx_ref)
        except TransactionNotFound:
            return TxLookup(found=False)
        except _TRANSPORT_ERRORS as exc:
            raise LedgerError(f"get_transaction failed: {exc}") from exc
        if tx.get("blockNumber") is None:
            return TxLookup(found=True)
        try:
            receipt = self.web3.eth.get_transaction_receipt(tx_ref)
        except TransactionNotFound:
            return TxLookup(found=True)
        except _TRANSPORT_ERRORS as exc:
            raise LedgerError(f"get_transaction_receipt failed: {exc}") from exc
        return TxLookup(
            found=True,
            block_number=int(receipt["blockNumber"]),
            status=int(receipt["status"]),
        )

    def _call(self, fn_name: str, *args: Any) -> Any:
        try:
            return getattr(self._contract.functions, fn_name)(*args).call()
        except ContractLogicError as exc:
            raise LedgerRevertError(f"{fn_name} reverted", reason=_revert_reason(exc)) from exc
        except _TRANSPORT_ERRORS as exc:
            raise LedgerError(f"{fn_name} call failed: {exc}") from exc

    def _transact(self, fn_name: str, *args: Any) -> str:
        function = getattr(self._contract.functions, fn_name)(*args)
        with self._send_lock:
            try:
                chain_id = self._chain_id or int(self.web3.eth.chain_id)
                nonce = self.web3.eth.get_transaction_count(self.sender, "pending")
                tx = function.build_transaction(
                    {"from": self.sender, "nonce": nonce, "chainId": chain_id}
                )
                signed = self._account.sign_transaction(tx)
                tx_hash = self.web3.eth.send_raw_transaction(signed.raw_transaction)
            except ContractLogicError as exc:
                reason = _revert_reason(exc)
                logger.warning(
                    "ledger_call_reverted",
                    extra={"extra": {"function": fn_name, "reason": reason}},
                )
                raise LedgerRevertError(f"{fn_name} reverted: {reason}", reason=reason) from exc
            except _TRANSPORT_ERRORS as exc:
                raise LedgerError(f"{fn_name} broadcast failed: {exc}") from exc
        tx_ref = Web3.to_hex(tx_hash)
        get_instrumentation().counter("ledger_tx_broadcast", 1, attrs={"function": fn_name})
        logger.info(
            "ledger_tx_broadcast",
            extra={"extra": {"function": fn_name, "tx_ref": tx_ref, "nonce": nonce}},
        )
        return tx_ref
