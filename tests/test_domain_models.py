from __future__ import annotations

import pytest

from settlebot.domain.models import (
    LedgerError,
    LedgerMatch,
    LedgerRevertError,
    LifecycleStatus,
    MatchSettlement,
    PayoutStatus,
    TxLookup,
    is_already_finalized,
    is_nothing_to_refund,
    same_address,
)

PLAYER1 = "0xAbCdEf0000000000000000000000000000000001"
PLAYER2 = "0x2222222222222222222222222222222222222222"


def _record(**overrides) -> MatchSettlement:
    base = {
        "match_id": "1",
        "ledger_match_id": "0x01",
        "player1": PLAYER1,
        "player2": PLAYER2,
        "lifecycle_status": LifecycleStatus.LIVE,
        "payout_status": PayoutStatus.PENDING,
    }
    base.update(overrides)
    return MatchSettlement(**base)


def test_player_leg_is_case_insensitive() -> None:
    record = _record()

    assert record.player_leg(PLAYER1.lower()) == 1
    assert record.player_leg(f" {PLAYER2.upper().replace('0X', '0x')} ") == 2
    assert record.player_leg("0x3333333333333333333333333333333333333333") is None
    assert record.player_leg(None) is None


def test_same_address_rejects_missing_values() -> None:
    assert same_address(None, None) is False
    assert same_address("", "") is False
    assert same_address(PLAYER1, PLAYER1.lower()) is True


@pytest.mark.parametrize("status", [PayoutStatus.PAID, PayoutStatus.REFUNDED])
def test_terminal_statuses(status: PayoutStatus) -> None:
    assert _record(payout_status=status).is_terminal is True


@pytest.mark.parametrize(
    "status",
    [
        PayoutStatus.PENDING,
        PayoutStatus.PROCESSING,
        PayoutStatus.FAILED,
        PayoutStatus.REFUND_FAILED,
    ],
)
def test_non_terminal_statuses(status: PayoutStatus) -> None:
    assert _record(payout_status=status).is_terminal is False


def test_refund_tx_ref_by_leg() -> None:
    record = _record(refund_tx_ref_1="0xa", refund_tx_ref_2="0xb")

    assert record.refund_tx_ref(1) == "0xa"
    assert record.refund_tx_ref(2) == "0xb"
    with pytest.raises(ValueError):
        record.refund_tx_ref(3)


def test_revert_classification() -> None:
    nothing = LedgerRevertError("refundMatch reverted", reason="Nothing to refund")
    inactive = LedgerRevertError("distributeWinnings reverted", reason="Match not active")
    transport = LedgerError("Nothing to refund")

    assert is_nothing_to_refund(nothing) is True
    assert is_already_finalized(nothing) is False
    assert is_already_finalized(inactive) is True
    assert is_nothing_to_refund(transport) is False
    assert is_already_finalized(transport) is False


def test_ledger_match_closed_requires_empty_inactive_pot() -> None:
    closed = LedgerMatch(
        player1=PLAYER1,
        player2=PLAYER2,
        stake_wei=1,
        pot_wei=0,
        player1_deposited=False,
        player2_deposited=False,
        is_complete=True,
        is_active=False,
        winner=None,
    )
    still_funded = LedgerMatch(
        player1=PLAYER1,
        player2=PLAYER2,
        stake_wei=1,
        pot_wei=1,
        player1_deposited=True,
        player2_deposited=False,
        is_complete=True,
        is_active=False,
        winner=None,
    )

    assert closed.is_closed is True
    assert still_funded.is_closed is False


def test_tx_lookup_mined_flag() -> None:
    assert TxLookup(found=True).mined is False
    assert TxLookup(found=True, block_number=12, status=1).mined is True
