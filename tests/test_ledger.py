from decimal import Decimal

import pytest

from crashgame.errors import AlreadyCashedOut, DuplicateBet, NoSuchBet
from crashgame.ledger import Bet, BetLedger, BetOutcome


def bet(player_id="alice", amount="100.00", auto=None):
    return Bet(
        player_id=player_id,
        username=player_id.title(),
        amount=Decimal(amount),
        auto_cashout=Decimal(auto) if auto else None,
    )


def test_outcome_follows_cashout_and_crash():
    b = bet()
    assert b.outcome(crashed=False) == BetOutcome.PENDING
    assert b.outcome(crashed=True) == BetOutcome.LOST

    b.cashout_multiplier = Decimal("2.50")
    assert b.outcome(crashed=False) == BetOutcome.WON
    assert b.outcome(crashed=True) == BetOutcome.WON


def test_payout_and_profit():
    b = bet(amount="100.00")
    assert b.payout == Decimal("0.00")

    b.cashout_multiplier = Decimal("2.50")
    assert b.payout == Decimal("250.00")
    assert b.profit == Decimal("150.00")


def test_payout_rounds_down_to_cents():
    b = bet(amount="0.33")
    b.cashout_multiplier = Decimal("1.55")
    # 0.5115
    assert b.payout == Decimal("0.51")


def test_duplicate_bet_keeps_the_first():
    ledger = BetLedger()
    ledger.admit(bet("alice", "100.00"))

    with pytest.raises(DuplicateBet):
        ledger.admit(bet("alice", "5.00"))

    assert len(ledger) == 1
    assert ledger.get("alice").amount == Decimal("100.00")


def test_cashout_once():
    ledger = BetLedger()
    ledger.admit(bet("alice"))

    ledger.record_cashout("alice", Decimal("1.80"), at=10.0)
    with pytest.raises(AlreadyCashedOut):
        ledger.record_cashout("alice", Decimal("2.00"), at=11.0)

    assert ledger.get("alice").cashout_multiplier == Decimal("1.80")
    assert ledger.get("alice").cashed_out_at == 10.0


def test_unknown_player():
    ledger = BetLedger()
    with pytest.raises(NoSuchBet):
        ledger.get("bob")
    with pytest.raises(NoSuchBet):
        ledger.record_cashout("bob", Decimal("1.50"), at=1.0)


def test_due_auto_cashouts():
    ledger = BetLedger()
    ledger.admit(bet("a", auto="1.50"))
    ledger.admit(bet("b", auto="1.20"))
    ledger.admit(bet("c", auto="2.50"))
    ledger.admit(bet("d"))

    due = ledger.due_auto_cashouts(1.6, crash_point=Decimal("2.00"))
    assert [b.player_id for b in due] == ["b", "a"]

    # Targets above the crash point never fire, whatever the sample says
    due = ledger.due_auto_cashouts(3.0, crash_point=Decimal("2.00"))
    assert [b.player_id for b in due] == ["b", "a"]


def test_snapshot_round_trip():
    ledger = BetLedger()
    ledger.admit(bet("alice", "12.50", auto="3.00"))
    ledger.admit(bet("bob", "7.00"))
    ledger.record_cashout("bob", Decimal("1.42"), at=5.0)

    snapshot = ledger.snapshot(crashed=True)
    assert snapshot["alice"]["outcome"] == "lost"
    assert snapshot["bob"]["outcome"] == "won"
    assert snapshot["bob"]["payout"] == 9.94

    restored = BetLedger.from_snapshot(snapshot)
    assert restored.get("alice").auto_cashout == Decimal("3.00")
    assert restored.get("alice").amount == Decimal("12.50")
    assert restored.get("bob").cashout_multiplier == Decimal("1.42")
