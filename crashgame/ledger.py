# ledger.py
"""
Bet Ledger – per-round record of who is playing, for how much, and how
each bet ended.

The ledger enforces bet-level rules only (one bet per player, one cashout
per bet). Phase checks and the multiplier authority live in CrashRound,
which serializes every ledger mutation behind its round lock.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from decimal import Decimal, ROUND_DOWN
from typing import Any, Dict, Iterator, List, Optional

from crashgame.errors import AlreadyCashedOut, DuplicateBet, NoSuchBet
from crashgame.utils import safe_decimal, to_float

CENTS = Decimal("0.01")


class BetOutcome:
    PENDING = "pending"
    WON = "won"
    LOST = "lost"


@dataclass
class Bet:
    player_id: str
    username: str
    amount: Decimal
    auto_cashout: Optional[Decimal] = None
    placed_at: float = field(default_factory=time.time)

    # Outcome
    cashout_multiplier: Optional[Decimal] = None
    cashed_out_at: Optional[float] = None

    @property
    def cashed_out(self) -> bool:
        return self.cashout_multiplier is not None

    @property
    def payout(self) -> Decimal:
        """Gross amount credited at settlement (stake included)."""
        if self.cashout_multiplier is None:
            return Decimal("0.00")
        return (self.amount * self.cashout_multiplier).quantize(CENTS, rounding=ROUND_DOWN)

    @property
    def profit(self) -> Decimal:
        return self.payout - self.amount

    def outcome(self, crashed: bool) -> str:
        if self.cashout_multiplier is not None:
            return BetOutcome.WON
        if crashed:
            return BetOutcome.LOST
        return BetOutcome.PENDING

    def to_dict(self, crashed: bool = False) -> Dict[str, Any]:
        return {
            "player_id": self.player_id,
            "username": self.username,
            "amount": float(self.amount),
            "auto_cashout": to_float(self.auto_cashout),
            "placed_at": self.placed_at,
            "cashout_multiplier": to_float(self.cashout_multiplier),
            "cashed_out_at": self.cashed_out_at,
            "payout": float(self.payout),
            "profit": float(self.profit) if self.cashed_out else None,
            "outcome": self.outcome(crashed),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Bet":
        auto = data.get("auto_cashout")
        mult = data.get("cashout_multiplier")
        return cls(
            player_id=data["player_id"],
            username=data.get("username") or data["player_id"],
            amount=safe_decimal(data["amount"]),
            auto_cashout=safe_decimal(auto) if auto is not None else None,
            placed_at=data.get("placed_at") or time.time(),
            cashout_multiplier=safe_decimal(mult) if mult is not None else None,
            cashed_out_at=data.get("cashed_out_at"),
        )


class BetLedger:
    """Bets of a single round, keyed by player id."""

    def __init__(self) -> None:
        self._bets: Dict[str, Bet] = {}

    def __len__(self) -> int:
        return len(self._bets)

    def __iter__(self) -> Iterator[Bet]:
        return iter(self._bets.values())

    def __contains__(self, player_id: str) -> bool:
        return player_id in self._bets

    def get(self, player_id: str) -> Bet:
        bet = self._bets.get(player_id)
        if bet is None:
            raise NoSuchBet(f"No bet for player {player_id}")
        return bet

    def check_admissible(self, player_id: str) -> None:
        if player_id in self._bets:
            raise DuplicateBet(f"Player {player_id} already has a bet this round")

    def admit(self, bet: Bet) -> Bet:
        self.check_admissible(bet.player_id)
        self._bets[bet.player_id] = bet
        return bet

    def record_cashout(self, player_id: str, multiplier: Decimal, at: float) -> Bet:
        bet = self.get(player_id)
        if bet.cashout_multiplier is not None:
            raise AlreadyCashedOut(
                f"Player {player_id} already cashed out at {bet.cashout_multiplier}"
            )
        bet.cashout_multiplier = multiplier
        bet.cashed_out_at = at
        return bet

    def due_auto_cashouts(self, multiplier: float, crash_point: Decimal) -> List[Bet]:
        """
        Uncashed bets whose target has been reached by `multiplier` without
        exceeding the crash point, lowest target first.
        """
        due = [
            bet for bet in self._bets.values()
            if bet.cashout_multiplier is None
            and bet.auto_cashout is not None
            and bet.auto_cashout <= crash_point
            and float(bet.auto_cashout) <= multiplier
        ]
        return sorted(due, key=lambda b: b.auto_cashout)

    def snapshot(self, crashed: bool = False) -> Dict[str, Dict[str, Any]]:
        return {pid: bet.to_dict(crashed) for pid, bet in self._bets.items()}

    @classmethod
    def from_snapshot(cls, players: Optional[Dict[str, Dict[str, Any]]]) -> "BetLedger":
        ledger = cls()
        for data in (players or {}).values():
            ledger.admit(Bet.from_dict(data))
        return ledger
