# engine.py
"""
Crash Round State Machine

Responsibilities:
- Strict lifecycle (WAITING -> RUNNING -> CRASHED), each transition once
- Authoritative multiplier: a pure function of (start_time, now)
- Bet admission and cashout linearized behind one per-round lock
- Auto-cashouts evaluated before the crash check on every tick
"""

from __future__ import annotations

import os
import time
import asyncio
import logging
from enum import Enum
from dataclasses import dataclass, field
from decimal import Decimal, ROUND_DOWN, getcontext
from typing import Any, Callable, ClassVar, Dict, List, Optional, Union

from crashgame.errors import AlreadyCashedOut, InvalidState
from crashgame.fairness import RoundSeed, crash_point_for_seed
from crashgame.ledger import Bet, BetLedger
from crashgame.utils import format_balance, format_multiplier, safe_decimal

# Ensure high precision for internal calculations
getcontext().prec = 50

logger = logging.getLogger("crashgame.engine")

Clock = Callable[[], float]

# =========================
# CONFIGURATION
# =========================

HOUSE_EDGE = float(os.getenv("HOUSE_EDGE", "0.01"))
GROWTH_RATE = float(os.getenv("GROWTH_RATE", "0.1"))
GROWTH_EXPONENT = float(os.getenv("GROWTH_EXPONENT", "1.5"))
MAX_CRASH_POINT = Decimal(os.getenv("MAX_CRASH_POINT", "1000.00"))

IDLE_WINDOW_SEC = float(os.getenv("IDLE_WINDOW_SEC", "30"))
COUNTDOWN_SEC = float(os.getenv("COUNTDOWN_SEC", "10"))
TICK_INTERVAL_SEC = float(os.getenv("TICK_INTERVAL_SEC", "0.05"))
COOLDOWN_SEC = float(os.getenv("COOLDOWN_SEC", "3"))

CLIENT_SEED = os.getenv("CLIENT_SEED", "crashgame-public-seed")


@dataclass
class GameConfig:
    # --- FAIRNESS ---
    house_edge: float = HOUSE_EDGE
    max_crash_point: Decimal = MAX_CRASH_POINT
    client_seed: str = CLIENT_SEED

    # --- GAMEPLAY SPEED ---
    # multiplier = 1 + growth_rate * t ** growth_exponent (t in seconds)
    # 0.1 / 1.5 reaches 2.00x after ~4.6s
    growth_rate: float = GROWTH_RATE
    growth_exponent: float = GROWTH_EXPONENT

    # --- ROUND TIMING ---
    # Waiting for the first bet before the countdown starts anyway
    idle_window_sec: float = IDLE_WINDOW_SEC
    countdown_sec: float = COUNTDOWN_SEC
    # 20 Hz crash detection
    tick_interval_sec: float = TICK_INTERVAL_SEC
    cooldown_sec: float = COOLDOWN_SEC

# =========================
# STATES
# =========================

class RoundStatus(str, Enum):
    WAITING = "waiting"  # Accepting bets
    RUNNING = "running"  # Multiplier rising, cashouts allowed
    CRASHED = "crashed"  # Terminal


@dataclass(frozen=True)
class Waiting:
    status: ClassVar[RoundStatus] = RoundStatus.WAITING


@dataclass(frozen=True)
class Running:
    start_time: float
    status: ClassVar[RoundStatus] = RoundStatus.RUNNING


@dataclass(frozen=True)
class Crashed:
    start_time: float
    end_time: float
    status: ClassVar[RoundStatus] = RoundStatus.CRASHED


Phase = Union[Waiting, Running, Crashed]

# =========================
# MULTIPLIER CURVE
# =========================

def multiplier_at(
    elapsed: float,
    growth_rate: float = GROWTH_RATE,
    exponent: float = GROWTH_EXPONENT,
) -> float:
    """
    Pure function: elapsed seconds -> multiplier.
    Formula: 1 + k * t^exponent
    """
    if elapsed <= 0:
        return 1.0
    return 1.0 + growth_rate * elapsed ** exponent


def seconds_to_reach(
    multiplier: float,
    growth_rate: float = GROWTH_RATE,
    exponent: float = GROWTH_EXPONENT,
) -> float:
    """Inverse of multiplier_at."""
    if multiplier <= 1.0:
        return 0.0
    return ((multiplier - 1.0) / growth_rate) ** (1.0 / exponent)


@dataclass
class TickResult:
    multiplier: float
    cashed_out: List[Bet] = field(default_factory=list)
    crashed: bool = False
    # True only on the tick that performed running -> crashed
    transitioned: bool = False

# =========================
# ROUND CLASS
# =========================

class CrashRound:
    """
    One round. The only writer of its own phase and bets.

    Every mutation runs under `self._lock`, so "is it still running" and
    "record this cashout" are checked and applied as one step, and the tick
    loop cannot interleave with a cashout.
    """

    def __init__(
        self,
        round_id: str,
        seed: RoundSeed,
        wallet: Any,
        config: Optional[GameConfig] = None,
        clock: Clock = time.time,
        crash_point: Optional[Decimal] = None,
        created_at: Optional[float] = None,
    ) -> None:
        self.config = config or GameConfig()
        self.round_id = round_id
        self.seed = seed
        self.wallet = wallet
        self._clock = clock
        # Fixed at creation, never recomputed
        self.crash_point: Decimal = crash_point if crash_point is not None else crash_point_for_seed(
            seed,
            house_edge=self.config.house_edge,
            max_crash=self.config.max_crash_point,
        )
        self.created_at = created_at if created_at is not None else clock()
        self.phase: Phase = Waiting()
        self.ledger = BetLedger()
        self._lock = asyncio.Lock()

    # =====================================================
    # READ-ONLY VIEW
    # =====================================================

    @property
    def status(self) -> RoundStatus:
        return self.phase.status

    @property
    def start_time(self) -> Optional[float]:
        return getattr(self.phase, "start_time", None)

    @property
    def end_time(self) -> Optional[float]:
        return getattr(self.phase, "end_time", None)

    def multiplier(self, now: Optional[float] = None) -> float:
        """
        Authoritative multiplier. Recomputed from wall-clock time on every
        call; frozen at the crash point once crashed.
        """
        if isinstance(self.phase, Crashed):
            return float(self.crash_point)
        if isinstance(self.phase, Waiting):
            return 1.0
        now = self._clock() if now is None else now
        return multiplier_at(
            now - self.phase.start_time,
            self.config.growth_rate,
            self.config.growth_exponent,
        )

    def crash_instant(self) -> Optional[float]:
        """Wall-clock time at which the curve reaches the crash point."""
        if self.start_time is None:
            return None
        return self.start_time + seconds_to_reach(
            float(self.crash_point),
            self.config.growth_rate,
            self.config.growth_exponent,
        )

    def snapshot(self) -> Dict[str, Any]:
        """
        Plain record for the state store. The crash point and server seed
        stay hidden until the round has crashed.
        """
        crashed = isinstance(self.phase, Crashed)
        return {
            "id": self.round_id,
            "status": self.status.value,
            "current_multiplier": self.multiplier(),
            "crash_point": float(self.crash_point) if crashed else None,
            "server_seed_hash": self.seed.server_seed_hash,
            "server_seed": self.seed.server_seed if crashed else None,
            "client_seed": self.seed.client_seed,
            "nonce": self.seed.nonce,
            "created_at": self.created_at,
            "start_time": self.start_time,
            "end_time": self.end_time,
            "players": self.ledger.snapshot(crashed),
            "settled": False,
        }

    @classmethod
    def from_record(
        cls,
        record: Dict[str, Any],
        server_seed: str,
        wallet: Any,
        config: Optional[GameConfig] = None,
        clock: Clock = time.time,
    ) -> "CrashRound":
        """Rebuild a round persisted by a previous process."""
        seed = RoundSeed(
            server_seed=server_seed,
            client_seed=record["client_seed"],
            nonce=int(record["nonce"]),
        )
        round_ = cls(
            round_id=record["id"],
            seed=seed,
            wallet=wallet,
            config=config,
            clock=clock,
            created_at=record.get("created_at"),
        )
        round_.ledger = BetLedger.from_snapshot(record.get("players"))

        status = RoundStatus(record["status"])
        if status == RoundStatus.RUNNING:
            round_.phase = Running(start_time=record["start_time"])
        elif status == RoundStatus.CRASHED:
            round_.phase = Crashed(start_time=record["start_time"], end_time=record["end_time"])
        return round_

    # =====================================================
    # LIFECYCLE (LOCKED)
    # =====================================================

    async def start(self) -> None:
        """WAITING -> RUNNING. Sets start_time exactly once."""
        async with self._lock:
            if not isinstance(self.phase, Waiting):
                raise InvalidState(f"Round {self.round_id} cannot start from {self.status.value}")
            self.phase = Running(start_time=self._clock())
            logger.info(f"Round {self.round_id} running with {len(self.ledger)} bets")

    async def tick(self) -> TickResult:
        """
        One authoritative observation.
        Order: multiplier -> auto-cashouts -> crash check.
        """
        async with self._lock:
            if isinstance(self.phase, Waiting):
                return TickResult(multiplier=1.0)
            if isinstance(self.phase, Crashed):
                return TickResult(multiplier=float(self.crash_point), crashed=True)

            now = self._clock()
            mult = self.multiplier(now)
            result = TickResult(multiplier=mult)

            for bet in self.ledger.due_auto_cashouts(mult, self.crash_point):
                # Paid at the target: the curve passed it before this sample
                self.ledger.record_cashout(bet.player_id, bet.auto_cashout, at=now)
                result.cashed_out.append(bet)
                logger.info(
                    f"Round {self.round_id}: auto-cashout {bet.player_id} "
                    f"at {format_multiplier(bet.auto_cashout)}"
                )

            if mult >= float(self.crash_point):
                self._crash(now)
                result.multiplier = float(self.crash_point)
                result.crashed = True
                result.transitioned = True

            return result

    async def crash_now(self, end_time: Optional[float] = None) -> List[Bet]:
        """
        RUNNING -> CRASHED without waiting for the tick loop (recovery).
        Auto-cashouts at or below the crash point are honoured first.
        """
        async with self._lock:
            if not isinstance(self.phase, Running):
                raise InvalidState(f"Round {self.round_id} is not running")
            end = self._clock() if end_time is None else end_time
            return self._crash_paying_targets(end)

    def _crash_paying_targets(self, end_time: float) -> List[Bet]:
        """Crash after paying every auto-cashout target the curve passed."""
        paid = []
        for bet in self.ledger.due_auto_cashouts(float(self.crash_point), self.crash_point):
            self.ledger.record_cashout(bet.player_id, bet.auto_cashout, at=end_time)
            paid.append(bet)
        self._crash(end_time)
        return paid

    def _crash(self, end_time: float) -> None:
        self.phase = Crashed(start_time=self.phase.start_time, end_time=end_time)
        logger.info(f"Round {self.round_id} crashed at {format_multiplier(self.crash_point)}")

    # =====================================================
    # BETTING ACTIONS (LOCKED)
    # =====================================================

    async def place_bet(
        self,
        player_id: str,
        username: str,
        amount: Union[Decimal, float, str],
        auto_cashout: Union[Decimal, float, str, None] = None,
    ) -> Bet:
        amount_dec = safe_decimal(amount).quantize(Decimal("0.01"), rounding=ROUND_DOWN)
        if amount_dec <= 0:
            raise ValueError("Bet must be positive")

        auto_dec = None
        if auto_cashout is not None:
            auto_dec = safe_decimal(auto_cashout).quantize(Decimal("0.01"), rounding=ROUND_DOWN)
            if auto_dec <= Decimal("1.00"):
                raise ValueError("Auto-cashout must be above x1.00")

        async with self._lock:
            if not isinstance(self.phase, Waiting):
                raise InvalidState(f"Round {self.round_id} is {self.status.value}, bets are closed")

            self.ledger.check_admissible(player_id)

            # Debit first: raises InsufficientFunds without touching the ledger
            await self.wallet.debit(
                player_id,
                amount_dec,
                round_id=self.round_id,
                reference="bet_entry",
            )

            bet = self.ledger.admit(Bet(
                player_id=player_id,
                username=username,
                amount=amount_dec,
                auto_cashout=auto_dec,
                placed_at=self._clock(),
            ))
            logger.info(
                f"Round {self.round_id}: {player_id} bet {format_balance(amount_dec)}"
                + (f" auto {format_multiplier(auto_dec)}" if auto_dec else "")
            )
            return bet

    async def cash_out(
        self,
        player_id: str,
        observed_multiplier: Union[Decimal, float, str, None] = None,
    ) -> Bet:
        """
        Player claims a win.
        The server multiplier at acceptance must not exceed the crash point;
        the recorded multiplier is min(observed, server).
        """
        requested = None
        if observed_multiplier is not None:
            requested = safe_decimal(observed_multiplier)
            if requested < Decimal("1.00"):
                raise ValueError("Invalid multiplier")

        async with self._lock:
            if isinstance(self.phase, Crashed):
                raise InvalidState(f"Round {self.round_id} already crashed")
            if not isinstance(self.phase, Running):
                raise InvalidState(f"Round {self.round_id} is not running")

            now = self._clock()
            server_mult = self.multiplier(now)

            # Crash instant already passed, even if no tick has observed it yet
            if server_mult > float(self.crash_point):
                self._crash_paying_targets(min(now, self.crash_instant()))
                raise InvalidState(f"Round {self.round_id} already crashed")

            bet = self.ledger.get(player_id)
            if bet.cashed_out:
                raise AlreadyCashedOut(
                    f"Player {player_id} already cashed out at {format_multiplier(bet.cashout_multiplier)}"
                )

            server_dec = Decimal(repr(server_mult))
            final_mult = min(requested, server_dec) if requested is not None else server_dec
            final_mult = max(
                final_mult.quantize(Decimal("0.01"), rounding=ROUND_DOWN),
                Decimal("1.00"),
            )

            bet = self.ledger.record_cashout(player_id, final_mult, at=now)
            logger.info(
                f"Round {self.round_id}: {player_id} cashed out at {format_multiplier(final_mult)}"
            )

            if server_mult >= float(self.crash_point):
                self._crash(now)

            return bet
