# orchestrator.py
"""
Round Orchestrator

The single authoritative process for rounds:

    open round (commit hash published)
      -> wait for a first bet or the idle window
      -> countdown
      -> running: tick every TICK_INTERVAL_SEC until the crash point
      -> crashed: settle (retried, idempotent)
      -> cooldown -> next round

Clients never compute crashes; they read records from the state store.
On start, `recover()` finishes whatever a previous process left behind.
"""

from __future__ import annotations

import time
import asyncio
import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from crashgame.engine import Clock, CrashRound, GameConfig, RoundStatus
from crashgame.errors import CrashGameError, InvalidState, RoundNotFound, StoreUnavailable
from crashgame.fairness import RoundSeed, verify_round
from crashgame.ledger import Bet
from crashgame.settlement import SettlementEngine, game_key, result_key
from crashgame.store import StateStore, with_backoff
from crashgame.utils import format_multiplier, format_timestamp, generate_unique_id, safe_decimal

logger = logging.getLogger("crashgame.orchestrator")

Sleep = Callable[[float], Awaitable[None]]

ENGINE_STATUS_KEY = "engine/status"

# Settlement retries before the round is left for recovery
SETTLE_ATTEMPTS = 5
# Pause between attempts to open a round while the store is down
OPEN_RETRY_SEC = 2.0


def secret_key(round_id: str) -> str:
    return f"round_secrets/{round_id}"


@dataclass
class QueuedBet:
    player_id: str
    amount: Decimal
    auto_cashout: Optional[Decimal] = None
    username: Optional[str] = None


class RoundOrchestrator:
    def __init__(
        self,
        store: StateStore,
        wallet: Any,
        config: Optional[GameConfig] = None,
        clock: Clock = time.time,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self.store = store
        self.wallet = wallet
        self.config = config or GameConfig()
        self.settlement = SettlementEngine(store, wallet)
        self._clock = clock
        self._sleep = sleep

        self._round: Optional[CrashRound] = None
        self._extras: Dict[str, Any] = {}
        self._first_bet = asyncio.Event()
        self._publish_lock = asyncio.Lock()
        self._queued: Dict[str, QueuedBet] = {}
        self._nonce = 0
        self._task: Optional[asyncio.Task] = None

        self.fatal_error: Optional[str] = None

    @property
    def current_round(self) -> Optional[CrashRound]:
        return self._round

    # =====================================================
    # PROCESS LIFECYCLE
    # =====================================================

    async def start(self) -> None:
        await self.recover()
        self._task = asyncio.create_task(self._run(), name="crash-orchestrator")

    async def stop(self) -> None:
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    async def _run(self) -> None:
        while True:
            round_ = self._round
            if round_ is None or round_.status == RoundStatus.CRASHED:
                round_ = await self._open_round_retrying()
            await self.run_round(round_)
            await self._sleep(self.config.cooldown_sec)

    async def run_round(self, round_: CrashRound) -> Dict[str, Any]:
        """Drives one round from its current phase through settlement."""
        if round_.status == RoundStatus.WAITING:
            await self._betting_phase(round_)
            await round_.start()
            self._extras.pop("countdown_ends_at", None)
            await self._publish(round_)

        if round_.status == RoundStatus.RUNNING:
            await self._flight(round_)

        return await self._settle(round_)

    # =====================================================
    # PHASES
    # =====================================================

    async def open_round(self) -> CrashRound:
        seed = RoundSeed.generate(self.config.client_seed, self._nonce + 1)
        round_ = CrashRound(
            round_id=generate_unique_id(),
            seed=seed,
            wallet=self.wallet,
            config=self.config,
            clock=self._clock,
        )

        # Secret first: a published round must always be recoverable
        await with_backoff(
            lambda: self.store.set(secret_key(round_.round_id), {"server_seed": seed.server_seed}),
            what=f"store seed {round_.round_id}",
        )

        self._nonce = seed.nonce
        self._round = round_
        self._extras = {}
        self._first_bet.clear()
        await self._publish(round_, required=True)
        await self._set_engine_status("ok", round_id=round_.round_id)
        logger.info(
            f"Round {round_.round_id} open (nonce {seed.nonce}, commit {seed.server_seed_hash[:12]})"
        )

        await self._place_queued(round_)
        return round_

    async def _open_round_retrying(self) -> CrashRound:
        while True:
            try:
                round_ = await self.open_round()
                self.fatal_error = None
                return round_
            except StoreUnavailable as e:
                self.fatal_error = f"Cannot open a new round: {e}"
                logger.error(self.fatal_error)
                await self._set_engine_status("error", detail=self.fatal_error)
                await self._sleep(OPEN_RETRY_SEC)

    async def _betting_phase(self, round_: CrashRound) -> None:
        try:
            await asyncio.wait_for(self._first_bet.wait(), timeout=self.config.idle_window_sec)
        except asyncio.TimeoutError:
            logger.info(f"Round {round_.round_id}: no bets in idle window, counting down anyway")

        self._extras["countdown_ends_at"] = self._clock() + self.config.countdown_sec
        await self._publish(round_)
        await self._sleep(self.config.countdown_sec)

    async def _flight(self, round_: CrashRound) -> None:
        while True:
            result = await round_.tick()
            if result.crashed:
                break
            if result.cashed_out:
                await self._publish(round_)
            else:
                await self._publish(round_, {"current_multiplier": result.multiplier}, attempts=2)
            await self._sleep(self.config.tick_interval_sec)

        # Local state is already crashed; a failing store only delays this record
        await self._publish(round_)

    async def _settle(self, round_: CrashRound) -> Dict[str, Any]:
        record = round_.snapshot()
        delay = self.config.tick_interval_sec
        for attempt in range(1, SETTLE_ATTEMPTS + 1):
            try:
                return await self.settlement.settle(record)
            except StoreUnavailable as e:
                logger.warning(
                    f"Settlement of {round_.round_id} failed (attempt {attempt}/{SETTLE_ATTEMPTS}): {e}"
                )
                if attempt < SETTLE_ATTEMPTS:
                    await self._sleep(delay)
                    delay *= 2
        logger.error(f"Round {round_.round_id} left unsettled; recovery will settle it")
        return {}

    # =====================================================
    # RECOVERY
    # =====================================================

    async def recover(self) -> None:
        """
        Resume or safely abandon rounds a previous process did not finish.
        - crashed, unsettled -> settle (idempotent)
        - running            -> crash at its crash instant if already passed,
                                otherwise resume the newest one
        - waiting / no seed  -> void and refund stakes
        """
        records = await with_backoff(lambda: self.store.list("games"), what="list rounds")
        self._nonce = max((int(r.get("nonce") or 0) for r in records.values()), default=0)

        pending = sorted(
            (r for r in records.values() if not r.get("settled")),
            key=lambda r: r.get("created_at") or 0,
        )
        for record in pending:
            round_id = record["id"]
            status = record.get("status")
            secret = await with_backoff(lambda: self.store.get(secret_key(round_id)))
            await self._refund_unrecorded(record)

            if status == RoundStatus.CRASHED.value:
                logger.info(f"Recovery: settling crashed round {round_id}")
                await self.settlement.settle(record)
                continue

            if status == RoundStatus.RUNNING.value and secret:
                round_ = CrashRound.from_record(
                    record, secret["server_seed"], self.wallet, self.config, self._clock
                )
                crash_at = round_.crash_instant()
                if self._clock() >= crash_at or record is not pending[-1]:
                    logger.info(f"Recovery: crashing overdue round {round_id}")
                    await round_.crash_now(end_time=min(crash_at, self._clock()))
                    await self._publish(round_, required=True)
                    await self.settlement.settle(round_.snapshot())
                else:
                    logger.info(
                        f"Recovery: resuming round {round_id} at {format_multiplier(round_.multiplier())}"
                    )
                    self._round = round_
                continue

            logger.info(f"Recovery: abandoning {status} round {round_id}")
            await self.settlement.void(record)

    async def _refund_unrecorded(self, record: Dict[str, Any]) -> None:
        """
        Refunds stakes the wallet debited for a round whose published record
        never listed the bet (the publish after the debit was lost). Their
        terms are unknown, so they cannot take part in the round.
        """
        round_id = record["id"]
        listed = record.get("players") or {}
        stakes = await self.wallet.stakes_for_round(round_id)
        for player_id, amount in stakes.items():
            if player_id in listed:
                continue
            refunded = await self.wallet.refund(
                player_id, amount, round_id=round_id, reference="bet_not_recorded"
            )
            if refunded:
                logger.warning(
                    f"Recovery: refunded unrecorded bet of {player_id} in round {round_id}"
                )

    # =====================================================
    # PLAYER ACTIONS
    # =====================================================

    async def _resolve(self, round_id: Optional[str]) -> CrashRound:
        round_ = self._round
        if round_ is None:
            raise RoundNotFound("No round in progress")
        if round_id is None or round_id == round_.round_id:
            return round_
        if await self.store.get(game_key(round_id)) is not None:
            raise InvalidState(f"Round {round_id} is over")
        raise RoundNotFound(f"Unknown round {round_id}")

    async def place_bet(
        self,
        round_id: Optional[str],
        player_id: str,
        amount: Union[Decimal, float, str],
        auto_cashout: Union[Decimal, float, str, None] = None,
        username: Optional[str] = None,
    ) -> Bet:
        round_ = await self._resolve(round_id)
        profile = await self.wallet.get_or_create_player(player_id, username)
        bet = await round_.place_bet(player_id, profile["username"], amount, auto_cashout)
        self._first_bet.set()
        await self._publish(round_)
        return bet

    async def cash_out(
        self,
        round_id: Optional[str],
        player_id: str,
        observed_multiplier: Union[Decimal, float, str, None] = None,
    ) -> Bet:
        round_ = await self._resolve(round_id)
        bet = await round_.cash_out(player_id, observed_multiplier)
        await self._publish(round_)
        return bet

    async def queue_bet(
        self,
        player_id: str,
        amount: Union[Decimal, float, str],
        auto_cashout: Union[Decimal, float, str, None] = None,
        username: Optional[str] = None,
    ) -> Optional[Bet]:
        """
        Bet on the round currently accepting bets, or on the next one when
        the current round is already running. Returns the Bet when placed
        now, None when queued.
        """
        round_ = self._round
        if round_ is not None and round_.status == RoundStatus.WAITING:
            return await self.place_bet(round_.round_id, player_id, amount, auto_cashout, username)

        self._queued[player_id] = QueuedBet(
            player_id=player_id,
            amount=safe_decimal(amount),
            auto_cashout=safe_decimal(auto_cashout) if auto_cashout is not None else None,
            username=username,
        )
        logger.info(f"Queued bet of {player_id} for the next round")
        return None

    async def _place_queued(self, round_: CrashRound) -> None:
        queued, self._queued = self._queued, {}
        for q in queued.values():
            try:
                await self.place_bet(round_.round_id, q.player_id, q.amount, q.auto_cashout, q.username)
            except (CrashGameError, ValueError) as e:
                logger.warning(f"Queued bet of {q.player_id} rejected: {e}")

    # =====================================================
    # READ SIDE
    # =====================================================

    def public_state(self) -> Dict[str, Any]:
        if self._round is None:
            state: Dict[str, Any] = {"status": "offline", "current_multiplier": 1.0}
        else:
            state = {**self._round.snapshot(), **self._extras}
            state.pop("settled", None)
        state["engine"] = {"state": "error" if self.fatal_error else "ok", "detail": self.fatal_error}
        return state

    async def get_round(self, round_id: str) -> Dict[str, Any]:
        if self._round is not None and self._round.round_id == round_id:
            return self.public_state()
        record = await self.store.get(game_key(round_id))
        if record is None:
            raise RoundNotFound(f"Unknown round {round_id}")
        return record

    async def recent_results(self, limit: int = 5) -> List[Dict[str, Any]]:
        return await self.settlement.recent(limit)

    async def verify(self, round_id: str) -> Dict[str, Any]:
        """Recomputes a crashed round's crash point from its revealed seed."""
        record = await self.store.get(result_key(round_id))
        if record is None:
            record = await self.get_round(round_id)
            if record.get("status") != RoundStatus.CRASHED.value:
                raise InvalidState(f"Round {round_id} has not crashed yet, seed is still secret")
            record = {**record, "round_id": record["id"]}
        if record.get("voided"):
            raise InvalidState(f"Round {round_id} was voided")

        valid = verify_round(
            server_seed=record["server_seed"],
            server_seed_hash=record["server_seed_hash"],
            client_seed=record["client_seed"],
            nonce=int(record["nonce"]),
            crash_point=safe_decimal(record["crash_point"]),
            house_edge=self.config.house_edge,
            max_crash=self.config.max_crash_point,
        )
        return {
            "round_id": round_id,
            "valid": valid,
            "crash_point": record["crash_point"],
            "server_seed": record["server_seed"],
            "server_seed_hash": record["server_seed_hash"],
            "client_seed": record["client_seed"],
            "nonce": record["nonce"],
        }

    # =====================================================
    # PUBLISHING
    # =====================================================

    async def _publish(
        self,
        round_: CrashRound,
        fields: Optional[Dict[str, Any]] = None,
        required: bool = False,
        attempts: Optional[int] = None,
    ) -> None:
        """
        Writes the round record. Serialized so a stale snapshot can never
        overwrite a newer one. Only `required` writes propagate failures.
        """
        key = game_key(round_.round_id)

        async def write() -> None:
            if fields is not None:
                await self.store.update(key, fields)
            else:
                await self.store.set(key, {**round_.snapshot(), **self._extras})

        kwargs = {"attempts": attempts} if attempts else {}
        async with self._publish_lock:
            try:
                await with_backoff(write, what=f"publish {key}", **kwargs)
            except StoreUnavailable:
                if required:
                    raise
                logger.warning(f"Round {round_.round_id} record is behind local state")

    async def _set_engine_status(self, state: str, **extra: Any) -> None:
        try:
            await self.store.set(ENGINE_STATUS_KEY, {
                "state": state,
                "updated_at": format_timestamp(self._clock()),
                **extra,
            })
        except StoreUnavailable as e:
            logger.warning(f"Could not publish engine status {state}: {e}")
