# settlement.py
"""
Settlement Engine

At running -> crashed every cashed-out bet is credited stake x multiplier;
uncashed bets get nothing (their debit at placement is the loss).

Exactly-once:
- A round whose record says `settled` is skipped entirely.
- Each credit carries the idempotency key win:<round>:<player>, so a retry
  after a partial failure skips the players already paid.
- The result archive entry is written only if absent.
"""

from __future__ import annotations

import logging
from decimal import Decimal
from typing import Any, Dict, List

from crashgame.errors import InvalidState
from crashgame.ledger import Bet, BetOutcome
from crashgame.store import StateStore, with_backoff
from crashgame.utils import format_balance, format_multiplier

logger = logging.getLogger("crashgame.settlement")


def game_key(round_id: str) -> str:
    return f"games/{round_id}"


def result_key(round_id: str) -> str:
    return f"game_results/{round_id}"


HISTORY_KEY = "history/recent"
# Newest settled results kept in the history record
HISTORY_LIMIT = 100


def build_result(record: Dict[str, Any], bets: List[Bet], voided: bool = False) -> Dict[str, Any]:
    crashed = not voided
    total_wagered = sum((b.amount for b in bets), Decimal("0.00"))
    total_paid = sum((b.payout for b in bets), Decimal("0.00"))
    bet_rows = [b.to_dict(crashed=crashed) for b in bets]
    if voided:
        for row in bet_rows:
            row["outcome"] = "refunded"
    return {
        "round_id": record["id"],
        "crash_point": record.get("crash_point"),
        "server_seed": record.get("server_seed"),
        "server_seed_hash": record.get("server_seed_hash"),
        "client_seed": record.get("client_seed"),
        "nonce": record.get("nonce"),
        "start_time": record.get("start_time"),
        "timestamp": record.get("end_time") or record.get("created_at"),
        "player_count": len(bets),
        "total_wagered": float(total_wagered),
        "total_paid": float(total_paid) if crashed else 0.0,
        "voided": voided,
        "bets": bet_rows,
    }


class SettlementEngine:
    def __init__(self, store: StateStore, wallet: Any) -> None:
        self.store = store
        self.wallet = wallet

    async def _is_settled(self, round_id: str) -> bool:
        stored = await with_backoff(
            lambda: self.store.get(game_key(round_id)),
            what=f"read {game_key(round_id)}",
        )
        return bool(stored and stored.get("settled"))

    async def settle(self, record: Dict[str, Any]) -> Dict[str, Any]:
        """
        Pays every cashed-out bet of a crashed round and archives the result.
        Safe to call again for the same round.
        """
        round_id = record["id"]
        if record.get("status") != "crashed":
            raise InvalidState(f"Round {round_id} is {record.get('status')}, cannot settle")

        if await self._is_settled(round_id):
            logger.info(f"Round {round_id} already settled, skipping")
            return await self.store.get(result_key(round_id)) or {}

        bets = [Bet.from_dict(data) for data in (record.get("players") or {}).values()]

        credited = 0
        for bet in bets:
            if bet.outcome(crashed=True) != BetOutcome.WON:
                continue
            applied = await self.wallet.credit(
                bet.player_id,
                bet.payout,
                round_id=round_id,
                reference=f"win_{format_multiplier(bet.cashout_multiplier)}",
            )
            if applied:
                credited += 1
                logger.info(
                    f"Round {round_id}: paid {bet.player_id} {format_balance(bet.payout)} "
                    f"(profit {format_balance(bet.profit)})"
                )

        result = build_result(record, bets)
        await with_backoff(
            lambda: self.store.set_if_absent(result_key(round_id), result),
            what=f"archive {round_id}",
        )
        await self.add_to_history(result)
        # Full record: the crash snapshot itself may not have reached the store
        await with_backoff(
            lambda: self.store.set(game_key(round_id), {**record, "settled": True}),
            what=f"mark {round_id} settled",
        )

        logger.info(
            f"Round {round_id} settled at {format_multiplier(record.get('crash_point'))}: "
            f"{len(bets)} bets, {credited} credited"
        )
        return result

    async def add_to_history(self, result: Dict[str, Any]) -> None:
        """
        Keeps the newest HISTORY_LIMIT played results, newest first, in one
        record, one entry per round.
        """
        if result.get("voided"):
            return
        current = await with_backoff(lambda: self.store.get(HISTORY_KEY), what="read history")
        results = [
            r for r in (current or {}).get("results", [])
            if r.get("round_id") != result["round_id"]
        ]
        results.append(result)
        results.sort(key=lambda r: r.get("timestamp") or 0, reverse=True)
        await with_backoff(
            lambda: self.store.set(HISTORY_KEY, {"results": results[:HISTORY_LIMIT]}),
            what="write history",
        )

    async def recent(self, limit: int) -> List[Dict[str, Any]]:
        current = await with_backoff(lambda: self.store.get(HISTORY_KEY), what="read history")
        return (current or {}).get("results", [])[:limit]

    async def void(self, record: Dict[str, Any]) -> Dict[str, Any]:
        """
        Abandons a round that can no longer be played to a crash and refunds
        every stake once.
        """
        round_id = record["id"]
        if await self._is_settled(round_id):
            return await self.store.get(result_key(round_id)) or {}

        bets = [Bet.from_dict(data) for data in (record.get("players") or {}).values()]
        for bet in bets:
            await self.wallet.refund(
                bet.player_id,
                bet.amount,
                round_id=round_id,
                reference="round_voided",
            )

        result = build_result(record, bets, voided=True)
        await with_backoff(
            lambda: self.store.set_if_absent(result_key(round_id), result),
            what=f"archive {round_id}",
        )
        await with_backoff(
            lambda: self.store.update(game_key(round_id), {"settled": True, "voided": True}),
            what=f"mark {round_id} voided",
        )
        logger.warning(f"Round {round_id} voided, {len(bets)} stakes refunded")
        return result
