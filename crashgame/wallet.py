# wallet.py
"""
Player accounts.

Every balance mutation goes through `apply_transaction` while holding the
player's in-process lock, so a settlement credit for one round and a debit
for the next cannot lose each other's update (SQLite ignores FOR UPDATE).
After each mutation the account is mirrored to users/<player_id>.
"""

from __future__ import annotations

import asyncio
import logging
import secrets
from collections import defaultdict
from decimal import Decimal
from typing import Any, Dict, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from crashgame.db import (
    STARTING_BALANCE,
    Player,
    TransactionType,
    apply_transaction,
    get_or_create_player,
    get_player,
    transactions_for_round,
)
from crashgame.errors import StoreUnavailable
from crashgame.store import StateStore
from crashgame.utils import format_balance, safe_decimal

logger = logging.getLogger("crashgame.wallet")


def default_username() -> str:
    return f"Player{secrets.randbelow(10000)}"


def user_key(player_id: str) -> str:
    return f"users/{player_id}"


class Wallet:
    def __init__(
        self,
        sessionmaker: async_sessionmaker[AsyncSession],
        store: Optional[StateStore] = None,
        starting_balance: Decimal = STARTING_BALANCE,
    ) -> None:
        self._sessionmaker = sessionmaker
        self._store = store
        self.starting_balance = starting_balance
        self._locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    async def get_or_create_player(
        self,
        player_id: str,
        username: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Identity contract: stable id -> {balance, username, ...}.
        """
        try:
            async with self._sessionmaker() as session:
                player = await get_or_create_player(
                    session,
                    player_id,
                    username or default_username(),
                    self.starting_balance,
                )
        except SQLAlchemyError as e:
            raise StoreUnavailable(f"player {player_id}: {e}") from e
        await self._mirror(player)
        return player.to_dict()

    async def balance(self, player_id: str) -> Decimal:
        async with self._sessionmaker() as session:
            player = await get_player(session, player_id)
            if player is None:
                raise KeyError(player_id)
            return player.balance

    async def debit(
        self,
        player_id: str,
        amount: Decimal | float,
        round_id: str | None = None,
        reference: str | None = None,
    ) -> Decimal:
        """
        Takes a stake. Raises InsufficientFunds (balance untouched) when the
        amount exceeds the balance.
        """
        val = safe_decimal(amount)
        key = f"bet:{round_id}:{player_id}" if round_id else None
        player, applied = await self._apply(
            player_id, -abs(val), TransactionType.BET, round_id, reference, key
        )
        if applied:
            logger.info(f"Debited {format_balance(val)} from {player_id} ({reference})")
        return player.balance

    async def credit(
        self,
        player_id: str,
        amount: Decimal | float,
        round_id: str | None = None,
        reference: str | None = None,
    ) -> bool:
        """
        Pays a win. At most once per (round, player); returns False when the
        credit had already been applied.
        """
        val = safe_decimal(amount)
        key = f"win:{round_id}:{player_id}" if round_id else None
        _, applied = await self._apply(
            player_id, abs(val), TransactionType.WIN, round_id, reference, key
        )
        return applied

    async def refund(
        self,
        player_id: str,
        amount: Decimal | float,
        round_id: str,
        reference: str | None = None,
    ) -> bool:
        val = safe_decimal(amount)
        _, applied = await self._apply(
            player_id,
            abs(val),
            TransactionType.REFUND,
            round_id,
            reference,
            f"refund:{round_id}:{player_id}",
        )
        return applied

    async def stakes_for_round(self, round_id: str) -> Dict[str, Decimal]:
        """Stake debited from each player for `round_id`, read from the ledger."""
        try:
            async with self._sessionmaker() as session:
                txs = await transactions_for_round(session, round_id)
        except SQLAlchemyError as e:
            raise StoreUnavailable(f"stakes for {round_id}: {e}") from e
        return {t.player_id: -t.amount for t in txs if t.type == TransactionType.BET}

    async def _apply(
        self,
        player_id: str,
        amount: Decimal,
        tx_type: TransactionType,
        round_id: str | None,
        reference: str | None,
        idempotency_key: str | None,
    ) -> tuple[Player, bool]:
        async with self._locks[player_id]:
            try:
                async with self._sessionmaker() as session:
                    player, applied = await apply_transaction(
                        session,
                        player_id,
                        amount,
                        tx_type,
                        round_id=round_id,
                        reference=reference,
                        idempotency_key=idempotency_key,
                    )
            except SQLAlchemyError as e:
                raise StoreUnavailable(f"{tx_type.value} for {player_id}: {e}") from e
        if applied:
            await self._mirror(player)
        return player, applied

    async def _mirror(self, player: Player) -> None:
        if self._store is None:
            return
        try:
            await self._store.set(user_key(player.id), player.to_dict())
        except StoreUnavailable as e:
            # The SQL row is the source of truth; the mirror catches up on the next mutation
            logger.warning(f"Could not mirror {player.id} to the store: {e}")
