# db.py
"""
Database Layer

Responsibilities:
- Async database engine & session lifecycle
- Player account persistence
- Ledger-safe balance management (Decimal arithmetic)
- Transaction history linked to round ids, with idempotency keys
- Keyed JSON records backing the SQL state store

Alignment with Engine:
- Uses Decimal for all financial values
- Links transactions to engine round_ids
- A transaction carrying an already-used idempotency key is a no-op
"""

from __future__ import annotations

import os
import enum
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Optional, Tuple

from sqlalchemy import (
    JSON,
    String,
    DateTime,
    Integer,
    Enum,
    ForeignKey,
    func,
    Numeric,
    select,
)
from sqlalchemy.orm import (
    DeclarativeBase,
    Mapped,
    mapped_column,
    relationship,
)
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.exc import IntegrityError

from crashgame.errors import InsufficientFunds

# =====================================================
# CONFIG
# =====================================================

DATABASE_URL = os.getenv(
    "DATABASE_URL",
    "sqlite+aiosqlite:///./crashgame.db"
)

# Default starting balance for new players
STARTING_BALANCE = Decimal(os.getenv("STARTING_BALANCE", "1000.00"))

DB_ECHO = os.getenv("DB_ECHO", "").lower() in ("1", "true", "yes")

CENTS = Decimal("0.01")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# =====================================================
# BASE
# =====================================================

class Base(DeclarativeBase):
    pass


# =====================================================
# ENUMS
# =====================================================

class TransactionType(str, enum.Enum):
    BET = "bet"
    WIN = "win"
    REFUND = "refund"


# =====================================================
# MODELS
# =====================================================

class Player(Base):
    __tablename__ = "players"

    # Stable id supplied by the identity provider
    id: Mapped[str] = mapped_column(
        String(64),
        primary_key=True,
    )

    username: Mapped[str] = mapped_column(
        String(64),
        nullable=False,
    )

    # PRECISION: 18 digits total, 2 after decimal.
    balance: Mapped[Decimal] = mapped_column(
        Numeric(18, 2),
        nullable=False,
        default=STARTING_BALANCE,
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )

    last_login: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )

    # Never loaded with the player; query by player_id or round_id instead
    transactions: Mapped[list["Transaction"]] = relationship(
        back_populates="player",
        cascade="all, delete-orphan",
        lazy="raise",
    )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "username": self.username,
            "balance": float(self.balance),
            "created_at": self.created_at.timestamp() if self.created_at else None,
            "last_login": self.last_login.timestamp() if self.last_login else None,
        }


class Transaction(Base):
    """
    Immutable ledger record (append-only).
    Links financial movement to specific rounds.
    """

    __tablename__ = "transactions"

    id: Mapped[int] = mapped_column(
        Integer,
        primary_key=True,
        autoincrement=True,
    )

    player_id: Mapped[str] = mapped_column(
        ForeignKey("players.id", ondelete="CASCADE"),
        index=True,
        nullable=False,
    )

    type: Mapped[TransactionType] = mapped_column(
        Enum(TransactionType, name="transaction_type"),
        nullable=False,
    )

    # Signed amount: -10.00 for bet, +20.00 for win
    amount: Mapped[Decimal] = mapped_column(
        Numeric(18, 2),
        nullable=False,
    )

    balance_after: Mapped[Decimal] = mapped_column(
        Numeric(18, 2),
        nullable=False,
    )

    round_id: Mapped[str | None] = mapped_column(
        String(64),
        nullable=True,
        index=True,
    )

    # Extra metadata (e.g. "win_x2.50")
    reference: Mapped[str | None] = mapped_column(
        String(128),
        nullable=True,
    )

    # e.g. "win:<round_id>:<player_id>"; a second use is rejected
    idempotency_key: Mapped[str | None] = mapped_column(
        String(160),
        nullable=True,
        unique=True,
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )

    player: Mapped[Player] = relationship(back_populates="transactions")


class Record(Base):
    """Keyed JSON document of the state store (e.g. games/<round_id>)."""

    __tablename__ = "records"

    key: Mapped[str] = mapped_column(
        String(255),
        primary_key=True,
    )

    value: Mapped[dict] = mapped_column(
        JSON,
        nullable=False,
    )

    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
    )


# =====================================================
# ENGINE & SESSION
# =====================================================

def make_engine(url: str = DATABASE_URL, echo: bool = DB_ECHO) -> AsyncEngine:
    return create_async_engine(
        url,
        echo=echo,
        # SSL is critical for Postgres in production
        connect_args={"ssl": "require"} if "postgresql" in url else {},
    )


def make_sessionmaker(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        bind=engine,
        expire_on_commit=False,
    )


# =====================================================
# INIT
# =====================================================

async def init_db(engine: AsyncEngine) -> None:
    """
    Creates all tables. Safe to run on every startup.
    """
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


# =====================================================
# REPOSITORY HELPERS
# =====================================================

async def get_player(session: AsyncSession, player_id: str) -> Optional[Player]:
    result = await session.execute(
        select(Player).where(Player.id == player_id)
    )
    return result.scalar_one_or_none()


async def get_or_create_player(
    session: AsyncSession,
    player_id: str,
    username: str,
    starting_balance: Decimal = STARTING_BALANCE,
) -> Player:
    """
    Fetches a player (refreshing last_login) or creates one with the
    default balance.
    """
    player = await get_player(session, player_id)

    if player:
        player.last_login = utcnow()
        await session.commit()
        return player

    new_player = Player(id=player_id, username=username, balance=starting_balance)
    session.add(new_player)

    try:
        await session.commit()
        await session.refresh(new_player)
        return new_player
    except IntegrityError:
        # Created in parallel
        await session.rollback()
        return await get_or_create_player(session, player_id, username, starting_balance)


async def apply_transaction(
    session: AsyncSession,
    player_id: str,
    amount: Decimal,
    tx_type: TransactionType,
    round_id: str | None = None,
    reference: str | None = None,
    idempotency_key: str | None = None,
) -> Tuple[Player, bool]:
    """
    Atomic balance update + immutable ledger entry.

    Args:
        amount: Signed change to the balance.
        idempotency_key: When already present in the ledger, nothing is
                         applied and (player, False) is returned.

    Returns:
        (player, applied)
    """

    if idempotency_key is not None:
        existing = await session.execute(
            select(Transaction.id).where(Transaction.idempotency_key == idempotency_key)
        )
        if existing.scalar_one_or_none() is not None:
            player = await get_player(session, player_id)
            return player, False

    # 1. Lock the player row for update
    # (Only works on Postgres/MySQL, ignored on SQLite)
    result = await session.execute(
        select(Player).where(Player.id == player_id).with_for_update()
    )
    player_locked = result.scalar_one()

    # 2. Calculate new balance
    amount_quantized = amount.quantize(CENTS)
    new_balance = player_locked.balance + amount_quantized

    # 3. Validate
    if new_balance < 0:
        await session.rollback()
        raise InsufficientFunds(
            f"Balance {player_locked.balance} is lower than {abs(amount_quantized)}"
        )

    # 4. Mutate Player
    player_locked.balance = new_balance

    # 5. Create Ledger Entry
    session.add(Transaction(
        player_id=player_locked.id,
        type=tx_type,
        amount=amount_quantized,
        balance_after=new_balance,
        round_id=round_id,
        reference=reference,
        idempotency_key=idempotency_key,
    ))

    try:
        await session.commit()
    except IntegrityError:
        # Same idempotency key committed concurrently
        await session.rollback()
        player = await get_player(session, player_id)
        return player, False

    await session.refresh(player_locked)
    return player_locked, True


async def transactions_for_round(session: AsyncSession, round_id: str) -> list[Transaction]:
    result = await session.execute(
        select(Transaction)
        .where(Transaction.round_id == round_id)
        .order_by(Transaction.id)
    )
    return list(result.scalars())
