import asyncio
from decimal import Decimal

import pytest
from sqlalchemy import inspect

from crashgame.db import TransactionType, get_player, transactions_for_round
from crashgame.errors import InsufficientFunds


async def test_new_player_gets_starting_balance(wallet, store):
    player = await wallet.get_or_create_player("p1")

    assert player["balance"] == 1000.0
    assert player["username"].startswith("Player")
    mirrored = await store.get("users/p1")
    assert mirrored["balance"] == 1000.0
    assert mirrored["username"] == player["username"]


async def test_existing_player_keeps_balance_and_name(wallet):
    await wallet.get_or_create_player("p1", "Ada")
    await wallet.debit("p1", Decimal("250"), round_id="r1")

    again = await wallet.get_or_create_player("p1", "Someone Else")
    assert again["username"] == "Ada"
    assert again["balance"] == 750.0


async def test_debit_insufficient_funds_changes_nothing(wallet, sessionmaker):
    await wallet.get_or_create_player("p1", "Ada")

    with pytest.raises(InsufficientFunds):
        await wallet.debit("p1", Decimal("1000.01"), round_id="r1")

    assert await wallet.balance("p1") == Decimal("1000.00")
    async with sessionmaker() as session:
        assert await transactions_for_round(session, "r1") == []


async def test_credit_is_applied_once_per_round(wallet, sessionmaker):
    await wallet.get_or_create_player("p1", "Ada")
    await wallet.debit("p1", Decimal("100"), round_id="r1")

    assert await wallet.credit("p1", Decimal("250"), round_id="r1", reference="win_x2.50")
    assert not await wallet.credit("p1", Decimal("250"), round_id="r1", reference="win_x2.50")
    assert await wallet.balance("p1") == Decimal("1150.00")

    async with sessionmaker() as session:
        txs = await transactions_for_round(session, "r1")
    assert [t.type for t in txs] == [TransactionType.BET, TransactionType.WIN]
    assert [t.amount for t in txs] == [Decimal("-100.00"), Decimal("250.00")]
    assert txs[-1].balance_after == Decimal("1150.00")


async def test_refund_once(wallet):
    await wallet.get_or_create_player("p1", "Ada")
    await wallet.debit("p1", Decimal("40"), round_id="r9")

    assert await wallet.refund("p1", Decimal("40"), round_id="r9")
    assert not await wallet.refund("p1", Decimal("40"), round_id="r9")
    assert await wallet.balance("p1") == Decimal("1000.00")


async def test_stakes_for_round_come_from_debits(wallet):
    for pid in ("p1", "p2"):
        await wallet.get_or_create_player(pid)
    await wallet.debit("p1", Decimal("40"), round_id="r1")
    await wallet.debit("p2", Decimal("15.50"), round_id="r1")
    await wallet.debit("p1", Decimal("99"), round_id="r2")
    await wallet.credit("p1", Decimal("80"), round_id="r1")

    assert await wallet.stakes_for_round("r1") == {
        "p1": Decimal("40.00"),
        "p2": Decimal("15.50"),
    }


async def test_concurrent_mutations_do_not_lose_updates(wallet):
    await wallet.get_or_create_player("p1", "Ada")

    debits = [wallet.debit("p1", Decimal("100"), round_id=f"r{i}") for i in range(10)]
    credits = [wallet.credit("p1", Decimal("30"), round_id=f"w{i}") for i in range(5)]
    await asyncio.gather(*debits, *credits)

    assert await wallet.balance("p1") == Decimal("150.00")


async def test_concurrent_debits_never_overdraw(wallet):
    await wallet.get_or_create_player("p1", "Ada")

    results = await asyncio.gather(
        *(wallet.debit("p1", Decimal("300"), round_id=f"r{i}") for i in range(4)),
        return_exceptions=True,
    )

    failures = [r for r in results if isinstance(r, InsufficientFunds)]
    assert len(failures) == 1
    assert await wallet.balance("p1") == Decimal("100.00")


async def test_player_rows_do_not_load_transaction_history(wallet, sessionmaker):
    await wallet.get_or_create_player("p1", "Ada")
    for i in range(5):
        await wallet.debit("p1", Decimal("1"), round_id=f"r{i}")

    async with sessionmaker() as session:
        player = await get_player(session, "p1")
        assert "transactions" in inspect(player).unloaded
        assert player.balance == Decimal("995.00")
