import pytest

from crashgame.db import make_engine, make_sessionmaker
from crashgame.errors import StoreUnavailable
from crashgame.store import MemoryStateStore, SqlStateStore, with_backoff


@pytest.fixture(params=["memory", "sql"])
def any_store(request, sessionmaker):
    if request.param == "memory":
        return MemoryStateStore()
    return SqlStateStore(sessionmaker)


async def test_set_get_update_delete(any_store):
    assert await any_store.get("games/r1") is None

    await any_store.set("games/r1", {"status": "waiting", "players": {}})
    merged = await any_store.update("games/r1", {"status": "running", "start_time": 10.0})

    assert merged == {"status": "running", "players": {}, "start_time": 10.0}
    assert await any_store.get("games/r1") == merged

    await any_store.delete("games/r1")
    assert await any_store.get("games/r1") is None


async def test_list_by_prefix(any_store):
    await any_store.set("game_results/a", {"crash_point": 1.5})
    await any_store.set("game_results/b", {"crash_point": 2.5})
    await any_store.set("games/a", {"status": "crashed"})
    # "_" is not a wildcard
    await any_store.set("gameXresults/c", {"crash_point": 9.0})

    listed = await any_store.list("game_results")
    assert set(listed) == {"game_results/a", "game_results/b"}


async def test_set_if_absent(any_store):
    assert await any_store.set_if_absent("game_results/a", {"v": 1})
    assert not await any_store.set_if_absent("game_results/a", {"v": 2})
    assert await any_store.get("game_results/a") == {"v": 1}


async def test_values_are_copies(any_store):
    value = {"players": {"p1": {"amount": 1.0}}}
    await any_store.set("games/r1", value)
    value["players"]["p1"]["amount"] = 99.0

    stored = await any_store.get("games/r1")
    assert stored["players"]["p1"]["amount"] == 1.0


async def test_subscribe_delivers_current_then_changes(any_store):
    await any_store.set("games/r1", {"status": "waiting"})
    seen = []

    sub = await any_store.subscribe("games/r1", lambda key, value: seen.append((key, value)))
    await any_store.update("games/r1", {"status": "running"})
    await any_store.set("games/r2", {"status": "waiting"})

    assert seen == [
        ("games/r1", {"status": "waiting"}),
        ("games/r1", {"status": "running"}),
    ]

    sub.unsubscribe()
    await any_store.set("games/r1", {"status": "crashed"})
    assert len(seen) == 2


async def test_subscribe_to_parent_path(any_store):
    await any_store.set("games/r1", {"status": "crashed"})
    seen = []

    await any_store.subscribe("games", lambda key, value: seen.append(key))
    await any_store.set("games/r2", {"status": "waiting"})
    await any_store.delete("games/r1")
    await any_store.set("users/p1", {"balance": 1.0})

    assert seen == ["games/r1", "games/r2", "games/r1"]


async def test_failing_subscriber_does_not_break_writes(any_store):
    def broken(key, value):
        raise RuntimeError("observer bug")

    await any_store.subscribe("games", broken)
    await any_store.set("games/r1", {"status": "waiting"})
    assert await any_store.get("games/r1") == {"status": "waiting"}


async def test_with_backoff_retries_until_success():
    calls = []

    async def flaky():
        calls.append(1)
        if len(calls) < 3:
            raise StoreUnavailable("down")
        return "ok"

    assert await with_backoff(flaky, attempts=5, base_delay=0) == "ok"
    assert len(calls) == 3


async def test_with_backoff_gives_up():
    calls = []

    async def down():
        calls.append(1)
        raise StoreUnavailable("down")

    with pytest.raises(StoreUnavailable):
        await with_backoff(down, attempts=3, base_delay=0)
    assert len(calls) == 3


async def test_sql_store_reports_unavailable(tmp_path):
    # No tables created: every query fails
    engine = make_engine(f"sqlite+aiosqlite:///{tmp_path / 'empty.db'}")
    broken = SqlStateStore(make_sessionmaker(engine))
    try:
        with pytest.raises(StoreUnavailable):
            await broken.get("games/r1")
        with pytest.raises(StoreUnavailable):
            await broken.set("games/r1", {"status": "waiting"})
    finally:
        await engine.dispose()
