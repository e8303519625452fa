from decimal import Decimal

import pytest

from crashgame.db import init_db, make_engine, make_sessionmaker
from crashgame.engine import CrashRound, GameConfig
from crashgame.fairness import RoundSeed
from crashgame.store import MemoryStateStore
from crashgame.wallet import Wallet


class FakeClock:
    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def config():
    # Fast rounds: 1.00x -> 5.00x in under 0.2s
    return GameConfig(
        house_edge=0.01,
        max_crash_point=Decimal("5.00"),
        client_seed="test-client-seed",
        growth_rate=50.0,
        growth_exponent=1.5,
        idle_window_sec=0.05,
        countdown_sec=0.01,
        tick_interval_sec=0.005,
        cooldown_sec=0.0,
    )


@pytest.fixture
def slow_config():
    # Default curve: 1 + 0.1 * t^1.5
    return GameConfig(growth_rate=0.1, growth_exponent=1.5)


@pytest.fixture
async def sessionmaker(tmp_path):
    engine = make_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")
    await init_db(engine)
    yield make_sessionmaker(engine)
    await engine.dispose()


@pytest.fixture
def store():
    return MemoryStateStore()


@pytest.fixture
def wallet(sessionmaker, store):
    return Wallet(sessionmaker, store=store)


@pytest.fixture
def make_round(wallet, clock, slow_config):
    counter = iter(range(1, 1000))

    def factory(crash_point="3.00", round_id=None):
        nonce = next(counter)
        return CrashRound(
            round_id=round_id or f"round-{nonce}",
            seed=RoundSeed.generate("test-client-seed", nonce),
            wallet=wallet,
            config=slow_config,
            clock=clock,
            crash_point=Decimal(crash_point),
        )

    return factory
