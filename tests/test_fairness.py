import random
from decimal import Decimal

import pytest

from crashgame.fairness import (
    DEFAULT_MAX_CRASH,
    RoundSeed,
    crash_point_for_seed,
    generate_crash_point,
    uniform_from_hash,
    verify_round,
)
from crashgame.utils import hash_sha256


@pytest.mark.parametrize("u", [0.0, 0.005, 0.01, 0.25, 0.5, 0.9, 0.999999, 1.0 - 1e-17])
def test_crash_point_never_below_one(u):
    c = generate_crash_point(u)
    assert Decimal("1.00") <= c <= DEFAULT_MAX_CRASH


def test_crash_point_formula():
    # (1 / (1 - 0.5)) * 0.99
    assert generate_crash_point(0.5) == Decimal("1.98")
    assert generate_crash_point(0.75, house_edge=0.05) == Decimal("3.80")


def test_samples_below_house_edge_crash_instantly():
    assert generate_crash_point(0.0) == Decimal("1.00")
    assert generate_crash_point(0.009) == Decimal("1.00")


def test_u_close_to_one_is_capped():
    assert generate_crash_point(1.0 - 1e-12) == DEFAULT_MAX_CRASH
    assert generate_crash_point(1.0 - 1e-12, max_crash=Decimal("50.00")) == Decimal("50.00")


def test_invalid_arguments():
    with pytest.raises(ValueError):
        generate_crash_point(0.5, house_edge=0.0)
    with pytest.raises(ValueError):
        generate_crash_point(-0.1)


def test_expected_return_approaches_one_minus_house_edge():
    rng = random.Random(1234)
    n = 100_000
    points = [generate_crash_point(rng=rng) for _ in range(n)]

    assert min(points) >= Decimal("1.00")
    for target in (Decimal("1.50"), Decimal("2.00"), Decimal("10.00")):
        wins = sum(1 for c in points if c >= target)
        # A player always cashing out at `target` gets back target * P(win) per unit
        expected_return = float(target) * wins / n
        assert expected_return == pytest.approx(0.99, abs=0.04)


def test_uniform_from_hash_bounds():
    assert uniform_from_hash("0" * 64) == 0.0
    assert 0.999 < uniform_from_hash("f" * 64) < 1.0


def test_commitment_matches_revealed_seed():
    seed = RoundSeed.generate("client", 7)
    assert seed.server_seed_hash == hash_sha256(seed.server_seed)
    assert seed.message == "client:7"


def test_crash_point_for_seed_is_deterministic():
    seed = RoundSeed(server_seed="ab" * 32, client_seed="client", nonce=3)
    again = RoundSeed(server_seed="ab" * 32, client_seed="client", nonce=3)
    assert crash_point_for_seed(seed) == crash_point_for_seed(again)

    other_nonce = RoundSeed(server_seed="ab" * 32, client_seed="client", nonce=4)
    assert seed.uniform() != other_nonce.uniform()


def test_verify_round():
    seed = RoundSeed.generate("client", 11)
    crash = crash_point_for_seed(seed)

    assert verify_round(seed.server_seed, seed.server_seed_hash, "client", 11, crash)
    # Wrong crash point
    assert not verify_round(
        seed.server_seed, seed.server_seed_hash, "client", 11, crash + Decimal("0.01")
    )
    # Seed that does not match the published commitment
    assert not verify_round("cd" * 32, seed.server_seed_hash, "client", 11, crash)
