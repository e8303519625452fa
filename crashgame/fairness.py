# fairness.py
"""
Crash point generation and the commit/reveal scheme.

Crash point:  max(1.00, (1 / (1 - u)) * (1 - house_edge))

For any target multiplier x >= 1, P(crash >= x) = (1 - house_edge) / x, so a
player aiming for x has an expected return of exactly 1 - house_edge.

Commit/reveal:
- A fresh server seed is generated per round and kept server-side.
- sha256(server_seed) is published when the round opens for bets.
- u is taken from HMAC-SHA256(server_seed, "client_seed:nonce").
- The server seed is revealed after the crash so anyone can recompute it.
"""

from __future__ import annotations

import hmac
import random
import secrets
from dataclasses import dataclass
from decimal import Decimal, ROUND_DOWN
from typing import Optional

from crashgame.utils import generate_server_seed, hash_sha256, hmac_sha256

MIN_CRASH_POINT = Decimal("1.00")
DEFAULT_HOUSE_EDGE = 0.01
DEFAULT_MAX_CRASH = Decimal("1000.00")

# u is never allowed to reach 1.0
U_EPSILON = 2.0 ** -52

# 52 bits fit exactly in a double
HASH_BITS = 52


def uniform_from_hash(hash_hex: str) -> float:
    """First 52 bits of a hex digest mapped onto [0, 1)."""
    h = int(hash_hex[: HASH_BITS // 4], 16)
    return h / float(2 ** HASH_BITS)


def generate_crash_point(
    u: Optional[float] = None,
    house_edge: float = DEFAULT_HOUSE_EDGE,
    max_crash: Decimal = DEFAULT_MAX_CRASH,
    rng: Optional[random.Random] = None,
) -> Decimal:
    """
    Returns a crash point >= 1.00, rounded down to 2 decimals.

    `u` defaults to a sample from the OS CSPRNG; tests pass a seeded `rng`.
    """
    if not 0.0 < house_edge < 1.0:
        raise ValueError("house_edge must be in (0, 1)")

    if u is None:
        u = (rng or secrets.SystemRandom()).random()
    if u < 0.0:
        raise ValueError("u must be in [0, 1)")

    u = min(u, 1.0 - U_EPSILON)
    raw = (1.0 / (1.0 - u)) * (1.0 - house_edge)

    crash_point = Decimal(repr(raw)).quantize(Decimal("0.01"), rounding=ROUND_DOWN)
    crash_point = max(crash_point, MIN_CRASH_POINT)
    return min(crash_point, max_crash)


@dataclass(frozen=True)
class RoundSeed:
    server_seed: str
    client_seed: str
    nonce: int

    @classmethod
    def generate(cls, client_seed: str, nonce: int) -> "RoundSeed":
        return cls(server_seed=generate_server_seed(), client_seed=client_seed, nonce=nonce)

    @property
    def server_seed_hash(self) -> str:
        return hash_sha256(self.server_seed)

    @property
    def message(self) -> str:
        return f"{self.client_seed}:{self.nonce}"

    def uniform(self) -> float:
        return uniform_from_hash(hmac_sha256(self.server_seed, self.message))


def crash_point_for_seed(
    seed: RoundSeed,
    house_edge: float = DEFAULT_HOUSE_EDGE,
    max_crash: Decimal = DEFAULT_MAX_CRASH,
) -> Decimal:
    return generate_crash_point(seed.uniform(), house_edge=house_edge, max_crash=max_crash)


def verify_round(
    server_seed: str,
    server_seed_hash: str,
    client_seed: str,
    nonce: int,
    crash_point: Decimal,
    house_edge: float = DEFAULT_HOUSE_EDGE,
    max_crash: Decimal = DEFAULT_MAX_CRASH,
) -> bool:
    """
    True if the revealed seed matches the published commitment and
    reproduces the announced crash point.
    """
    if not hmac.compare_digest(hash_sha256(server_seed), server_seed_hash):
        return False
    seed = RoundSeed(server_seed=server_seed, client_seed=client_seed, nonce=nonce)
    expected = crash_point_for_seed(seed, house_edge=house_edge, max_crash=max_crash)
    return expected == Decimal(str(crash_point))
