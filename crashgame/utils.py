# utils.py
"""
Utility functions for the crash round server

Includes:
- Cryptographic helpers for the commit/reveal scheme
- Number formatting (Decimal/Float agnostic)
- Timestamp helpers
"""

from __future__ import annotations

import secrets
import hashlib
import hmac
import logging
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Union, Optional

logger = logging.getLogger("crashgame.utils")

# =========================
# RANDOM & HASHING
# =========================

def generate_server_seed(length: int = 32) -> str:
    """
    Generate a cryptographically secure random server seed (hex).
    Used as the secret key in HMAC calculations.
    """
    return secrets.token_hex(length)


def generate_unique_id(length: int = 8) -> str:
    """
    Generate a short, URL-safe unique ID (hex).
    Used for round IDs.
    """
    return secrets.token_hex(length)


def hmac_sha256(key: str, message: str) -> str:
    """
    Compute HMAC-SHA256 hash.

    Args:
        key: The secret key (the server seed).
        message: The data to sign ("client_seed:nonce").

    Returns:
        Hexadecimal string of the hash.
    """
    key_bytes = key.encode("utf-8")
    msg_bytes = message.encode("utf-8")
    return hmac.new(key_bytes, msg_bytes, hashlib.sha256).hexdigest()


def hash_sha256(value: str) -> str:
    """
    Compute standard SHA256 hash of a string.
    Published as the commitment before the round opens for bets.
    """
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


# =========================
# FORMATTING
# =========================

NumberType = Union[float, Decimal, int, str]

def format_balance(amount: NumberType) -> str:
    """
    Format balance with 2 decimals.
    """
    try:
        val = float(amount)
        return f"{val:.2f}"
    except (ValueError, TypeError, InvalidOperation):
        logger.warning(f"Invalid balance format input: {amount}")
        return "0.00"


def format_multiplier(mult: NumberType) -> str:
    """
    Format multiplier with 2 decimals (e.g., 'x1.00').
    """
    try:
        val = float(mult)
        return f"x{val:.2f}"
    except (ValueError, TypeError, InvalidOperation):
        return "x1.00"


def format_timestamp(ts: Optional[float] = None) -> str:
    """
    Return ISO formatted UTC timestamp.
    Defaults to now if no timestamp provided.
    """
    if ts is not None:
        dt = datetime.fromtimestamp(ts, tz=timezone.utc)
    else:
        dt = datetime.now(timezone.utc)
    return dt.isoformat(timespec="seconds")


# =========================
# MISC HELPERS
# =========================

def safe_decimal(value: NumberType, default: str = "0.00") -> Decimal:
    """
    Safely convert input to Decimal.
    Useful for parsing store records back into engine values.
    """
    try:
        return Decimal(str(value))
    except (InvalidOperation, TypeError, ValueError):
        logger.warning(f"Failed to convert {value} to Decimal, using default {default}")
        return Decimal(default)


def to_float(value: Optional[NumberType]) -> Optional[float]:
    """Decimal -> float for JSON payloads, keeping None."""
    return float(value) if value is not None else None
