# errors.py
"""
Error kinds raised by the round core.

Admission errors (InvalidState, DuplicateBet, NoSuchBet, AlreadyCashedOut,
InsufficientFunds) are expected outcomes reported back to the caller.
StoreUnavailable wraps collaborator I/O failures and is retried.
"""


class CrashGameError(Exception):
    """Base error"""


class InvalidState(CrashGameError):
    """Operation attempted in the wrong round phase"""


class DuplicateBet(CrashGameError):
    """Player already holds a bet in this round"""


class NoSuchBet(CrashGameError):
    """Player has no bet in this round"""


class AlreadyCashedOut(CrashGameError):
    """Bet already carries a cashout multiplier"""


class InsufficientFunds(CrashGameError):
    """Stake exceeds the player's balance"""


class StoreUnavailable(CrashGameError):
    """State store or database I/O failure"""


class RoundNotFound(CrashGameError):
    """Unknown round id"""
