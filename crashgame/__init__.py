"""Authoritative server for a multiplayer crash betting game."""

__version__ = "1.0.0"
