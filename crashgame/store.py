# store.py
"""
State store collaborator

Keyed records with get / set / partial update / subscribe semantics, in the
shape of a realtime database:

    games/<round_id>          full round record
    round_secrets/<round_id>  server seed (never exposed to clients)
    users/<player_id>         balance + profile mirror
    game_results/<round_id>   settled outcome archive (append-only)
    engine/status             orchestrator health

A subscription on a path receives the current value(s) at or under that
path, then every later change, until unsubscribed.
"""

from __future__ import annotations

import os
import abc
import asyncio
import copy
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, TypeVar

from sqlalchemy import delete, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from crashgame.db import Record
from crashgame.errors import StoreUnavailable

logger = logging.getLogger("crashgame.store")

STORE_RETRY_ATTEMPTS = int(os.getenv("STORE_RETRY_ATTEMPTS", "5"))
STORE_RETRY_DELAY_SEC = float(os.getenv("STORE_RETRY_DELAY_SEC", "0.05"))

Callback = Callable[[str, Optional[Dict[str, Any]]], None]
T = TypeVar("T")


def is_under(key: str, path: str) -> bool:
    return key == path or key.startswith(path.rstrip("/") + "/")


async def with_backoff(
    operation: Callable[[], Awaitable[T]],
    attempts: int = STORE_RETRY_ATTEMPTS,
    base_delay: float = STORE_RETRY_DELAY_SEC,
    what: str = "store operation",
) -> T:
    """
    Retry `operation` on StoreUnavailable with exponential backoff.
    Re-raises the last error once attempts are exhausted.
    """
    delay = base_delay
    attempt = 1
    while True:
        try:
            return await operation()
        except StoreUnavailable as e:
            if attempt >= attempts:
                logger.error(f"{what} failed after {attempts} attempts: {e}")
                raise
            logger.warning(f"{what} failed (attempt {attempt}/{attempts}): {e}")
            await asyncio.sleep(delay)
            delay *= 2
            attempt += 1


class Subscription:
    def __init__(self, store: "StateStore", path: str, callback: Callback) -> None:
        self.store = store
        self.path = path
        self.callback = callback
        self.active = True

    def unsubscribe(self) -> None:
        if self.active:
            self.active = False
            self.store._subscriptions.remove(self)


class StateStore(abc.ABC):
    """Interface + subscriber fan-out shared by the implementations."""

    def __init__(self) -> None:
        self._subscriptions: List[Subscription] = []

    # --- primitives ---

    @abc.abstractmethod
    async def get(self, key: str) -> Optional[Dict[str, Any]]:
        ...

    @abc.abstractmethod
    async def _write(self, key: str, value: Dict[str, Any]) -> None:
        ...

    @abc.abstractmethod
    async def _remove(self, key: str) -> None:
        ...

    @abc.abstractmethod
    async def list(self, prefix: str) -> Dict[str, Dict[str, Any]]:
        """All records strictly under `prefix`, keyed by full key."""

    # --- public API ---

    async def set(self, key: str, value: Dict[str, Any]) -> None:
        await self._write(key, value)
        self._notify(key, value)

    async def update(self, key: str, fields: Dict[str, Any]) -> Dict[str, Any]:
        """Partial-field update. Creates the record when missing."""
        current = await self.get(key) or {}
        current.update(fields)
        await self.set(key, current)
        return current

    async def set_if_absent(self, key: str, value: Dict[str, Any]) -> bool:
        if await self.get(key) is not None:
            return False
        await self.set(key, value)
        return True

    async def delete(self, key: str) -> None:
        await self._remove(key)
        self._notify(key, None)

    async def subscribe(self, path: str, callback: Callback) -> Subscription:
        sub = Subscription(self, path, callback)
        current = await self.get(path)
        if current is not None:
            callback(path, current)
        for key, value in sorted((await self.list(path)).items()):
            callback(key, value)
        self._subscriptions.append(sub)
        return sub

    def _notify(self, key: str, value: Optional[Dict[str, Any]]) -> None:
        for sub in list(self._subscriptions):
            if not is_under(key, sub.path):
                continue
            try:
                sub.callback(key, copy.deepcopy(value))
            except Exception:
                # A broken observer must not break the writer
                logger.exception(f"Subscriber on {sub.path} failed for {key}")


class MemoryStateStore(StateStore):
    """In-process store, used for single-node runs and tests."""

    def __init__(self) -> None:
        super().__init__()
        self._data: Dict[str, Dict[str, Any]] = {}

    async def get(self, key: str) -> Optional[Dict[str, Any]]:
        value = self._data.get(key)
        return copy.deepcopy(value) if value is not None else None

    async def _write(self, key: str, value: Dict[str, Any]) -> None:
        self._data[key] = copy.deepcopy(value)

    async def _remove(self, key: str) -> None:
        self._data.pop(key, None)

    async def list(self, prefix: str) -> Dict[str, Dict[str, Any]]:
        return {
            k: copy.deepcopy(v)
            for k, v in self._data.items()
            if k != prefix and is_under(k, prefix)
        }


class SqlStateStore(StateStore):
    """
    Records persisted in the `records` table; change notifications fan out
    to subscribers of this process.
    """

    def __init__(self, sessionmaker: async_sessionmaker[AsyncSession]) -> None:
        super().__init__()
        self._sessionmaker = sessionmaker

    async def get(self, key: str) -> Optional[Dict[str, Any]]:
        try:
            async with self._sessionmaker() as session:
                record = await session.get(Record, key)
                return copy.deepcopy(record.value) if record else None
        except SQLAlchemyError as e:
            raise StoreUnavailable(f"get {key}: {e}") from e

    async def _write(self, key: str, value: Dict[str, Any]) -> None:
        try:
            async with self._sessionmaker() as session:
                await session.merge(Record(key=key, value=copy.deepcopy(value)))
                await session.commit()
        except SQLAlchemyError as e:
            raise StoreUnavailable(f"set {key}: {e}") from e

    async def _remove(self, key: str) -> None:
        try:
            async with self._sessionmaker() as session:
                await session.execute(delete(Record).where(Record.key == key))
                await session.commit()
        except SQLAlchemyError as e:
            raise StoreUnavailable(f"delete {key}: {e}") from e

    async def list(self, prefix: str) -> Dict[str, Dict[str, Any]]:
        like = prefix.rstrip("/") + "/%"
        try:
            async with self._sessionmaker() as session:
                result = await session.execute(
                    select(Record).where(Record.key.like(like))
                )
                # LIKE treats "_" as a wildcard
                return {
                    r.key: copy.deepcopy(r.value)
                    for r in result.scalars()
                    if is_under(r.key, prefix)
                }
        except SQLAlchemyError as e:
            raise StoreUnavailable(f"list {prefix}: {e}") from e
