"""Client for the shared presence store (Redis).

All nodes read and write rooms and rosters through these primitives; no node
keeps its own copy as the source of truth. Every call can fail with
:class:`~bchat.realtime.exceptions.StoreError`, which callers log and survive.
"""

from __future__ import annotations

import functools
import logging
from typing import TYPE_CHECKING
from typing import Any

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from bchat.presence import keys
from bchat.realtime.exceptions import StoreError

if TYPE_CHECKING:  # import for type checking only
    from collections.abc import Awaitable
    from collections.abc import Callable

logger = logging.getLogger(__name__)


def _store_call(func: Callable[..., Awaitable[Any]]) -> Callable[..., Awaitable[Any]]:
    @functools.wraps(func)
    async def wrapper(self: PresenceStore, *args: Any, **kwargs: Any) -> Any:
        try:
            return await func(self, *args, **kwargs)
        except (RedisError, OSError) as exc:
            msg = f"{func.__name__} failed: {exc}"
            raise StoreError(msg) from exc

    return wrapper


class PresenceStore:
    def __init__(self, client: aioredis.Redis, *, prefix: str = ""):
        self._redis = client
        self._prefix = prefix

    @classmethod
    def from_url(cls, url: str, *, prefix: str = "") -> PresenceStore:
        return cls(aioredis.Redis.from_url(url, decode_responses=True), prefix=prefix)

    @property
    def client(self) -> aioredis.Redis:
        return self._redis

    @_store_call
    async def room_exists(self, name: str) -> bool:
        return bool(await self._redis.get(keys.room_flag_key(name, self._prefix)))

    @_store_call
    async def mark_room_exists(self, name: str) -> bool:
        """Set the existence flag. Returns True only for the caller that set it."""

        created = await self._redis.set(
            keys.room_flag_key(name, self._prefix),
            "1",
            nx=True,
        )
        return bool(created)

    @_store_call
    async def append_room_to_global_list(self, name: str) -> None:
        await self._redis.rpush(keys.room_list_key(self._prefix), name)

    @_store_call
    async def list_rooms(self) -> list[str]:
        return list(await self._redis.lrange(keys.room_list_key(self._prefix), 0, -1))

    @_store_call
    async def append_roster_member(self, room: str, identity: str) -> None:
        # Append-only: repeat joins are recorded again, readers dedupe.
        await self._redis.rpush(keys.roster_key(room, self._prefix), identity)

    @_store_call
    async def list_roster_members(self, room: str) -> list[str]:
        return list(await self._redis.lrange(keys.roster_key(room, self._prefix), 0, -1))

    @_store_call
    async def ping(self) -> bool:
        return bool(await self._redis.ping())

    async def close(self) -> None:
        await self._redis.aclose()


def unique_members(members: list[str]) -> list[str]:
    """Roster for display: duplicates dropped, first-join order kept."""

    return list(dict.fromkeys(members))
