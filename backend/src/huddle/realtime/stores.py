"""Ephemeral presence and typing state kept per API node."""

from __future__ import annotations

import asyncio
import time
from collections import defaultdict
from typing import Dict, Hashable, Set


class PresenceStatusStore:
    """Who currently has a live connection joined to each room.

    A user counts as present while at least one of their connections is
    joined, so a second tab neither re-announces nor drops presence.
    """

    def __init__(self) -> None:
        self._rooms: Dict[int, Dict[int, Set[Hashable]]] = defaultdict(dict)
        self._lock = asyncio.Lock()

    @staticmethod
    def _snapshot(bucket: Dict[int, Set[Hashable]]) -> list[int]:
        return sorted(bucket)

    async def mark_online(
        self, room_id: int, user_id: int, connection: Hashable
    ) -> tuple[list[int], bool]:
        async with self._lock:
            bucket = self._rooms.setdefault(room_id, {})
            connections = bucket.setdefault(user_id, set())
            first = not connections
            connections.add(connection)
            return self._snapshot(bucket), first

    async def mark_offline(
        self, room_id: int, user_id: int, connection: Hashable
    ) -> tuple[list[int], bool]:
        async with self._lock:
            bucket = self._rooms.get(room_id)
            if not bucket or connection not in bucket.get(user_id, set()):
                return self._snapshot(bucket or {}), False
            connections = bucket[user_id]
            connections.discard(connection)
            changed = not connections
            if changed:
                bucket.pop(user_id, None)
            if not bucket:
                self._rooms.pop(room_id, None)
            return self._snapshot(bucket), changed

    async def forget_room(self, room_id: int) -> None:
        async with self._lock:
            self._rooms.pop(room_id, None)

    async def online(self, room_id: int) -> list[int]:
        async with self._lock:
            return self._snapshot(self._rooms.get(room_id, {}))

    async def is_online(self, room_id: int, user_id: int) -> bool:
        async with self._lock:
            return bool(self._rooms.get(room_id, {}).get(user_id))


class TypingStatusStore:
    """Typing indicators that lapse after ``ttl_seconds`` without a refresh.

    A lapsed indicator is held back until :meth:`sweep` collects it, so the
    owner of the store can still announce the stop to the room.
    """

    def __init__(self, ttl_seconds: float) -> None:
        self._ttl = ttl_seconds
        self._entries: Dict[int, Dict[int, float]] = defaultdict(dict)
        self._lapsed: Dict[int, Set[int]] = defaultdict(set)
        self._lock = asyncio.Lock()

    @property
    def ttl(self) -> float:
        return self._ttl

    def _expire(self, room_id: int, now: float) -> list[int]:
        bucket = self._entries.get(room_id)
        if not bucket:
            return []
        expired = [user_id for user_id, ts in bucket.items() if now - ts > self._ttl]
        for user_id in expired:
            bucket.pop(user_id, None)
            self._lapsed[room_id].add(user_id)
        if not bucket:
            self._entries.pop(room_id, None)
        return expired

    def _take_lapsed(self, room_id: int, user_id: int) -> bool:
        lapsed = self._lapsed.get(room_id)
        if not lapsed or user_id not in lapsed:
            return False
        lapsed.discard(user_id)
        if not lapsed:
            self._lapsed.pop(room_id, None)
        return True

    def _snapshot(self, room_id: int) -> list[int]:
        return sorted(self._entries.get(room_id, {}))

    async def set_status(
        self, room_id: int, user_id: int, is_typing: bool
    ) -> tuple[list[int], bool]:
        """Record the indicator; ``changed`` is False for a repeated stop."""

        now = time.monotonic()
        async with self._lock:
            self._expire(room_id, now)
            was_lapsed = self._take_lapsed(room_id, user_id)
            bucket = self._entries.setdefault(room_id, {})
            if is_typing:
                # Refreshes are forwarded too so peers can extend their countdown.
                bucket[user_id] = now
                changed = True
            else:
                changed = bucket.pop(user_id, None) is not None or was_lapsed
            if not bucket:
                self._entries.pop(room_id, None)
            return self._snapshot(room_id), changed

    async def clear_user(self, room_id: int, user_id: int) -> tuple[list[int], bool]:
        now = time.monotonic()
        async with self._lock:
            self._expire(room_id, now)
            was_lapsed = self._take_lapsed(room_id, user_id)
            bucket = self._entries.get(room_id)
            if not bucket or user_id not in bucket:
                return self._snapshot(room_id), was_lapsed
            bucket.pop(user_id, None)
            if not bucket:
                self._entries.pop(room_id, None)
            return self._snapshot(room_id), True

    async def sweep(self) -> dict[int, list[int]]:
        """Expire stale indicators in every room and hand back those not yet announced."""

        now = time.monotonic()
        async with self._lock:
            for room_id in list(self._entries):
                self._expire(room_id, now)
            lapsed = {room_id: sorted(users) for room_id, users in self._lapsed.items() if users}
            self._lapsed.clear()
            return lapsed

    async def forget_room(self, room_id: int) -> None:
        async with self._lock:
            self._entries.pop(room_id, None)
            self._lapsed.pop(room_id, None)

    async def snapshot(self, room_id: int) -> list[int]:
        now = time.monotonic()
        async with self._lock:
            self._expire(room_id, now)
            return self._snapshot(room_id)
