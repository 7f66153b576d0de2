"""Redis pub/sub relay that fans realtime events out between API nodes."""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

import redis.asyncio as redis_asyncio
from redis.exceptions import RedisError

from app.monitoring.metrics import realtime_relay_restarts_total

logger = logging.getLogger(__name__)

_RELAY_ERRORS: tuple[type[BaseException], ...] = (
    RedisError,
    ConnectionError,
    TimeoutError,
    asyncio.TimeoutError,
)

_RECOVERY_BASE_DELAY = 0.5
_RECOVERY_MAX_DELAY = 30.0

MessageHandler = Callable[[dict[str, Any]], Awaitable[None]]

EVENTS_TOPIC = "events"


@dataclass(slots=True)
class RelayConfig:
    redis_url: str | None
    prefix: str = "huddle.realtime"
    node_id: str | None = None


class RelayUnavailableError(RuntimeError):
    """Raised when the relay cannot reach Redis or is not configured."""


class Subscription:
    """Handle returned by :meth:`RedisRelay.subscribe`."""

    def __init__(self, channel: str, cleanup: Callable[[], Awaitable[None]]) -> None:
        self.channel = channel
        self._cleanup = cleanup
        self._closed = False

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        await self._cleanup()


@dataclass(slots=True)
class _ReaderState:
    channel: str
    handler: MessageHandler
    task: asyncio.Task[Any] | None = None
    pubsub: Any | None = None
    active: bool = True
    pausing: bool = False


class RedisRelay:
    """Publishes JSON payloads to Redis channels and feeds subscribers.

    When a reader dies or a publish fails the relay reconnects in the
    background with exponential backoff and re-attaches every live
    subscription.
    """

    def __init__(self, config: RelayConfig) -> None:
        self._config = config
        self._redis: Any | None = None
        self._readers: list[_ReaderState] = []
        self._recovery_lock = asyncio.Lock()
        self._recovery_task: asyncio.Task[Any] | None = None

    @property
    def node_id(self) -> str | None:
        return self._config.node_id

    @property
    def configured(self) -> bool:
        return bool(self._config.redis_url)

    @property
    def connected(self) -> bool:
        return self._redis is not None

    def channel_for(self, topic: str) -> str:
        prefix = self._config.prefix.rstrip(".")
        return f"{prefix}.{topic}" if prefix else topic

    async def start(self) -> None:
        if not self.configured or self._redis is not None:
            return
        client = redis_asyncio.from_url(
            self._config.redis_url,
            encoding="utf-8",
            decode_responses=True,
        )
        try:
            await client.ping()
        except _RELAY_ERRORS + (OSError,) as exc:
            with contextlib.suppress(Exception):
                await client.close()
            raise RelayUnavailableError("Redis relay is unreachable") from exc
        self._redis = client

    async def stop(self) -> None:
        if self._recovery_task is not None:
            self._recovery_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._recovery_task
            self._recovery_task = None
        for state in list(self._readers):
            await self._close_reader(state)
        if self._redis is not None:
            with contextlib.suppress(Exception):
                await self._redis.close()
            self._redis = None

    async def publish(self, topic: str, payload: dict[str, Any]) -> None:
        if not self.configured:
            raise RelayUnavailableError("Redis relay is not configured")
        if self._redis is None:
            await self.start()
        channel = self.channel_for(topic)
        try:
            await self._redis.publish(channel, json.dumps(payload))
        except _RELAY_ERRORS as exc:
            self._schedule_recovery("publish_failed")
            raise RelayUnavailableError("Redis relay is unavailable") from exc
        logger.debug("Relayed realtime payload", extra={"channel": channel})

    async def subscribe(self, topic: str, handler: MessageHandler) -> Subscription:
        if not self.configured:
            raise RelayUnavailableError("Redis relay is not configured")
        if self._redis is None:
            await self.start()
        state = _ReaderState(channel=self.channel_for(topic), handler=handler)
        self._readers.append(state)
        try:
            await self._attach_reader(state)
        except RelayUnavailableError:
            await self._close_reader(state)
            self._schedule_recovery("subscribe_failed")
            raise

        async def cleanup() -> None:
            await self._close_reader(state)

        return Subscription(state.channel, cleanup)

    # ------------------------------------------------------------------
    # Reader lifecycle
    # ------------------------------------------------------------------
    async def _attach_reader(self, state: _ReaderState) -> None:
        if self._redis is None:
            raise RelayUnavailableError("Redis relay is not connected")
        pubsub = self._redis.pubsub()
        try:
            await pubsub.subscribe(state.channel)
        except _RELAY_ERRORS as exc:
            with contextlib.suppress(Exception):
                await pubsub.close()
            raise RelayUnavailableError("Redis relay is unavailable") from exc
        state.pubsub = pubsub
        task = asyncio.create_task(self._read(state, pubsub), name=f"relay-{state.channel}")
        state.task = task
        task.add_done_callback(lambda finished: self._on_reader_done(state, finished))

    async def _read(self, state: _ReaderState, pubsub: Any) -> None:
        try:
            async for message in pubsub.listen():
                if message.get("type") != "message":
                    continue
                raw = message.get("data")
                if not isinstance(raw, str):
                    continue
                try:
                    payload = json.loads(raw)
                except json.JSONDecodeError:
                    logger.warning("Discarded malformed relay payload", extra={"channel": state.channel})
                    continue
                try:
                    await state.handler(payload)
                except Exception:
                    logger.exception("Relay handler failed", extra={"channel": state.channel})
        finally:
            with contextlib.suppress(Exception):
                await pubsub.unsubscribe(state.channel)
            with contextlib.suppress(Exception):
                await pubsub.close()

    def _on_reader_done(self, state: _ReaderState, task: asyncio.Task[Any]) -> None:
        state.task = None
        state.pubsub = None
        if not state.active or state.pausing or task.cancelled():
            return
        exc = task.exception()
        logger.warning(
            "Relay reader for %s stopped; scheduling recovery",
            state.channel,
            exc_info=exc,
        )
        self._schedule_recovery("reader_stopped")

    async def _pause_reader(self, state: _ReaderState) -> None:
        state.pausing = True
        task = state.task
        if task is not None and not task.done():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        state.task = None
        state.pubsub = None
        state.pausing = False

    async def _close_reader(self, state: _ReaderState) -> None:
        state.active = False
        await self._pause_reader(state)
        if state in self._readers:
            self._readers.remove(state)

    # ------------------------------------------------------------------
    # Recovery
    # ------------------------------------------------------------------
    def _schedule_recovery(self, reason: str) -> None:
        if not self.configured:
            return
        if self._recovery_task is not None and not self._recovery_task.done():
            return
        logger.info("Scheduling Redis relay recovery (%s)", reason)
        self._recovery_task = asyncio.create_task(self._recover(reason), name="relay-recovery")

    async def _recover(self, reason: str) -> None:
        attempt = 0
        while True:
            await asyncio.sleep(min(_RECOVERY_BASE_DELAY * (2**attempt), _RECOVERY_MAX_DELAY))
            try:
                await self._reconnect()
            except Exception:
                attempt += 1
                logger.warning(
                    "Redis relay recovery attempt %d failed", attempt, exc_info=True
                )
                continue
            break
        realtime_relay_restarts_total.labels(reason).inc()
        logger.info("Redis relay recovered after %s", reason)
        self._recovery_task = None

    async def _reconnect(self) -> None:
        async with self._recovery_lock:
            for state in list(self._readers):
                await self._pause_reader(state)
            if self._redis is not None:
                with contextlib.suppress(Exception):
                    await self._redis.close()
                self._redis = None
            await self.start()
            for state in [state for state in self._readers if state.active]:
                await self._attach_reader(state)
