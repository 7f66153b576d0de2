"""Process-wide realtime bus wiring for the FastAPI app."""

from __future__ import annotations

import logging
import uuid

from app.config import get_settings

from .bus import ConnectionRegistry, EventBus, build_event, safe_send_json
from .stores import PresenceStatusStore, TypingStatusStore
from .transport import RedisRelay, RelayConfig, RelayUnavailableError

logger = logging.getLogger(__name__)

settings = get_settings()

_node_id = settings.realtime_node_id or uuid.uuid4().hex

event_bus = EventBus(
    relay=RedisRelay(
        RelayConfig(
            redis_url=settings.realtime_redis_url,
            prefix=settings.realtime_namespace,
            node_id=_node_id,
        )
    ),
    node_id=_node_id,
    typing_ttl_seconds=float(settings.realtime_typing_ttl_seconds),
)


def get_event_bus() -> EventBus:
    return event_bus


async def startup_realtime() -> None:
    await event_bus.start()
    logger.info("Realtime bus started on node %s", event_bus.node_id)


async def shutdown_realtime() -> None:
    await event_bus.stop()


__all__ = [
    "ConnectionRegistry",
    "EventBus",
    "PresenceStatusStore",
    "RedisRelay",
    "RelayConfig",
    "RelayUnavailableError",
    "TypingStatusStore",
    "build_event",
    "event_bus",
    "get_event_bus",
    "safe_send_json",
    "shutdown_realtime",
    "startup_realtime",
]
