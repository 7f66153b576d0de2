"""Metric definitions for the messaging core and its realtime bus."""

from __future__ import annotations

from .registry import registry


realtime_events_total = registry.counter(
    "huddle_realtime_events_total",
    "Realtime events handled by the event bus.",
    label_names=("scope", "direction", "event"),
)

realtime_connections = registry.gauge(
    "huddle_realtime_active_connections",
    "WebSocket connections currently attached to this node.",
    label_names=("scope",),
)

realtime_relay_errors_total = registry.counter(
    "huddle_realtime_relay_errors_total",
    "Failures while relaying events to other nodes.",
    label_names=("scope", "reason"),
)

realtime_relay_restarts_total = registry.counter(
    "huddle_realtime_relay_restarts_total",
    "Times the Redis relay reconnected after a failure.",
    label_names=("reason",),
)

messages_sent_total = registry.counter(
    "huddle_messages_sent_total",
    "Messages appended to room ledgers.",
    label_names=("room_kind",),
)

side_effect_failures_total = registry.counter(
    "huddle_side_effect_failures_total",
    "Best-effort steps that failed after the primary write succeeded.",
    label_names=("step",),
)
