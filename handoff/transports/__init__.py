"""Transport registry for realtime session delivery."""

from __future__ import annotations

from typing import Any

from ..bus import ChannelBus
from .base import EventHandlers, Subscription, Transport, dispatch_event, session_topic
from .local import LocalTransport
from .websocket import WebSocketTransport

_REGISTRY: dict[str, type[Transport]] = {}


def register_transport(transport: type[Transport]) -> None:
    """Register a transport class in the global registry."""
    _REGISTRY[transport.transport_name] = transport


def get_transport(name: str) -> type[Transport]:
    """Retrieve a transport class for ``name`` or raise ``KeyError``."""
    normalized = name.strip().lower()
    if normalized not in _REGISTRY:
        raise KeyError(f"Transport '{name}' is not configured")
    return _REGISTRY[normalized]


def create_transport(settings: Any, *, bus: ChannelBus | None = None) -> Transport:
    transport_cls = get_transport(settings.transport_name)
    return transport_cls.from_settings(settings, bus=bus)


# Pre-register built-in transports
register_transport(LocalTransport)
register_transport(WebSocketTransport)

__all__ = [
    "EventHandlers",
    "LocalTransport",
    "Subscription",
    "Transport",
    "WebSocketTransport",
    "create_transport",
    "dispatch_event",
    "get_transport",
    "register_transport",
    "session_topic",
]
