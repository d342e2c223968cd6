"""Assemble a :class:`SessionController` from configuration."""

from __future__ import annotations

from collections.abc import Callable
from typing import Any

from .bus import ChannelBus
from .config import Settings, get_settings
from .escalation import EscalationDetector
from .generation import GenerationClient, HttpGenerationClient
from .models import Role
from .routing import HttpOperatorRouter, LocalOperatorRouter, OperatorRouter
from .session import SessionController
from .transports import create_transport
from .transports.base import Transport


def build_controller(
    session_id: str,
    settings: Settings | None = None,
    *,
    bus: ChannelBus | None = None,
    transport: Transport | None = None,
    generator: GenerationClient | None = None,
    router: OperatorRouter | None = None,
    role: Role | str = Role.END_USER,
    sender_id: str | None = None,
    sender_name: str | None = None,
    welcome_message: str | None = None,
    on_change: Callable[[SessionController], Any] | None = None,
) -> SessionController:
    """Resolve collaborators once; call sites never branch on the backend.

    Unknown transport names raise ``KeyError``.
    """

    settings = settings or get_settings()
    if bus is None and settings.transport_name == "local":
        bus = ChannelBus()
    if transport is None:
        transport = create_transport(settings, bus=bus)
    if generator is None and settings.generation_url:
        generator = HttpGenerationClient(
            settings.generation_url, timeout=settings.generation_timeout
        )
    if router is None:
        if settings.operator_routing_url:
            router = HttpOperatorRouter(settings.operator_routing_url)
        elif bus is not None:
            router = LocalOperatorRouter(bus)
    return SessionController(
        session_id,
        transport=transport,
        generator=generator,
        router=router,
        detector=EscalationDetector(
            settings.escalation_marker, settings.escalation_default_reason
        ),
        role=Role.parse(role),
        sender_id=sender_id,
        sender_name=sender_name,
        confirmation_timeout=settings.confirmation_timeout,
        stream_idle_timeout=settings.stream_idle_timeout,
        welcome_message=welcome_message,
        on_change=on_change,
    )
