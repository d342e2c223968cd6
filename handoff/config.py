"""Runtime configuration read from the environment."""

from __future__ import annotations

import dataclasses
import os
from functools import lru_cache

from .escalation import DEFAULT_MARKER, DEFAULT_REASON


@dataclasses.dataclass(frozen=True)
class Settings:
    transport_name: str = "local"
    ws_url: str | None = None
    ws_token: str | None = None
    generation_url: str | None = None
    generation_timeout: float = 60.0
    operator_routing_url: str | None = None
    escalation_marker: str = DEFAULT_MARKER
    escalation_default_reason: str = DEFAULT_REASON
    confirmation_timeout: float = 10.0
    stream_idle_timeout: float | None = 30.0
    reconnect_max_attempts: int = 10
    reconnect_max_delay: float = 30.0
    escalation_rate_limit: str = "10/minute"
    chat_max_message_length: int = 5000
    session_id_max_length: int = 64


def _optional_float(value: str | None) -> float | None:
    if value is None or not value.strip():
        return None
    parsed = float(value)
    return parsed if parsed > 0 else None


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Load settings from the environment with defaults for development."""

    idle = os.getenv("STREAM_IDLE_TIMEOUT_SECONDS")
    return Settings(
        transport_name=os.getenv("HANDOFF_TRANSPORT", "local").strip().lower(),
        ws_url=os.getenv("HANDOFF_WS_URL") or None,
        ws_token=os.getenv("HANDOFF_WS_TOKEN") or None,
        generation_url=os.getenv("GENERATION_URL") or None,
        generation_timeout=float(os.getenv("GENERATION_TIMEOUT", "60")),
        operator_routing_url=os.getenv("OPERATOR_ROUTING_URL") or None,
        escalation_marker=os.getenv("ESCALATION_MARKER") or DEFAULT_MARKER,
        escalation_default_reason=os.getenv("ESCALATION_DEFAULT_REASON") or DEFAULT_REASON,
        confirmation_timeout=float(os.getenv("CONFIRMATION_TIMEOUT_SECONDS", "10")),
        stream_idle_timeout=30.0 if idle is None else _optional_float(idle),
        reconnect_max_attempts=int(os.getenv("RECONNECT_MAX_ATTEMPTS", "10")),
        reconnect_max_delay=float(os.getenv("RECONNECT_MAX_DELAY_SECONDS", "30")),
        escalation_rate_limit=os.getenv("ESCALATION_RATE_LIMIT", "10/minute"),
        chat_max_message_length=int(os.getenv("CHAT_MAX_MESSAGE_LENGTH", "5000")),
        session_id_max_length=int(os.getenv("SESSION_ID_MAX_LENGTH", "64")),
    )


def reset_settings_cache() -> None:
    """Clear cached settings; useful in tests when env vars change."""

    get_settings.cache_clear()
