"""Client for the streaming generation backend."""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator, Sequence
from typing import Any, Protocol

import httpx

from .errors import GenerationError, StreamInterruptedError
from .models import Message

logger = logging.getLogger(__name__)


class GenerationClient(Protocol):
    def stream(
        self,
        message: str,
        history: Sequence[Message],
        *,
        chat_id: str | None = None,
    ) -> AsyncIterator[str | bytes]:
        ...


def build_generation_request(
    message: str, history: Sequence[Message], chat_id: str | None = None
) -> dict[str, Any]:
    return {
        "message": message,
        "conversationHistory": [item.to_history() for item in history],
        "stream": True,
        "chatId": chat_id,
    }


class HttpGenerationClient:
    """POST the conversation and yield the raw ``data:`` lines of the reply.

    Failures before the response starts raise :class:`GenerationError`; a
    connection dropped mid-stream raises :class:`StreamInterruptedError` so
    the consumer can keep the partial content.
    """

    def __init__(
        self,
        url: str,
        *,
        timeout: float = 60.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.url = url
        self.timeout = timeout
        self._client = client

    async def stream(
        self,
        message: str,
        history: Sequence[Message],
        *,
        chat_id: str | None = None,
    ) -> AsyncIterator[str]:
        payload = build_generation_request(message, history, chat_id)
        client = self._client or httpx.AsyncClient(timeout=self.timeout)
        try:
            async with client.stream(
                "POST",
                self.url,
                json=payload,
                headers={"Accept": "text/event-stream"},
                timeout=self.timeout,
            ) as response:
                if response.status_code >= 400:
                    await response.aread()
                    raise GenerationError(
                        f"Generation backend returned HTTP {response.status_code}"
                    )
                try:
                    async for line in response.aiter_lines():
                        yield line + "\n"
                except httpx.TransportError as exc:
                    raise StreamInterruptedError(str(exc) or type(exc).__name__) from exc
        except httpx.TransportError as exc:
            logger.warning("Generation backend unreachable at %s: %s", self.url, exc)
            raise GenerationError("Generation backend unreachable") from exc
        finally:
            if self._client is None:
                await client.aclose()
