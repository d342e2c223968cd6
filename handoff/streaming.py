"""Incremental parser for generation-backend streams.

The backend answers with newline-delimited records of the form::

    data: {"content": "Sure", "chatId": "c1"}
    data: {"content": ", I can help.", "isComplete": true, "sources": []}
    data: [DONE]

Network reads do not respect record boundaries, so the consumer buffers until
a newline arrives and only then parses the record. Bytes go through an
incremental UTF-8 decoder for the same reason. Escalation flags are read from
the completing record only; flags echoed on earlier records are provisional
and ignored.

If the source ends, errors or idles out before a terminal record, the result
carries the partial content with status ``truncated`` instead of waiting
forever.
"""

from __future__ import annotations

import asyncio
import codecs
import json
import logging
from collections.abc import AsyncIterable, AsyncIterator, Iterable

from pydantic import ValidationError

from .errors import StreamInterruptedError
from .models import StreamChunk, StreamResult, StreamStatus, TerminalMetadata
from .schemas import StreamPayload

logger = logging.getLogger(__name__)

DATA_PREFIX = "data:"
DONE_SENTINEL = "[DONE]"


class StreamConsumer:
    """Accumulate one streamed response into chunks and a final result."""

    def __init__(self, *, idle_timeout: float | None = None) -> None:
        self.idle_timeout = idle_timeout
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""
        self._parts: list[str] = []
        self._terminal: TerminalMetadata | None = None
        self._completed = False
        self._ended = False
        self._chat_id: str | None = None
        self._error: str | None = None
        self._result: StreamResult | None = None

    @property
    def content(self) -> str:
        return "".join(self._parts)

    @property
    def chat_id(self) -> str | None:
        return self._chat_id

    @property
    def finished(self) -> bool:
        return self._result is not None

    @property
    def result(self) -> StreamResult:
        if self._result is None:
            raise RuntimeError("stream has not finished yet")
        return self._result

    # ------------------------------------------------------------------
    # Synchronous feeding

    def feed(self, data: str | bytes) -> list[StreamChunk]:
        """Add one read's worth of data and return the chunks it completed."""

        if self._result is not None:
            return []
        if isinstance(data, (bytes, bytearray)):
            data = self._decoder.decode(bytes(data))
        self._buffer += data
        chunks: list[StreamChunk] = []
        while "\n" in self._buffer:
            line, self._buffer = self._buffer.split("\n", 1)
            chunk = self._parse_line(line)
            if chunk is not None:
                chunks.append(chunk)
        return chunks

    def flush(self) -> list[StreamChunk]:
        """Parse whatever is left in the buffer as a final, unterminated line."""

        if self._result is not None:
            return []
        self._buffer += self._decoder.decode(b"", final=True)
        line, self._buffer = self._buffer, ""
        if not line:
            return []
        chunk = self._parse_line(line)
        return [chunk] if chunk is not None else []

    def finish(self) -> StreamResult:
        if self._result is None:
            self.flush()
            self._result = self._build_result()
        return self._result

    # ------------------------------------------------------------------
    # Asynchronous consumption

    async def iter_chunks(
        self, source: AsyncIterable[str | bytes]
    ) -> AsyncIterator[StreamChunk]:
        iterator = source.__aiter__()
        try:
            while not self._ended:
                try:
                    if self.idle_timeout is None:
                        data = await iterator.__anext__()
                    else:
                        data = await asyncio.wait_for(
                            iterator.__anext__(), self.idle_timeout
                        )
                except StopAsyncIteration:
                    break
                for chunk in self.feed(data):
                    yield chunk
        except asyncio.TimeoutError:
            logger.warning(
                "Generation stream idle for %.1fs; closing as truncated",
                self.idle_timeout,
            )
        except (StreamInterruptedError, ConnectionError, OSError) as exc:
            logger.warning("Generation stream interrupted: %s", exc)
        finally:
            aclose = getattr(iterator, "aclose", None)
            if aclose is not None:
                await aclose()
        for chunk in self.flush():
            yield chunk
        self._result = self._build_result()

    async def consume(self, source: AsyncIterable[str | bytes]) -> StreamResult:
        async for _ in self.iter_chunks(source):
            pass
        return self.finish()

    # ------------------------------------------------------------------
    # Helpers

    def _parse_line(self, line: str) -> StreamChunk | None:
        line = line.rstrip("\r")
        if self._ended:
            return None
        if not line.startswith(DATA_PREFIX):
            if line.strip():
                logger.debug("Skipping non-data stream line: %r", line[:80])
            return None
        data = line[len(DATA_PREFIX):].strip()
        if data == DONE_SENTINEL:
            self._ended = True
            if self._completed:
                return None
            self._completed = True
            return StreamChunk("", is_complete=True)
        if self._completed:
            logger.debug("Ignoring stream record received after completion")
            return None
        try:
            raw = json.loads(data)
        except json.JSONDecodeError:
            logger.debug("Skipping malformed stream record: %r", data[:80])
            return None
        if not isinstance(raw, dict):
            logger.debug("Skipping non-object stream record: %r", data[:80])
            return None
        try:
            payload = StreamPayload.model_validate(raw)
        except ValidationError as exc:
            logger.debug("Skipping invalid stream record: %s", exc)
            return None

        if payload.chat_id and self._chat_id is None:
            self._chat_id = payload.chat_id
        delta = payload.content or ""
        if delta:
            self._parts.append(delta)
        if payload.error:
            self._error = payload.error
            self._completed = True
            return StreamChunk(delta, is_complete=True)
        if payload.is_complete:
            self._completed = True
            self._terminal = TerminalMetadata(
                escalation_requested=payload.escalation_requested,
                escalation_reason=payload.escalation_reason,
                sources=list(payload.sources or []),
            )
            return StreamChunk(delta, is_complete=True, terminal_metadata=self._terminal)
        if payload.escalation_requested:
            logger.debug("Provisional escalation flag before completion ignored")
        if not delta:
            return None
        return StreamChunk(delta)

    def _build_result(self) -> StreamResult:
        if self._error is not None:
            status = StreamStatus.FAILED
        elif self._completed:
            status = StreamStatus.COMPLETE
        else:
            status = StreamStatus.TRUNCATED
            logger.warning(
                "Generation stream ended without a terminal record (%d chars kept)",
                len(self.content),
            )
        return StreamResult(
            content=self.content,
            status=status,
            terminal_metadata=self._terminal,
            chat_id=self._chat_id,
            error=self._error,
        )


def parse_stream_lines(lines: Iterable[str | bytes]) -> StreamResult:
    """Parse an already-split sequence of lines, e.g. ``response.iter_lines()``."""

    consumer = StreamConsumer()
    for line in lines:
        if isinstance(line, (bytes, bytearray)):
            line = bytes(line).decode("utf-8", errors="replace")
        consumer.feed(line if line.endswith("\n") else line + "\n")
    return consumer.finish()
