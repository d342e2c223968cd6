"""Merging of optimistic and confirmed messages into one ordered list.

Messages sent in realtime mode are shown immediately under a provisional
``optimistic_`` id. When the transport echoes the confirmed record back, the
optimistic entry is replaced in place so the conversation never shows the
same message twice. The list stays sorted by ``created_at`` with insertion
order breaking ties.

Pairing an echo with its optimistic entry uses ``(role, content)``. Two
identical messages pending at once could be paired out of order, so
:meth:`MessageReconciler.begin_send` refuses a second identical pending send.
"""

from __future__ import annotations

import bisect
import itertools
import logging
import uuid
from datetime import datetime, timezone

from .errors import DuplicatePendingMessageError
from .models import OPTIMISTIC_PREFIX, Message, Role, utcnow

logger = logging.getLogger(__name__)

SEND_FAILURE_NOTICE = "Failed to send message. Please try again."


def _aware(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def system_message(content: str, *, id_prefix: str = "system_") -> Message:
    return Message(
        id=f"{id_prefix}{uuid.uuid4().hex}",
        role=Role.SYSTEM,
        content=content,
    )


class MessageReconciler:
    def __init__(self) -> None:
        self._messages: list[Message] = []
        self._keys: list[tuple[datetime, int]] = []
        self._pending: dict[str, Message] = {}
        self._counter = itertools.count()

    # ------------------------------------------------------------------
    # Queries

    @property
    def messages(self) -> list[Message]:
        return list(self._messages)

    @property
    def pending_ids(self) -> list[str]:
        return list(self._pending)

    def get(self, message_id: str) -> Message | None:
        index = self._index_of(message_id)
        return None if index is None else self._messages[index]

    def is_pending(self, message_id: str) -> bool:
        return message_id in self._pending

    def __len__(self) -> int:
        return len(self._messages)

    def __iter__(self):
        return iter(list(self._messages))

    # ------------------------------------------------------------------
    # Mutations

    def load(self, messages: list[Message]) -> None:
        """Replace the list with ``messages`` from history.

        History may arrive unsorted and with repeated ids; the first record
        for each id wins and the result is stable-sorted by timestamp.
        """

        self._messages.clear()
        self._keys.clear()
        self._pending.clear()
        seen: set[str] = set()
        unique: list[Message] = []
        for message in messages:
            if message.id in seen:
                logger.debug("Dropping duplicate history message %s", message.id)
                continue
            seen.add(message.id)
            unique.append(message)
        unique.sort(key=lambda m: _aware(m.created_at))
        for message in unique:
            self._append_sorted(message, next(self._counter))

    def append_local(self, message: Message) -> Message | None:
        """Insert a locally authoritative message (AI replies, notices)."""

        if self._index_of(message.id) is not None:
            return None
        self._append_sorted(message, next(self._counter))
        return message

    def begin_send(
        self,
        content: str,
        role: Role,
        sender_id: str | None = None,
    ) -> Message:
        for pending in self._pending.values():
            if pending.role is role and pending.content == content:
                raise DuplicatePendingMessageError(
                    "An identical message is still waiting for confirmation"
                )
        message = Message(
            id=f"{OPTIMISTIC_PREFIX}{uuid.uuid4().hex}",
            role=role,
            content=content,
            sender_id=sender_id,
        )
        self._append_sorted(message, next(self._counter))
        self._pending[message.id] = message
        return message

    def confirm(self, message: Message) -> Message | None:
        """Apply a confirmed message from the transport.

        Returns the stored message, or ``None`` when the confirmation was a
        duplicate and nothing changed.
        """

        if self._index_of(message.id) is not None:
            logger.debug("Ignoring duplicate confirmation for %s", message.id)
            return None
        optimistic = self._match_pending(message)
        if optimistic is None:
            self._append_sorted(message, next(self._counter))
            return message

        del self._pending[optimistic.id]
        index = self._index_of(optimistic.id)
        seq = self._keys[index][1]
        key = (_aware(message.created_at), seq)
        before_ok = index == 0 or self._keys[index - 1] <= key
        after_ok = index == len(self._keys) - 1 or key <= self._keys[index + 1]
        if before_ok and after_ok:
            self._messages[index] = message
            self._keys[index] = key
        else:
            del self._messages[index]
            del self._keys[index]
            self._append_sorted(message, seq)
        return message

    def update(
        self,
        message_id: str,
        content: str,
        updated_at: datetime | None = None,
    ) -> Message | None:
        index = self._index_of(message_id)
        if index is None:
            logger.debug("Ignoring update for unknown message %s", message_id)
            return None
        current = self._messages[index]
        metadata = dict(current.metadata)
        metadata["updated_at"] = (updated_at or utcnow()).isoformat()
        updated = Message(
            id=current.id,
            role=current.role,
            content=content,
            created_at=current.created_at,
            sender_id=current.sender_id,
            metadata=metadata,
        )
        self._messages[index] = updated
        return updated

    def fail_send(
        self, optimistic_id: str, notice: str = SEND_FAILURE_NOTICE
    ) -> Message:
        self._remove(optimistic_id)
        self._pending.pop(optimistic_id, None)
        failure = system_message(notice)
        self._append_sorted(failure, next(self._counter))
        return failure

    def expire(
        self, optimistic_id: str, notice: str = SEND_FAILURE_NOTICE
    ) -> Message | None:
        """Fail ``optimistic_id`` only if it was never confirmed."""

        if optimistic_id not in self._pending:
            return None
        logger.warning("Message %s was not confirmed in time", optimistic_id)
        return self.fail_send(optimistic_id, notice)

    # ------------------------------------------------------------------
    # Helpers

    def _index_of(self, message_id: str) -> int | None:
        for index, message in enumerate(self._messages):
            if message.id == message_id:
                return index
        return None

    def _match_pending(self, message: Message) -> Message | None:
        for pending in self._pending.values():
            if pending.role is message.role and pending.content == message.content:
                return pending
        return None

    def _append_sorted(self, message: Message, seq: int) -> None:
        key = (_aware(message.created_at), seq)
        index = bisect.bisect_right(self._keys, key)
        self._keys.insert(index, key)
        self._messages.insert(index, message)

    def _remove(self, message_id: str) -> None:
        index = self._index_of(message_id)
        if index is not None:
            del self._messages[index]
            del self._keys[index]
