import random
from datetime import datetime, timedelta, timezone

import pytest

from handoff.errors import DuplicatePendingMessageError
from handoff.models import Message, Role
from handoff.reconciliation import SEND_FAILURE_NOTICE, MessageReconciler

T0 = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


def _msg(message_id: str, seconds: float, content: str = "x", role: Role = Role.END_USER):
    return Message(
        id=message_id, role=role, content=content, created_at=T0 + timedelta(seconds=seconds)
    )


def _assert_sorted(reconciler: MessageReconciler) -> None:
    stamps = [m.created_at for m in reconciler.messages]
    assert stamps == sorted(stamps)


def test_confirmation_replaces_optimistic_message_in_place():
    reconciler = MessageReconciler()
    reconciler.append_local(_msg("welcome", -10, role=Role.ASSISTANT))
    optimistic = reconciler.begin_send("hello", Role.END_USER)

    assert optimistic.id.startswith("optimistic_")
    assert reconciler.is_pending(optimistic.id)

    confirmed = Message(
        id="msg_42",
        role=Role.END_USER,
        content="hello",
        created_at=optimistic.created_at + timedelta(milliseconds=300),
    )
    reconciler.confirm(confirmed)

    assert [m.id for m in reconciler.messages] == ["welcome", "msg_42"]
    assert reconciler.pending_ids == []


def test_confirming_same_id_twice_keeps_one_entry():
    reconciler = MessageReconciler()
    message = _msg("msg_1", 0)

    assert reconciler.confirm(message) is message
    assert reconciler.confirm(message) is None
    assert [m.id for m in reconciler.messages] == ["msg_1"]


def test_unmatched_confirmation_is_inserted_in_order():
    reconciler = MessageReconciler()
    reconciler.confirm(_msg("b", 2))
    reconciler.confirm(_msg("a", 1))
    reconciler.confirm(_msg("c", 3))

    assert [m.id for m in reconciler.messages] == ["a", "b", "c"]


def test_ties_keep_insertion_order():
    reconciler = MessageReconciler()
    for message_id in ("first", "second", "third"):
        reconciler.confirm(_msg(message_id, 5))

    assert [m.id for m in reconciler.messages] == ["first", "second", "third"]


def test_confirmation_with_late_server_timestamp_moves_to_sorted_slot():
    reconciler = MessageReconciler()
    optimistic = reconciler.begin_send("hello", Role.END_USER)
    reconciler.confirm(
        Message(
            id="reply",
            role=Role.OPERATOR,
            content="hi there",
            created_at=optimistic.created_at + timedelta(seconds=1),
        )
    )
    reconciler.confirm(
        Message(
            id="msg_1",
            role=Role.END_USER,
            content="hello",
            created_at=optimistic.created_at + timedelta(seconds=2),
        )
    )

    assert [m.id for m in reconciler.messages] == ["reply", "msg_1"]
    _assert_sorted(reconciler)


def test_load_sorts_and_deduplicates_history():
    reconciler = MessageReconciler()
    reconciler.load([_msg("b", 2), _msg("a", 1), _msg("b", 2, "dup"), _msg("c", 1)])

    assert [m.id for m in reconciler.messages] == ["a", "c", "b"]
    assert reconciler.get("b").content == "x"


def test_random_interleavings_stay_sorted_and_unique():
    rng = random.Random(7)
    reconciler = MessageReconciler()
    ids = [f"m{i}" for i in range(40)]
    for _ in range(120):
        message_id = rng.choice(ids)
        reconciler.confirm(_msg(message_id, int(message_id[1:]) % 9))

    seen = [m.id for m in reconciler.messages]
    assert len(seen) == len(set(seen))
    _assert_sorted(reconciler)


def test_update_changes_content_not_id_or_position():
    reconciler = MessageReconciler()
    reconciler.load([_msg("a", 1), _msg("b", 2, "old", Role.OPERATOR), _msg("c", 3)])

    updated = reconciler.update("b", "new")

    assert updated.content == "new"
    assert "updated_at" in updated.metadata
    assert [m.id for m in reconciler.messages] == ["a", "b", "c"]


def test_update_for_unknown_id_is_ignored():
    reconciler = MessageReconciler()
    assert reconciler.update("missing", "x") is None
    assert len(reconciler) == 0


def test_second_identical_pending_send_is_rejected():
    reconciler = MessageReconciler()
    reconciler.begin_send("hello", Role.END_USER)

    with pytest.raises(DuplicatePendingMessageError):
        reconciler.begin_send("hello", Role.END_USER)
    reconciler.begin_send("hello", Role.OPERATOR)


def test_fail_send_replaces_optimistic_with_notice():
    reconciler = MessageReconciler()
    optimistic = reconciler.begin_send("hello", Role.END_USER)

    notice = reconciler.fail_send(optimistic.id)

    assert reconciler.get(optimistic.id) is None
    assert notice.role is Role.SYSTEM
    assert notice.content == SEND_FAILURE_NOTICE
    assert [m.id for m in reconciler.messages] == [notice.id]


def test_expire_only_acts_on_pending_messages():
    reconciler = MessageReconciler()
    optimistic = reconciler.begin_send("hello", Role.END_USER)
    reconciler.confirm(
        Message(id="msg_1", role=Role.END_USER, content="hello", created_at=optimistic.created_at)
    )

    assert reconciler.expire(optimistic.id) is None
    assert [m.id for m in reconciler.messages] == ["msg_1"]


def test_naive_timestamps_are_treated_as_utc():
    reconciler = MessageReconciler()
    reconciler.confirm(_msg("aware", 10))
    reconciler.confirm(
        Message(id="naive", role=Role.END_USER, content="x", created_at=datetime(2024, 5, 1, 12, 0))
    )

    assert [m.id for m in reconciler.messages] == ["naive", "aware"]
