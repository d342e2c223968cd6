"""Session resume, operator assignment and realtime message routes."""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager

from fastapi import APIRouter, Depends, HTTPException

from ..config import get_settings
from ..errors import (
    MessageNotEditableError,
    MessageNotFoundError,
    OperatorConflictError,
    SessionNotEscalatedError,
    SessionNotFoundError,
)
from ..relay import SessionRelay, get_relay
from ..schemas import (
    AssignRequest,
    AssignResponse,
    MessageEvent,
    SendMessageRequest,
    SessionResume,
    UpdateMessageRequest,
)

router = APIRouter(tags=["sessions"])


def _check_session_id(session_id: str) -> None:
    if len(session_id) > get_settings().session_id_max_length:
        raise HTTPException(status_code=400, detail="Invalid sessionId")


@contextmanager
def _relay_context() -> Iterator[None]:
    try:
        yield
    except SessionNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except MessageNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except OperatorConflictError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    except MessageNotEditableError as exc:
        raise HTTPException(status_code=403, detail=str(exc)) from exc
    except SessionNotEscalatedError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


@router.get("/api/sessions/{session_id}", response_model=SessionResume)
async def get_session(
    session_id: str, relay: SessionRelay = Depends(get_relay)
) -> SessionResume:
    """Return the payload a client needs to resume the conversation."""
    _check_session_id(session_id)
    with _relay_context():
        return relay.resume(session_id)


@router.post("/api/sessions/{session_id}/assign", response_model=AssignResponse)
async def assign_operator(
    session_id: str,
    payload: AssignRequest,
    relay: SessionRelay = Depends(get_relay),
) -> AssignResponse:
    _check_session_id(session_id)
    with _relay_context():
        record, changed = relay.assign(
            session_id, payload.operator_id, payload.operator_name
        )
    return AssignResponse(
        success=True,
        message="Chat assigned successfully" if changed else "Chat already assigned to you",
        assigned_operator_id=record.assigned_operator_id,
        assigned_at=record.assigned_at,
    )


@router.post("/api/sessions/{session_id}/messages", response_model=MessageEvent)
async def send_message(
    session_id: str,
    payload: SendMessageRequest,
    relay: SessionRelay = Depends(get_relay),
) -> MessageEvent:
    """Persist a realtime message and broadcast it to every viewer."""
    _check_session_id(session_id)
    with _relay_context():
        message = relay.post_message(
            session_id,
            payload.content,
            payload.role,
            sender_id=payload.sender_id,
            sender_name=payload.sender_name,
        )
    return MessageEvent.from_message(message)


@router.put(
    "/api/sessions/{session_id}/messages/{message_id}", response_model=MessageEvent
)
async def update_message(
    session_id: str,
    message_id: str,
    payload: UpdateMessageRequest,
    relay: SessionRelay = Depends(get_relay),
) -> MessageEvent:
    _check_session_id(session_id)
    with _relay_context():
        message = relay.update_message(session_id, message_id, payload.content)
    return MessageEvent.from_message(message)
