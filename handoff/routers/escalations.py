"""Escalation intake route."""

from fastapi import APIRouter, Depends, HTTPException, Request

from ..limits import escalation_rate_limit, limiter
from ..relay import SessionRelay, get_relay
from ..schemas import EscalationRequest, EscalationResponse

router = APIRouter(tags=["escalations"])


@router.post("/api/escalations", response_model=EscalationResponse)
@limiter.limit(escalation_rate_limit)
async def create_escalation(
    request: Request,
    payload: EscalationRequest,
    relay: SessionRelay = Depends(get_relay),
) -> EscalationResponse:
    """Mark a chat escalated and notify operator consoles."""
    try:
        escalation = relay.escalate(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return EscalationResponse(
        success=True,
        message="Escalation request received. A human agent will be with you shortly.",
        escalation=escalation,
    )
