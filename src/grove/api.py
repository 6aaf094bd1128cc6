"""HTTP endpoints for dispatching agents and delivering their results.

``POST /dispatch`` launches runs and returns immediately with the
selected personas (or why nobody was selected). ``POST /agent-complete``
accepts output produced outside the router, e.g. by an agent that was
started by hand. Ticket approvals and shipping are exposed for the
humans who own the review gate.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from fastapi import APIRouter, HTTPException
from pydantic import BaseModel

from grove.errors import (
    DocumentCapReached,
    NotFound,
    ProcessFailure,
    RegressionRejected,
    ShipFailed,
    WorkspaceUnavailable,
)
from grove.models import CompletionPayload, DispatchTrigger, MentionKind, SkipReason
from grove.roles import parse_role

if TYPE_CHECKING:
    from grove.app import GroveApp

logger = logging.getLogger(__name__)

router = APIRouter()

# Set during startup (see server.py)
_grove: GroveApp | None = None


def configure(grove: GroveApp) -> None:
    """Wire the endpoints to a started GroveApp."""
    global _grove
    _grove = grove


def _app() -> GroveApp:
    if _grove is None or _grove.store is None:
        raise HTTPException(status_code=503, detail="Grove not started")
    return _grove


# ── Request Models ───────────────────────────────────────────────────────────


class DispatchRequest(BaseModel):
    ticket_id: str
    persona_id: str | None = None
    mention: str | None = None
    role: str | None = None
    message: str | None = None
    broadcast: bool = False
    conversational: bool = False
    urgent: bool = False


class ApprovalRequest(BaseModel):
    actor_id: str | None = None


# ── Dispatch ─────────────────────────────────────────────────────────────────


@router.post("/dispatch")
async def dispatch(request: DispatchRequest):
    """Route a ticket to one or more personas and start their runs."""
    grove = _app()

    role = None
    if request.role:
        role = parse_role(request.role)
        if role is None:
            raise HTTPException(status_code=400, detail=f"Unknown role: {request.role}")

    trigger = DispatchTrigger(
        kind=MentionKind.URGENT if request.urgent else MentionKind.HUMAN,
        persona_id=request.persona_id,
        mention=request.mention,
        role=role,
        message=request.message,
        broadcast=request.broadcast,
        conversational=request.conversational,
    )
    try:
        outcome = await grove.router.dispatch(request.ticket_id, trigger)
    except NotFound as e:
        raise HTTPException(status_code=404, detail=str(e))

    paused = [s for s in outcome.skipped if s.reason == SkipReason.PAUSED]
    if paused and not outcome.dispatched:
        raise HTTPException(status_code=503, detail=f"Dispatching is paused: {paused[0].detail}")
    return outcome.model_dump(mode="json")


# ── Completion ───────────────────────────────────────────────────────────────


@router.post("/agent-complete")
async def agent_complete(payload: CompletionPayload):
    """Apply an agent's output to its ticket."""
    grove = _app()
    try:
        result = await grove.completions.submit(payload)
    except ProcessFailure as e:
        raise HTTPException(status_code=400, detail=str(e))
    except NotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    except RegressionRejected as e:
        raise HTTPException(status_code=409, detail=str(e))
    except DocumentCapReached as e:
        raise HTTPException(status_code=409, detail=str(e))

    return {
        "ticket_id": payload.ticket_id,
        "document_id": result.document.id if result.document else None,
        "document_version": result.document.version if result.document else None,
        "comment_id": result.comment.id if result.comment else None,
        "state": result.state.value if result.state else None,
        "paused": result.paused,
    }


# ── Pause ────────────────────────────────────────────────────────────────────


@router.get("/pause")
async def get_pause():
    state = await _app().pause.state()
    return {
        "paused": state.active,
        "paused_until": state.paused_until.isoformat() if state.paused_until else None,
        "reason": state.reason,
        "auth_expired": state.auth_expired,
    }


@router.delete("/pause")
async def clear_pause():
    """Resume dispatching, e.g. after re-authenticating the agent CLI."""
    await _app().pause.clear()
    logger.info("Credit pause cleared via API")
    return {"paused": False}


# ── Tickets ──────────────────────────────────────────────────────────────────


@router.post("/tickets/{ticket_id}/approve-research")
async def approve_research(ticket_id: str, request: ApprovalRequest | None = None):
    grove = _app()
    if await grove.store.get_ticket(ticket_id) is None:
        raise HTTPException(status_code=404, detail=f"ticket {ticket_id} not found")
    await grove.store.approve_research(ticket_id, actor_id=request.actor_id if request else None)
    ticket = await grove.store.get_ticket(ticket_id)
    return {"ticket_id": ticket_id, "state": ticket.state.value, "phase": ticket.phase.value}


@router.post("/tickets/{ticket_id}/approve-plan")
async def approve_plan(ticket_id: str, request: ApprovalRequest | None = None):
    """Approve the plan and dispatch a developer right away."""
    grove = _app()
    try:
        ticket, outcome = await grove.approve_plan(ticket_id, actor_id=request.actor_id if request else None)
    except NotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    return {
        "ticket_id": ticket_id,
        "state": ticket.state.value,
        "phase": ticket.phase.value,
        "dispatch": outcome.model_dump(mode="json") if outcome else None,
    }


@router.post("/tickets/{ticket_id}/unblock")
async def unblock(ticket_id: str, request: ApprovalRequest | None = None):
    """Clear a context-ceiling block; the ticket's conversations start over."""
    grove = _app()
    try:
        await grove.unblock_ticket(ticket_id, actor_id=request.actor_id if request else None)
    except NotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    return {"ticket_id": ticket_id, "blocked": False}


@router.post("/tickets/{ticket_id}/ship")
async def ship(ticket_id: str, request: ApprovalRequest | None = None):
    """Merge the ticket's workspace into the project and mark it shipped."""
    grove = _app()
    try:
        result = await grove.ship_ticket(ticket_id, actor_id=request.actor_id if request else None)
    except NotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    except WorkspaceUnavailable as e:
        raise HTTPException(status_code=409, detail=str(e))
    except ShipFailed as e:
        raise HTTPException(status_code=409, detail={"error": str(e), "log": e.log})
    return {
        "ticket_id": ticket_id,
        "merge_commit": result.merge_commit,
        "recovered": result.recovered,
        "log": result.log,
    }
