"""
Team Seat API
Collaborator invitations on a catalogue, gated by the owner's plan.
"""
from fastapi import APIRouter, Request
from pydantic import BaseModel

from middleware import require_auth
from models import Rejection
from services.team_seats import team_seat_guard
from utils.errors import RejectionError
import logging

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Team Management"])


class InviteRequest(BaseModel):
    email: str


class AcceptInvitationRequest(BaseModel):
    token: str


@router.post("/api/catalogues/{catalogue_id}/team/invitations")
async def invite_team_member(catalogue_id: str, body: InviteRequest, request: Request):
    """Invite a collaborator by email. The seat is claimed on acceptance."""
    owner = await require_auth(request)
    result = await team_seat_guard.invite(owner, catalogue_id, body.email)
    if isinstance(result, Rejection):
        raise RejectionError.from_rejection(result)
    return {
        "success": True,
        "invitation": {
            "invitation_id": result["invitation_id"],
            "email": result["email"],
            "expires_at": result["expires_at"],
            "status": result["status"],
        },
    }


@router.get("/api/catalogues/{catalogue_id}/team/seats")
async def team_seats(catalogue_id: str, request: Request):
    """Seat usage for the catalogue under its owner's plan. Owner only."""
    owner = await require_auth(request)
    result = await team_seat_guard.seat_usage(owner, catalogue_id)
    if isinstance(result, Rejection):
        raise RejectionError.from_rejection(result)
    return result.model_dump()


@router.delete("/api/catalogues/{catalogue_id}/team/{member_id}")
async def remove_team_member(catalogue_id: str, member_id: str, request: Request):
    owner = await require_auth(request)
    result = await team_seat_guard.remove_member(owner, catalogue_id, member_id)
    if isinstance(result, Rejection):
        raise RejectionError.from_rejection(result)
    return {"success": True}


@router.post("/api/invitations/accept")
async def accept_invitation(body: AcceptInvitationRequest, request: Request):
    user = await require_auth(request)
    result = await team_seat_guard.accept(user, body.token)
    if isinstance(result, Rejection):
        raise RejectionError.from_rejection(result)
    return {"success": True, "member": result}
