"""Team-Seat Guard - collaborator invitations gated by the owner's plan.

Seats are metered per catalogue (max_team_members) and require the
team_collaboration feature. Invitations are advisory; the seat is only
taken when an invitation is accepted, through the entitlement checker's
guarded insert.
"""
import os
import re
import secrets
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional, Union

from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

from database import database
from models import (
    AuditAction, EntitlementDecision, Invitation, InvitationStatus,
    Rejection, RejectionReason, ResourceKind, TeamMember,
)
from services.email_service import email_service
from services.entitlements import entitlement_checker
from utils.audit import create_audit_log
from utils.errors import UpstreamError, ValidationError

logger = logging.getLogger(__name__)

EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
INVITATION_EXPIRY_DAYS = int(os.getenv("INVITATION_EXPIRY_DAYS", "7"))


def _frontend_url() -> str:
    return os.getenv("FRONTEND_URL", "http://localhost:3000").rstrip("/")


class TeamSeatGuard:

    async def can_add_team_member(
        self,
        account_id: str,
        catalogue_id: str,
        email: Optional[str] = None,
    ) -> EntitlementDecision:
        return await entitlement_checker.check_entitlement(
            account_id, ResourceKind.TEAM_MEMBER, scope_id=catalogue_id, email=email
        )

    async def seat_usage(
        self,
        owner: Dict[str, Any],
        catalogue_id: str,
    ) -> Union[EntitlementDecision, Rejection]:
        """Seat count and limit, shown to the catalogue owner only."""
        db = database.get_db()
        catalogue = await db.catalogues.find_one({"catalogue_id": catalogue_id}, {"_id": 0, "account_id": 1})
        if not catalogue or catalogue.get("account_id") != owner["id"]:
            return Rejection(reason=RejectionReason.NOT_OWNER, message="Only the catalogue owner can view team seats")
        return await self.can_add_team_member(owner["id"], catalogue_id, owner.get("email"))

    async def invite(
        self,
        owner: Dict[str, Any],
        catalogue_id: str,
        email: str,
    ) -> Union[Dict[str, Any], Rejection]:
        """Create an invitation and email it. Rolled back if the email fails."""
        email = (email or "").strip().lower()
        if not EMAIL_PATTERN.match(email):
            raise ValidationError("Invalid email address")

        db = database.get_db()
        catalogue = await db.catalogues.find_one({"catalogue_id": catalogue_id}, {"_id": 0})
        if not catalogue or catalogue.get("account_id") != owner["id"]:
            return Rejection(
                reason=RejectionReason.NOT_OWNER,
                message="Only the catalogue owner can invite team members",
            )

        if email == (owner.get("email") or "").lower():
            return Rejection(reason=RejectionReason.SELF_INVITE, message="You cannot invite yourself")

        member = await db.team_members.find_one(
            {"catalogue_id": catalogue_id, "email": email},
            {"_id": 0, "member_id": 1}
        )
        if member:
            return Rejection(reason=RejectionReason.ALREADY_MEMBER, message="This user is already a team member")

        now = datetime.now(timezone.utc)
        pending = await db.invitations.find_one(
            {
                "catalogue_id": catalogue_id,
                "email": email,
                "status": InvitationStatus.PENDING.value,
                "expires_at": {"$gt": now},
            },
            {"_id": 0, "invitation_id": 1}
        )
        if pending:
            return Rejection(
                reason=RejectionReason.INVITATION_PENDING,
                message="An invitation has already been sent to this email",
            )

        decision = await self.can_add_team_member(owner["id"], catalogue_id, owner.get("email"))
        if not decision.allowed:
            return decision.to_rejection()

        invitation = Invitation(
            catalogue_id=catalogue_id,
            owner_id=owner["id"],
            email=email,
            token=secrets.token_hex(32),
            expires_at=now + timedelta(days=INVITATION_EXPIRY_DAYS),
        )
        doc = invitation.model_dump()
        doc["status"] = invitation.status.value
        await db.invitations.insert_one(doc)
        doc.pop("_id", None)

        try:
            await email_service.send_team_invitation(
                recipient=email,
                inviter_name=owner.get("name") or owner.get("email") or "A teammate",
                catalogue_name=catalogue.get("name") or "a catalogue",
                invitation_url=f"{_frontend_url()}/invitations/accept?token={invitation.token}",
                expires_at=invitation.expires_at,
                account_id=owner["id"],
            )
        except Exception as e:
            await db.invitations.delete_one({"invitation_id": invitation.invitation_id})
            logger.error(f"Invitation to {email} for {catalogue_id} rolled back: {e}")
            raise UpstreamError("Failed to send invitation email")

        await create_audit_log(
            action=AuditAction.INVITATION_SENT,
            actor_id=owner["id"],
            account_id=owner["id"],
            resource_type="catalogue",
            resource_id=catalogue_id,
            metadata={"email": email, "invitation_id": invitation.invitation_id},
        )
        return doc

    async def accept(self, user: Dict[str, Any], token: str) -> Union[Dict[str, Any], Rejection]:
        """Accept an invitation, claiming a seat under the owner's plan."""
        db = database.get_db()
        now = datetime.now(timezone.utc)

        invitation = await db.invitations.find_one(
            {"token": token, "status": InvitationStatus.PENDING.value},
            {"_id": 0}
        )
        if not invitation:
            return Rejection(reason=RejectionReason.INVITATION_NOT_FOUND, message="Invalid or expired invitation")

        if invitation["expires_at"] < now:
            await db.invitations.update_one(
                {"invitation_id": invitation["invitation_id"]},
                {"$set": {"status": InvitationStatus.EXPIRED.value}}
            )
            return Rejection(reason=RejectionReason.INVITATION_EXPIRED, message="This invitation has expired")

        if (user.get("email") or "").lower() != invitation["email"].lower():
            return Rejection(
                reason=RejectionReason.EMAIL_MISMATCH,
                message="This invitation was sent to a different email address",
            )

        catalogue_id = invitation["catalogue_id"]
        existing = await db.team_members.find_one(
            {"catalogue_id": catalogue_id, "account_id": user["id"]},
            {"_id": 0, "member_id": 1}
        )
        if existing or user["id"] == invitation["owner_id"]:
            await self._mark_accepted(invitation["invitation_id"], now)
            return Rejection(reason=RejectionReason.ALREADY_MEMBER, message="You are already a member of this catalogue")

        member = TeamMember(
            catalogue_id=catalogue_id,
            account_id=user["id"],
            email=invitation["email"],
            invitation_id=invitation["invitation_id"],
        )
        try:
            result = await entitlement_checker.create_within_limit(
                invitation["owner_id"],
                ResourceKind.TEAM_MEMBER,
                member.model_dump(),
                scope_id=catalogue_id,
            )
        except DuplicateKeyError:
            return Rejection(reason=RejectionReason.ALREADY_MEMBER, message="You are already a member of this catalogue")

        if isinstance(result, EntitlementDecision):
            return result.to_rejection()
        if isinstance(result, Rejection):
            return result

        await self._mark_accepted(invitation["invitation_id"], now)
        logger.info(f"Invitation {invitation['invitation_id']} accepted by {user['id']}")
        await create_audit_log(
            action=AuditAction.INVITATION_ACCEPTED,
            actor_id=user["id"],
            account_id=invitation["owner_id"],
            resource_type="catalogue",
            resource_id=catalogue_id,
            metadata={"member_id": result["member_id"], "invitation_id": invitation["invitation_id"]},
        )
        return result

    async def _mark_accepted(self, invitation_id: str, now: datetime) -> Optional[Dict[str, Any]]:
        db = database.get_db()
        return await db.invitations.find_one_and_update(
            {"invitation_id": invitation_id, "status": InvitationStatus.PENDING.value},
            {"$set": {"status": InvitationStatus.ACCEPTED.value, "accepted_at": now}},
            projection={"_id": 0},
            return_document=ReturnDocument.AFTER,
        )

    async def remove_member(
        self,
        owner: Dict[str, Any],
        catalogue_id: str,
        member_id: str,
    ) -> Union[bool, Rejection]:
        db = database.get_db()
        catalogue = await db.catalogues.find_one({"catalogue_id": catalogue_id}, {"_id": 0, "account_id": 1})
        if not catalogue or catalogue.get("account_id") != owner["id"]:
            return Rejection(reason=RejectionReason.NOT_OWNER, message="Only the catalogue owner can remove team members")

        result = await db.team_members.delete_one({"catalogue_id": catalogue_id, "member_id": member_id})
        if not result.deleted_count:
            return Rejection(reason=RejectionReason.MEMBER_NOT_FOUND, message="Team member not found")

        await create_audit_log(
            action=AuditAction.TEAM_MEMBER_REMOVED,
            actor_id=owner["id"],
            account_id=owner["id"],
            resource_type="catalogue",
            resource_id=catalogue_id,
            metadata={"member_id": member_id},
        )
        return True


team_seat_guard = TeamSeatGuard()
