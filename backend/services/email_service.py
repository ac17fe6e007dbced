from postmarker.core import PostmarkClient
from database import database
from models import MessageLog, AuditAction
from utils.audit import create_audit_log
from datetime import datetime, timezone
import os
import logging
from typing import Optional

logger = logging.getLogger(__name__)

# Verified sender in Postmark
DEFAULT_SENDER = os.getenv("EMAIL_SENDER", "hello@catfy.com")

class EmailService:
    def __init__(self):
        postmark_token = os.getenv("POSTMARK_SERVER_TOKEN")
        if not postmark_token:
            logger.warning("POSTMARK_SERVER_TOKEN not set - emails will be logged but not sent")
            self.client = None
        else:
            self.client = PostmarkClient(server_token=postmark_token)
            logger.info("Postmark email client initialized")

    async def send_email(
        self,
        recipient: str,
        template: str,
        subject: str,
        html_body: str,
        text_body: str,
        account_id: Optional[str] = None,
        raise_on_failure: bool = False,
    ) -> MessageLog:
        """Send one email and record it in message_logs.

        With raise_on_failure the provider error is re-raised after logging,
        for callers that must undo work when delivery fails.
        """
        message_log = MessageLog(
            account_id=account_id,
            recipient=recipient,
            template=template,
            subject=subject,
        )
        failure = None

        try:
            if self.client:
                response = self.client.emails.send(
                    From=DEFAULT_SENDER,
                    To=recipient,
                    Subject=subject,
                    HtmlBody=html_body,
                    TextBody=text_body,
                    TrackOpens=True,
                    Tag=template,
                )
                message_log.provider_message_id = response["MessageID"]
                logger.info(f"Email {template} sent to {recipient}: {response['MessageID']}")
            else:
                # Dev mode - just log
                logger.info(f"[DEV MODE] Email {template} logged (not sent) to {recipient}")
            message_log.status = "sent"
            message_log.sent_at = datetime.now(timezone.utc)
        except Exception as e:
            failure = e
            message_log.status = "failed"
            message_log.error_message = str(e)
            logger.error(f"Failed to send email to {recipient}: {e}")

        try:
            db = database.get_db()
            await db.message_logs.insert_one(message_log.model_dump())
        except Exception as e:
            logger.error(f"Failed to store message log: {e}")

        await create_audit_log(
            action=AuditAction.EMAIL_SENT if message_log.status == "sent" else AuditAction.EMAIL_FAILED,
            account_id=account_id,
            metadata={
                "template": template,
                "status": message_log.status,
                "provider_message_id": message_log.provider_message_id,
                "error": message_log.error_message,
            }
        )

        if failure is not None and raise_on_failure:
            raise failure
        return message_log

    async def send_team_invitation(
        self,
        recipient: str,
        inviter_name: str,
        catalogue_name: str,
        invitation_url: str,
        expires_at: datetime,
        account_id: Optional[str] = None,
    ) -> MessageLog:
        """Invite a collaborator. Raises when the provider rejects the send."""
        subject = f"{inviter_name} invited you to collaborate on {catalogue_name}"
        expires = expires_at.strftime("%d %b %Y")
        html_body = f"""
        <div style="font-family: Arial, sans-serif; max-width: 560px; margin: 0 auto;">
            <h2 style="color: #111827;">You're invited</h2>
            <p><strong>{inviter_name}</strong> has invited you to collaborate on the catalogue
            <strong>{catalogue_name}</strong>.</p>
            <p style="margin: 24px 0;">
                <a href="{invitation_url}" style="background: #4f46e5; color: #fff; padding: 12px 20px;
                   border-radius: 6px; text-decoration: none;">Accept invitation</a>
            </p>
            <p style="color: #6b7280; font-size: 13px;">This invitation expires on {expires}.</p>
        </div>
        """
        text_body = (
            f"{inviter_name} has invited you to collaborate on the catalogue {catalogue_name}.\n\n"
            f"Accept the invitation: {invitation_url}\n\n"
            f"This invitation expires on {expires}."
        )
        return await self.send_email(
            recipient=recipient,
            template="team-invitation",
            subject=subject,
            html_body=html_body,
            text_body=text_body,
            account_id=account_id,
            raise_on_failure=True,
        )


email_service = EmailService()
