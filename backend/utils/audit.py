from database import database
from models import AuditLog, AuditAction, WebhookEvent
from typing import Optional, Dict, Any, List
import logging

logger = logging.getLogger(__name__)

def calculate_diff(before: Dict[str, Any], after: Dict[str, Any]) -> Dict[str, Any]:
    """Calculate the changed fields between two document states.

    Returns a dict with ``changed`` mapping each differing key to
    ``{"from": ..., "to": ...}``; keys present on one side only are
    reported under ``added`` / ``removed``.
    """
    if not before and not after:
        return {}

    before = before or {}
    after = after or {}
    diff = {"added": {}, "removed": {}, "changed": {}}

    for key in set(before.keys()) | set(after.keys()):
        if key not in before:
            diff["added"][key] = after[key]
        elif key not in after:
            diff["removed"][key] = before[key]
        elif before[key] != after[key]:
            diff["changed"][key] = {"from": before[key], "to": after[key]}

    # Remove empty categories
    return {k: v for k, v in diff.items() if v}

async def create_audit_log(
    action: AuditAction,
    actor_id: Optional[str] = None,
    account_id: Optional[str] = None,
    resource_type: Optional[str] = None,
    resource_id: Optional[str] = None,
    before_state: Optional[Dict[str, Any]] = None,
    after_state: Optional[Dict[str, Any]] = None,
    metadata: Optional[Dict[str, Any]] = None,
    reason_code: Optional[str] = None,
) -> str:
    """Create an audit log entry.

    Best-effort: a failure is logged and an empty id returned, the calling
    operation is never failed because of it.
    """
    try:
        db = database.get_db()

        enriched_metadata = metadata.copy() if metadata else {}
        if before_state and after_state:
            diff = calculate_diff(before_state, after_state)
            if diff:
                enriched_metadata["diff"] = diff

        audit_log = AuditLog(
            action=action,
            actor_id=actor_id,
            account_id=account_id,
            resource_type=resource_type,
            resource_id=resource_id,
            before_state=before_state,
            after_state=after_state,
            metadata=enriched_metadata or None,
            reason_code=reason_code,
        )

        doc = audit_log.model_dump()
        doc["action"] = action.value
        await db.audit_logs.insert_one(doc)
        logger.info(f"Audit log created: {action.value}")
        return audit_log.audit_id
    except Exception as e:
        logger.error(f"Failed to create audit log: {e}")
        # Never fail the main operation due to audit log failure
        return ""

async def record_webhook_event(
    event_id: Optional[str],
    event_type: Optional[str],
    processed: bool,
    payload: Dict[str, Any],
    error: Optional[str] = None,
    provider: str = "STRIPE",
) -> str:
    """Append the write-once webhook_events row for an inbound event.

    Same contract as create_audit_log: failures are logged, never raised.
    """
    try:
        db = database.get_db()
        record = WebhookEvent(
            provider=provider,
            event_id=event_id,
            event_type=event_type,
            processed=processed,
            error=error,
            payload=payload or {},
        )
        await db.webhook_events.insert_one(record.model_dump())
        return record.record_id
    except Exception as e:
        logger.error(f"Failed to record webhook event {event_id}: {e}")
        return ""

async def get_audit_logs_for_resource(
    resource_type: str,
    resource_id: str,
    limit: int = 50
) -> List[Dict[str, Any]]:
    """Get audit logs for a specific resource."""
    try:
        db = database.get_db()
        cursor = db.audit_logs.find(
            {"resource_type": resource_type, "resource_id": resource_id},
            {"_id": 0}
        ).sort("timestamp", -1).limit(limit)

        return await cursor.to_list(length=limit)
    except Exception as e:
        logger.error(f"Failed to get audit logs for resource: {e}")
        return []
