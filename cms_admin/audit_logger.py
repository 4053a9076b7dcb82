"""
Audit logging module for immutable audit trail.

Editor sessions, draft operations and submissions are logged with integrity
verification. This module is append-only - records are never modified or
deleted.
"""

import json
from datetime import datetime
from typing import Dict, Any, Optional
from flask import request, current_app

from cms_admin import db
from cms_admin.models import AuditLog


class AuditAction:
    """Constants for audit actions."""
    # Session actions
    SESSION_OPENED = 'session_opened'
    SESSION_CLOSED = 'session_closed'

    # Draft actions
    DRAFT_SAVED = 'draft_saved'
    DRAFT_RESTORED = 'draft_restored'
    DRAFT_DISCARDED = 'draft_discarded'

    # Submission actions
    VALIDATION_FAILED = 'validation_failed'
    SUBMISSION_SENT = 'submission_sent'
    SUBMISSION_FAILED = 'submission_failed'


class AuditCategory:
    """Constants for audit action categories."""
    CREATE = 'create'
    READ = 'read'
    UPDATE = 'update'
    DELETE = 'delete'
    SEND = 'send'
    SYSTEM = 'system'


def log_action(
    action: str,
    action_category: str,
    resource_type: str,
    resource_id: Optional[str] = None,
    submission_id: Optional[int] = None,
    actor_type: str = 'editor',
    actor_id: Optional[str] = None,
    details: Optional[Dict[str, Any]] = None,
    success: bool = True,
    error_message: Optional[str] = None
) -> Optional[AuditLog]:
    """
    Log an action to the audit trail.

    Args:
        action: The action performed (use AuditAction constants)
        action_category: Category of action (use AuditCategory constants)
        resource_type: Type of resource affected
        resource_id: Identifier of the resource
        submission_id: Associated submission ID if applicable
        actor_type: Type of actor ('editor', 'system')
        actor_id: Identifier of the actor (defaults to the client IP)
        details: Additional structured details
        success: Whether the action succeeded
        error_message: Error message if action failed

    Returns:
        The created AuditLog record, or None if it could not be written
    """
    try:
        ip_address = None
        user_agent = None

        try:
            if request:
                ip_address = request.remote_addr
                user_agent = request.headers.get('User-Agent')

                if actor_type == 'editor' and not actor_id:
                    actor_id = ip_address
        except RuntimeError:
            # Outside request context
            pass

        audit_log = AuditLog(
            timestamp=datetime.utcnow(),
            action=action,
            action_category=action_category,
            resource_type=resource_type,
            resource_id=str(resource_id) if resource_id else None,
            submission_id=submission_id,
            actor_type=actor_type,
            actor_id=actor_id,
            details_json=json.dumps(details, sort_keys=True) if details else None,
            success=success,
            error_message=error_message,
            ip_address=ip_address,
            user_agent=user_agent
        )

        audit_log.integrity_hash = audit_log.compute_integrity_hash()

        db.session.add(audit_log)
        db.session.commit()

        return audit_log

    except Exception as e:
        db.session.rollback()
        current_app.logger.error(f'Failed to create audit log: {str(e)}')
        return None


def log_session_opened(entity: str, session_id: str, record_id: Optional[str] = None,
                       draft_waiting: bool = False) -> Optional[AuditLog]:
    """Log an editor opening a form."""
    return log_action(
        action=AuditAction.SESSION_OPENED,
        action_category=AuditCategory.READ,
        resource_type='session',
        resource_id=session_id,
        details={'entity': entity, 'record_id': record_id, 'draft_waiting': draft_waiting}
    )


def log_session_closed(entity: str, session_id: str, draft_saved: bool) -> Optional[AuditLog]:
    return log_action(
        action=AuditAction.SESSION_CLOSED,
        action_category=AuditCategory.UPDATE,
        resource_type='session',
        resource_id=session_id,
        details={'entity': entity, 'draft_saved': draft_saved}
    )


def log_draft_saved(draft_key: str, success: bool) -> Optional[AuditLog]:
    """Log an explicit draft save."""
    return log_action(
        action=AuditAction.DRAFT_SAVED,
        action_category=AuditCategory.UPDATE,
        resource_type='draft',
        resource_id=draft_key,
        success=success,
        error_message=None if success else 'Draft could not be saved'
    )


def log_draft_restored(draft_key: str, timestamp: Optional[str]) -> Optional[AuditLog]:
    return log_action(
        action=AuditAction.DRAFT_RESTORED,
        action_category=AuditCategory.READ,
        resource_type='draft',
        resource_id=draft_key,
        details={'draft_timestamp': timestamp}
    )


def log_draft_discarded(draft_key: str) -> Optional[AuditLog]:
    return log_action(
        action=AuditAction.DRAFT_DISCARDED,
        action_category=AuditCategory.DELETE,
        resource_type='draft',
        resource_id=draft_key
    )


def log_validation_failed(entity: str, session_id: str, errors: list) -> Optional[AuditLog]:
    """Log a submit attempt stopped by client-side validation."""
    return log_action(
        action=AuditAction.VALIDATION_FAILED,
        action_category=AuditCategory.SYSTEM,
        resource_type='session',
        resource_id=session_id,
        details={'entity': entity, 'error_count': len(errors), 'fields': errors},
        success=False
    )


def log_submission_result(submission_id: int, entity: str, success: bool,
                          error: Optional[str] = None) -> Optional[AuditLog]:
    """Log the outcome of sending an envelope to the CMS API."""
    return log_action(
        action=AuditAction.SUBMISSION_SENT if success else AuditAction.SUBMISSION_FAILED,
        action_category=AuditCategory.SEND,
        resource_type='submission',
        resource_id=str(submission_id),
        submission_id=submission_id,
        details={'entity': entity},
        success=success,
        error_message=error
    )


def verify_audit_integrity() -> tuple:
    """
    Verify integrity of all audit log records.

    Returns:
        Tuple of (valid_count, invalid_count, invalid_ids)
    """
    logs = AuditLog.query.all()
    valid_count = 0
    invalid_count = 0
    invalid_ids = []

    for log in logs:
        if log.verify_integrity():
            valid_count += 1
        else:
            invalid_count += 1
            invalid_ids.append(log.id)

    return valid_count, invalid_count, invalid_ids


def get_audit_trail_for_submission(submission_id: int) -> list:
    """Get complete audit trail for a submission."""
    logs = AuditLog.query.filter_by(submission_id=submission_id) \
                         .order_by(AuditLog.timestamp.asc()) \
                         .all()
    return [log.to_dict() for log in logs]
