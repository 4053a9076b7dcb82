"""
Database models for the CMS admin editor.

- Draft key-value rows (autosave backend)
- Submission history for every envelope sent to the CMS API
- Append-only audit trail
"""

import json
import hashlib
from datetime import datetime
from enum import Enum as PyEnum
from cms_admin import db


class SubmissionStatus(PyEnum):
    """Submission lifecycle states."""
    PENDING = 'pending'
    SENT = 'sent'
    FAILED = 'failed'


class SubmissionMode(PyEnum):
    CREATE = 'create'
    EDIT = 'edit'


class DraftRecord(db.Model):
    """
    One saved draft per key.

    Each save supersedes the previous one; rows never expire on their own.
    """
    __tablename__ = 'draft_records'

    id = db.Column(db.Integer, primary_key=True)
    key = db.Column(db.String(100), unique=True, nullable=False, index=True)
    value_json = db.Column(db.Text, nullable=False)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    def __repr__(self):
        return f'<DraftRecord {self.key}>'


class Submission(db.Model):
    """
    Record of an envelope sent (or refused) for one entity form.
    """
    __tablename__ = 'submissions'

    id = db.Column(db.Integer, primary_key=True)

    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
    ip_address = db.Column(db.String(45), nullable=True)
    user_agent = db.Column(db.String(500), nullable=True)

    # What was submitted
    entity_type = db.Column(db.String(30), nullable=False)
    mode = db.Column(db.String(10), default=SubmissionMode.CREATE.value, nullable=False)
    record_id = db.Column(db.String(100), nullable=True)  # CMS record id in edit mode
    part_keys_json = db.Column(db.Text, nullable=True)
    file_count = db.Column(db.Integer, default=0, nullable=False)
    envelope_sha256 = db.Column(db.String(64), nullable=True)

    # Outcome
    status = db.Column(db.String(20), default=SubmissionStatus.PENDING.value, nullable=False)
    response_json = db.Column(db.Text, nullable=True)
    error_message = db.Column(db.Text, nullable=True)
    completed_at = db.Column(db.DateTime, nullable=True)

    audit_logs = db.relationship('AuditLog', backref='submission', lazy='dynamic')

    def __repr__(self):
        return f'<Submission {self.id} {self.entity_type} - {self.status}>'

    def to_dict(self):
        """Convert submission to dictionary for API responses."""
        return {
            'id': self.id,
            'created_at': self.created_at.isoformat() if self.created_at else None,
            'entity_type': self.entity_type,
            'mode': self.mode,
            'record_id': self.record_id,
            'part_keys': self.get_part_keys(),
            'file_count': self.file_count,
            'envelope_sha256': self.envelope_sha256,
            'status': self.status,
            'response': json.loads(self.response_json) if self.response_json else None,
            'error_message': self.error_message,
            'completed_at': self.completed_at.isoformat() if self.completed_at else None,
        }

    def get_part_keys(self):
        return json.loads(self.part_keys_json) if self.part_keys_json else []

    def set_part_keys(self, keys):
        self.part_keys_json = json.dumps(list(keys))

    def mark_sent(self, response=None):
        self.status = SubmissionStatus.SENT.value
        self.response_json = json.dumps(response, sort_keys=True, default=str) if response is not None else None
        self.completed_at = datetime.utcnow()

    def mark_failed(self, message):
        self.status = SubmissionStatus.FAILED.value
        self.error_message = message
        self.completed_at = datetime.utcnow()


class AuditLog(db.Model):
    """
    Immutable audit trail for all significant actions.

    This table is append-only. Records are never modified or deleted.
    """
    __tablename__ = 'audit_logs'

    id = db.Column(db.Integer, primary_key=True)

    timestamp = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)

    # Who performed the action
    actor_type = db.Column(db.String(20), nullable=False)  # 'editor', 'system'
    actor_id = db.Column(db.String(100), nullable=True)  # IP address or None for system

    # What was done
    action = db.Column(db.String(50), nullable=False)  # 'draft_saved', 'submission_sent', etc.
    action_category = db.Column(db.String(20), nullable=False)  # 'create', 'update', 'delete', 'send', ...

    # What was affected
    submission_id = db.Column(db.Integer, db.ForeignKey('submissions.id'), nullable=True)
    resource_type = db.Column(db.String(50), nullable=False)  # 'draft', 'submission', 'session'
    resource_id = db.Column(db.String(100), nullable=True)

    details_json = db.Column(db.Text, nullable=True)

    success = db.Column(db.Boolean, nullable=False)
    error_message = db.Column(db.Text, nullable=True)

    ip_address = db.Column(db.String(45), nullable=True)
    user_agent = db.Column(db.String(500), nullable=True)

    # Integrity hash (prevents tampering)
    integrity_hash = db.Column(db.String(64), nullable=False)

    def __repr__(self):
        return f'<AuditLog {self.id} - {self.action} by {self.actor_type}>'

    def to_dict(self):
        """Convert audit log to dictionary."""
        return {
            'id': self.id,
            'timestamp': self.timestamp.isoformat(),
            'actor_type': self.actor_type,
            'actor_id': self.actor_id,
            'action': self.action,
            'action_category': self.action_category,
            'resource_type': self.resource_type,
            'resource_id': self.resource_id,
            'submission_id': self.submission_id,
            'details': json.loads(self.details_json) if self.details_json else None,
            'success': self.success,
            'error_message': self.error_message
        }

    def compute_integrity_hash(self):
        """Compute hash of this record's content for tamper detection."""
        content = f"{self.timestamp}{self.actor_type}{self.actor_id}{self.action}{self.resource_type}{self.resource_id}{self.details_json}"
        return hashlib.sha256(content.encode()).hexdigest()

    def verify_integrity(self):
        return self.integrity_hash == self.compute_integrity_hash()
