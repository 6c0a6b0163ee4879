"""Canonical profile record model."""

import uuid
from datetime import datetime, timezone
from identity_hub import db

PROFILE_GROUPS = ('account', 'basic', 'contact', 'about', 'education')


def _new_id():
    return str(uuid.uuid4())


class UserProfile(db.Model):
    """One row per subject, partitioned into independently mergeable groups.

    The grouped JSON columns are the source of truth; ``subject_id``,
    ``phone``, ``email_normalized`` and ``username_normalized`` are
    denormalised copies kept in sync on every write so lookups can use
    indexes.
    """

    __tablename__ = 'user_profiles'

    id = db.Column(db.String(36), primary_key=True, default=_new_id)

    # Lookup identity
    subject_id = db.Column(db.String(128), unique=True, nullable=True, index=True)
    phone = db.Column(db.String(20), nullable=True, index=True)
    email_normalized = db.Column(db.String(255), nullable=True, index=True)
    username_normalized = db.Column(db.String(20), unique=True, nullable=True, index=True)

    # Attribute groups
    account = db.Column(db.JSON, nullable=False, default=dict)
    basic = db.Column(db.JSON, nullable=False, default=dict)
    contact = db.Column(db.JSON, nullable=False, default=dict)
    about = db.Column(db.JSON, nullable=False, default=dict)
    education = db.Column(db.JSON, nullable=False, default=dict)
    calculator_sessions = db.Column(db.JSON, nullable=False, default=dict)
    extras = db.Column(db.JSON, nullable=False, default=dict)

    selected_course = db.Column(db.String(100), nullable=True)
    attempt_year = db.Column(db.String(10), nullable=True)

    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    def to_record(self):
        """Convert to the canonical record dict used by the merge logic."""
        record = {
            'id': self.id,
            'created_at': self.created_at.isoformat() if self.created_at else None,
            'updated_at': self.updated_at.isoformat() if self.updated_at else None,
            'calculator_sessions': dict(self.calculator_sessions or {}),
            'selected_course': self.selected_course,
            'attempt_year': self.attempt_year,
            'extras': dict(self.extras or {}),
        }
        for group in PROFILE_GROUPS:
            record[group] = dict(getattr(self, group) or {})
        return record

    def apply_record(self, record):
        """Write a canonical record onto this row and refresh lookup columns.

        ``created_at`` is only written when the row has none yet.
        """
        for group in PROFILE_GROUPS:
            setattr(self, group, dict(record.get(group) or {}))
        self.calculator_sessions = dict(record.get('calculator_sessions') or {})
        self.extras = dict(record.get('extras') or {})
        self.selected_course = record.get('selected_course')
        attempt_year = record.get('attempt_year')
        self.attempt_year = str(attempt_year) if attempt_year is not None else None

        if self.created_at is None:
            created_at = record.get('created_at')
            self.created_at = _parse_timestamp(created_at) or datetime.utcnow()

        account = self.account
        contact = self.contact
        self.subject_id = account.get('subject_id') or None
        self.phone = contact.get('phone') or None
        email = contact.get('email')
        self.email_normalized = email.strip().lower() if email else None
        username = account.get('username')
        self.username_normalized = username.strip().lower() if username else None

    def __repr__(self):
        return f'<UserProfile {self.id}>'


def _parse_timestamp(value):
    if isinstance(value, datetime):
        return value
    if not value or not isinstance(value, str):
        return None
    try:
        parsed = datetime.fromisoformat(value.replace('Z', '+00:00'))
    except ValueError:
        return None
    # Stored naive, in UTC
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed
