
from typing import Optional
from datetime import datetime
from sqlalchemy import DateTime, UniqueConstraint
from sqlmodel import SQLModel, Field as ORMField

from .utils import utcnow


def timestamp_field(**kwargs):
    # naive UTC; the column type is pinned so that no timezone is demanded on write
    return ORMField(sa_type=DateTime(timezone=False), **kwargs)


class RequestStatus:
    DRAFT = "draft"
    IN_PROGRESS = "in_progress"
    FINALIZING = "finalizing"
    COMPLETED = "completed"
    DECLINED = "declined"
    CANCELLED = "cancelled"
    EXPIRED = "expired"

    TERMINAL = frozenset({COMPLETED, DECLINED, CANCELLED, EXPIRED})
    OPEN = frozenset({DRAFT, IN_PROGRESS})


class SignerStatus:
    PENDING = "pending"
    VIEWED = "viewed"
    SIGNED = "signed"
    DECLINED = "declined"

    ACTIONABLE = frozenset({PENDING, VIEWED})
    DONE = frozenset({SIGNED, DECLINED})


class FieldKind:
    SIGNATURE = "signature"
    INITIALS = "initials"
    DATE = "date"
    TEXT = "text"
    CHECKBOX = "checkbox"
    DROPDOWN = "dropdown"

    ALL = frozenset({SIGNATURE, INITIALS, DATE, TEXT, CHECKBOX, DROPDOWN})
    IMAGE = frozenset({SIGNATURE, INITIALS})


class SigningRequest(SQLModel, table=True):
    id: Optional[int] = ORMField(default=None, primary_key=True)
    title: str = "Please sign"
    document_key: str
    settings_json: str = "{}"
    status: str = ORMField(default=RequestStatus.DRAFT, index=True)
    total_signer_count: int = 0
    completed_signer_count: int = 0
    expires_at: Optional[datetime] = timestamp_field(default=None, index=True)
    artifact_ref: Optional[str] = None
    artifact_sha256: Optional[str] = None
    last_error: Optional[str] = None
    assembly_exhausted: bool = False  # automatic retries given up, waiting for a manual retry
    requester_name: Optional[str] = None
    requester_email: Optional[str] = None
    created_at: datetime = timestamp_field(default_factory=utcnow)
    updated_at: datetime = timestamp_field(default_factory=utcnow)
    sent_at: Optional[datetime] = timestamp_field(default=None)
    completed_at: Optional[datetime] = timestamp_field(default=None)


class Signer(SQLModel, table=True):
    __table_args__ = (UniqueConstraint("request_id", "signer_key", name="uq_signer_request_key"),)

    id: Optional[int] = ORMField(default=None, primary_key=True)
    request_id: int = ORMField(index=True)
    signer_key: str
    order_index: int = 1
    email: str
    name: str = ""
    external_ref: Optional[str] = None
    status: str = SignerStatus.PENDING
    captured_values_json: str = "{}"
    viewed_at: Optional[datetime] = timestamp_field(default=None)
    signed_at: Optional[datetime] = timestamp_field(default=None)
    declined_at: Optional[datetime] = timestamp_field(default=None)
    decline_reason: Optional[str] = None
    counted: bool = False   # included in completed_signer_count
    excused: bool = False   # decline removed this signer from total_signer_count
    turn_epoch: int = 0
    reminder_count: int = 0
    last_reminded_at: Optional[datetime] = timestamp_field(default=None)


class SchemaField(SQLModel, table=True):
    __table_args__ = (UniqueConstraint("request_id", "name", name="uq_field_request_name"),)

    id: Optional[int] = ORMField(default=None, primary_key=True)
    request_id: int = ORMField(index=True)
    name: str
    kind: str  # signature|initials|date|text|checkbox|dropdown
    owner_signer_key: Optional[str] = None
    # legacy identification hints, only consulted when owner_signer_key does not resolve
    signer_email: Optional[str] = None
    signer_ref: Optional[str] = None
    order_index: Optional[int] = None
    required: bool = True
    auto_fill_date: bool = False
    options_json: str = "[]"
    geometry_json: str = "{}"


class ArtifactAttempt(SQLModel, table=True):
    id: Optional[int] = ORMField(default=None, primary_key=True)
    request_id: int = ORMField(index=True)
    attempt_number: int
    started_at: datetime = timestamp_field(default_factory=utcnow)
    finished_at: Optional[datetime] = timestamp_field(default=None)
    outcome: str = "failure"  # success|failure|aborted
    error_detail: Optional[str] = None
    artifact_ref: Optional[str] = None
    warnings_json: str = "[]"


class NotificationTrigger(SQLModel, table=True):
    __table_args__ = (UniqueConstraint("request_id", "kind", "dedupe_key", name="uq_trigger_dedupe"),)

    id: Optional[int] = ORMField(default=None, primary_key=True)
    request_id: int = ORMField(index=True)
    kind: str
    signer_key: Optional[str] = None
    dedupe_key: str = ""
    payload_json: str = "{}"
    created_at: datetime = timestamp_field(default_factory=utcnow)


class Event(SQLModel, table=True):
    id: Optional[int] = ORMField(default=None, primary_key=True)
    request_id: int = ORMField(index=True)
    actor: str  # system|signer:<key>|user:<id>
    type: str   # created|sent|viewed|signed|declined|finalizing|completed|cancelled|expired|signer_reset|...
    meta_json: str = "{}"
    ip: Optional[str] = None
    ua: Optional[str] = None
    at: datetime = timestamp_field(default_factory=utcnow)
    prev_hash: Optional[str] = None
    hash: Optional[str] = None
