"""Atomic persistence primitives.

The completed-signer counter, the required total and the request status are
only ever changed through these single-statement updates. Each one is a
compare-and-set evaluated by the database, so concurrent callers in different
processes cannot both observe the same "before" value.
"""
from typing import Iterable, List, Optional, Tuple

from sqlalchemy import or_, update
from sqlmodel import Session, select

from .errors import NotFound
from .models import RequestStatus, SchemaField, SigningRequest, Signer, SignerStatus
from .utils import utcnow


def increment_completed(session: Session, request_id: int) -> Optional[Tuple[int, int]]:
    """Add one to the completed counter unless it already equals the total.

    Returns the post-increment ``(completed, total)`` pair, or ``None`` when the
    counter was already full or the request stopped accepting signatures.
    """
    stmt = (
        update(SigningRequest)
        .where(
            SigningRequest.id == request_id,
            SigningRequest.status == RequestStatus.IN_PROGRESS,
            SigningRequest.completed_signer_count < SigningRequest.total_signer_count,
        )
        .values(
            completed_signer_count=SigningRequest.completed_signer_count + 1,
            updated_at=utcnow(),
        )
        .returning(SigningRequest.completed_signer_count, SigningRequest.total_signer_count)
    )
    row = session.exec(stmt).first()
    return (row[0], row[1]) if row else None


def decrement_completed(session: Session, request_id: int) -> Optional[Tuple[int, int]]:
    stmt = (
        update(SigningRequest)
        .where(SigningRequest.id == request_id, SigningRequest.completed_signer_count > 0)
        .values(
            completed_signer_count=SigningRequest.completed_signer_count - 1,
            updated_at=utcnow(),
        )
        .returning(SigningRequest.completed_signer_count, SigningRequest.total_signer_count)
    )
    row = session.exec(stmt).first()
    return (row[0], row[1]) if row else None


def excuse_from_total(session: Session, request_id: int) -> Optional[Tuple[int, int]]:
    """Remove one not-yet-counted signer from the required total."""
    stmt = (
        update(SigningRequest)
        .where(
            SigningRequest.id == request_id,
            SigningRequest.total_signer_count > SigningRequest.completed_signer_count,
        )
        .values(
            total_signer_count=SigningRequest.total_signer_count - 1,
            updated_at=utcnow(),
        )
        .returning(SigningRequest.completed_signer_count, SigningRequest.total_signer_count)
    )
    row = session.exec(stmt).first()
    return (row[0], row[1]) if row else None


def restore_to_total(session: Session, request_id: int) -> Tuple[int, int]:
    stmt = (
        update(SigningRequest)
        .where(SigningRequest.id == request_id)
        .values(
            total_signer_count=SigningRequest.total_signer_count + 1,
            updated_at=utcnow(),
        )
        .returning(SigningRequest.completed_signer_count, SigningRequest.total_signer_count)
    )
    row = session.exec(stmt).one()
    return row[0], row[1]


def cas_request_status(
    session: Session,
    request_id: int,
    expected: Iterable[str],
    new_status: str,
    require_full: bool = False,
    **values,
) -> bool:
    """Move a request to ``new_status`` only if it is currently in ``expected``.

    ``require_full`` additionally demands ``completed == total``; the finalize
    transition uses it so that exactly one caller wins the hand-off.
    """
    conditions = [SigningRequest.id == request_id, SigningRequest.status.in_(list(expected))]
    if require_full:
        conditions.append(SigningRequest.completed_signer_count == SigningRequest.total_signer_count)
        conditions.append(SigningRequest.total_signer_count > 0)
    stmt = (
        update(SigningRequest)
        .where(*conditions)
        .values(status=new_status, updated_at=utcnow(), **values)
    )
    return session.exec(stmt).rowcount == 1


def complete_with_artifact(session: Session, request_id: int, artifact_ref: str, sha256: str) -> bool:
    stmt = (
        update(SigningRequest)
        .where(
            SigningRequest.id == request_id,
            SigningRequest.status == RequestStatus.FINALIZING,
            SigningRequest.artifact_ref.is_(None),
            SigningRequest.completed_signer_count == SigningRequest.total_signer_count,
        )
        .values(
            status=RequestStatus.COMPLETED,
            artifact_ref=artifact_ref,
            artifact_sha256=sha256,
            last_error=None,
            assembly_exhausted=False,
            completed_at=utcnow(),
            updated_at=utcnow(),
        )
    )
    return session.exec(stmt).rowcount == 1


def cas_signer_status(session: Session, signer_id: int, expected: Iterable[str], new_status: str, **values) -> bool:
    stmt = (
        update(Signer)
        .where(Signer.id == signer_id, Signer.status.in_(list(expected)))
        .values(status=new_status, **values)
    )
    return session.exec(stmt).rowcount == 1


def load_request(session: Session, request_id: int) -> SigningRequest:
    """Fetch a request, overwriting any stale copy held by the session."""
    request = session.exec(
        select(SigningRequest)
        .where(SigningRequest.id == request_id)
        .execution_options(populate_existing=True)
    ).first()
    if request is None:
        raise NotFound(f"signing request {request_id} not found")
    return request


def load_signers(session: Session, request_id: int) -> List[Signer]:
    return list(session.exec(
        select(Signer)
        .where(Signer.request_id == request_id)
        .order_by(Signer.order_index, Signer.id)
        .execution_options(populate_existing=True)
    ).all())


def load_signer(session: Session, request_id: int, signer_key: str) -> Signer:
    signer = session.exec(
        select(Signer)
        .where(Signer.request_id == request_id, Signer.signer_key == signer_key)
        .execution_options(populate_existing=True)
    ).first()
    if signer is None:
        raise NotFound(f"signer {signer_key!r} not found on request {request_id}")
    return signer


def load_fields(session: Session, request_id: int) -> List[SchemaField]:
    return list(session.exec(
        select(SchemaField).where(SchemaField.request_id == request_id).order_by(SchemaField.name)
    ).all())


def claim_reminder(session: Session, signer_id: int, seen_count: int, max_count: int, not_after) -> bool:
    """Record one reminder unless another caller sent one first or a limit is reached."""
    stmt = (
        update(Signer)
        .where(
            Signer.id == signer_id,
            Signer.reminder_count == seen_count,
            Signer.reminder_count < max_count,
            or_(Signer.last_reminded_at.is_(None), Signer.last_reminded_at <= not_after),
        )
        .values(reminder_count=Signer.reminder_count + 1, last_reminded_at=utcnow())
    )
    return session.exec(stmt).rowcount == 1


def advance_turn_epochs(session: Session, request_id: int, after_order_index: int) -> int:
    """Start a new turn generation for actionable signers queued behind ``after_order_index``."""
    stmt = (
        update(Signer)
        .where(
            Signer.request_id == request_id,
            Signer.order_index > after_order_index,
            Signer.status.in_(list(SignerStatus.ACTIONABLE)),
        )
        .values(turn_epoch=Signer.turn_epoch + 1)
    )
    return session.exec(stmt).rowcount
