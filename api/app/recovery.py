"""Administrative recovery: manual assembly retry, signer reset and the
periodic sweeps (expiry, stuck assemblies, reminders).

Every administrative action writes an audit event naming the actor and the
state it replaced.
"""
import logging
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Dict, List, Optional

from sqlmodel import Session, select

from . import assembly, completion, store, workflow
from .audit import append_event
from .config import (
    EXPIRATION_SWEEP_BATCH_SIZE,
    FINALIZING_STUCK_MINUTES,
    MAX_REMINDERS_PER_SIGNER,
    MIN_REMINDER_INTERVAL_HOURS,
)
from .errors import InvalidTransition, ReminderNotAllowed
from .models import RequestStatus, Signer, SignerStatus, SigningRequest
from .notifications import Outbox, TriggerKind, emit
from .schemas import load_request_settings
from .utils import utcnow

logger = logging.getLogger(__name__)


@dataclass
class SweepResult:
    processed: List[int] = field(default_factory=list)
    errors: Dict[int, str] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {"processed": self.processed, "errors": {str(k): v for k, v in self.errors.items()}}


def retry_assembly(session: Session, request_id: int, actor: str = "system") -> Optional[assembly.AttemptOutcome]:
    request = store.load_request(session, request_id)
    if request.status == RequestStatus.COMPLETED and request.artifact_ref:
        return assembly.AttemptOutcome(assembly.AttemptOutcomeKind.SUCCESS, artifact_ref=request.artifact_ref)
    if request.status != RequestStatus.FINALIZING or request.artifact_ref:
        raise InvalidTransition(f"cannot retry assembly of a request that is {request.status}")
    request.assembly_exhausted = False
    session.add(request)
    append_event(session, request_id, actor, "assembly_retry", {"prior_error": request.last_error})
    session.commit()
    logger.info("Manual assembly retry of request %s by %s", request_id, actor)
    return assembly.schedule_assembly(session, request_id)


def _signer_snapshot(signer: Signer) -> dict:
    return {
        "status": signer.status,
        "counted": signer.counted,
        "excused": signer.excused,
        "signed_at": signer.signed_at,
        "declined_at": signer.declined_at,
        "turn_epoch": signer.turn_epoch,
    }


def reset_signer(session: Session, request_id: int, signer_key: str, actor: str = "system") -> Signer:
    """Put a signed or declined signer back to ``pending`` so they can act again.

    The counter, the required total and the request status are rolled back in
    the same transaction, so the result is indistinguishable from the signer
    never having acted.
    """
    request = store.load_request(session, request_id)
    if request.status not in (RequestStatus.IN_PROGRESS, RequestStatus.FINALIZING):
        raise InvalidTransition(f"cannot reset a signer on a request that is {request.status}")
    signer = store.load_signer(session, request_id, signer_key)
    if signer.status not in SignerStatus.DONE:
        raise InvalidTransition(f"signer {signer_key!r} is {signer.status}, nothing to reset")
    prior = _signer_snapshot(signer)
    prior_request_status = request.status

    if not store.cas_signer_status(
        session,
        signer.id,
        [signer.status],
        SignerStatus.PENDING,
        captured_values_json="{}",
        viewed_at=None,
        signed_at=None,
        declined_at=None,
        decline_reason=None,
        counted=False,
        excused=False,
        turn_epoch=Signer.turn_epoch + 1,
    ):
        session.rollback()
        raise InvalidTransition(f"signer {signer_key!r} changed state concurrently")
    if prior["counted"] and store.decrement_completed(session, request_id) is None:
        session.rollback()
        raise InvalidTransition("request counters are inconsistent")
    if prior["excused"]:
        store.restore_to_total(session, request_id)
    if not store.cas_request_status(
        session,
        request_id,
        [RequestStatus.IN_PROGRESS, RequestStatus.FINALIZING],
        RequestStatus.IN_PROGRESS,
        last_error=None,
        assembly_exhausted=False,
    ):
        session.rollback()
        raise InvalidTransition("request changed state concurrently")
    append_event(session, request_id, actor, "signer_reset", {
        "signer_key": signer_key,
        "prior": prior,
        "prior_request_status": prior_request_status,
    })

    outbox = Outbox()
    request = store.load_request(session, request_id)
    sequential = load_request_settings(request.settings_json).sequential
    if sequential:
        # queued signers get a fresh turn notice when the queue reaches them again
        store.advance_turn_epochs(session, request_id, signer.order_index)
    signers = store.load_signers(session, request_id)
    if sequential:
        head = completion.head_signer(signers)
        if head is not None:
            emit(session, outbox, request, TriggerKind.SIGNER_TURN, signers, signer=head)
    else:
        reset = next(s for s in signers if s.signer_key == signer_key)
        emit(session, outbox, request, TriggerKind.SIGNER_INVITED, signers, signer=reset)
    session.commit()
    outbox.flush()
    logger.info("Signer %s on request %s reset by %s (was %s)", signer_key, request_id, actor, prior["status"])
    return store.load_signer(session, request_id, signer_key)


def process_expired(session: Session, batch_size: Optional[int] = None) -> SweepResult:
    """Expire every open request past its deadline, a batch at a time."""
    batch_size = batch_size or EXPIRATION_SWEEP_BATCH_SIZE
    result = SweepResult()
    failed = set()
    while True:
        stmt = (
            select(SigningRequest.id)
            .where(
                SigningRequest.status.in_(list(RequestStatus.OPEN)),
                SigningRequest.expires_at.is_not(None),
                SigningRequest.expires_at <= utcnow(),
            )
            .order_by(SigningRequest.expires_at, SigningRequest.id)
        )
        if failed:
            stmt = stmt.where(SigningRequest.id.not_in(list(failed)))
        batch = list(session.exec(stmt.limit(batch_size)).all())
        for request_id in batch:
            try:
                workflow.expire(session, request_id)
                result.processed.append(request_id)
            except Exception as exc:
                session.rollback()
                failed.add(request_id)
                result.errors[request_id] = str(exc)
                logger.exception("Failed to expire request %s", request_id)
        if len(batch) < batch_size:
            break
    if result.processed or result.errors:
        logger.info("Expiry sweep: %s expired, %s failed", len(result.processed), len(result.errors))
    return result


def retry_stuck_assemblies(session: Session, stuck_minutes: Optional[int] = None) -> SweepResult:
    """Re-run assembly for requests left ``finalizing`` by a crashed worker.

    A failed attempt awaiting its backoff retry is left alone until it too has
    been quiet for the stuck window. Requests that exhausted their attempts
    wait for a manual retry instead.
    """
    cutoff = utcnow() - timedelta(minutes=stuck_minutes or FINALIZING_STUCK_MINUTES)
    ids = session.exec(
        select(SigningRequest.id).where(
            SigningRequest.status == RequestStatus.FINALIZING,
            SigningRequest.artifact_ref.is_(None),
            SigningRequest.assembly_exhausted.is_(False),
            SigningRequest.updated_at <= cutoff,
        ).order_by(SigningRequest.id)
    ).all()
    result = SweepResult()
    for request_id in ids:
        try:
            assembly.schedule_assembly(session, request_id)
            result.processed.append(request_id)
        except Exception as exc:
            session.rollback()
            result.errors[request_id] = str(exc)
            logger.exception("Failed to restart assembly of request %s", request_id)
    return result


def send_reminders(
    session: Session,
    request_id: int,
    signer_key: Optional[str] = None,
    actor: str = "system",
) -> List[str]:
    """Remind the signers the request is waiting on; returns the keys reminded."""
    request = store.load_request(session, request_id)
    if request.status != RequestStatus.IN_PROGRESS:
        raise InvalidTransition(f"cannot send reminders for a request that is {request.status}")
    signers = store.load_signers(session, request_id)
    if load_request_settings(request.settings_json).sequential:
        head = completion.head_signer(signers)
        waiting = [head] if head is not None else []
    else:
        waiting = [s for s in signers if s.status in SignerStatus.ACTIONABLE]
    if signer_key is not None:
        waiting = [s for s in waiting if s.signer_key == signer_key]
        if not waiting:
            raise InvalidTransition(f"request is not waiting on signer {signer_key!r}")

    not_after = utcnow() - timedelta(hours=MIN_REMINDER_INTERVAL_HOURS)
    claimed = [
        s for s in waiting
        if store.claim_reminder(session, s.id, s.reminder_count, MAX_REMINDERS_PER_SIGNER, not_after)
    ]
    if not claimed:
        session.rollback()
        raise ReminderNotAllowed(
            f"reminders are limited to one per {MIN_REMINDER_INTERVAL_HOURS}h "
            f"and {MAX_REMINDERS_PER_SIGNER} per signer",
            {"signer_keys": [s.signer_key for s in waiting]},
        )

    outbox = Outbox()
    keys = {s.signer_key for s in claimed}
    signers = store.load_signers(session, request_id)
    for signer in signers:
        if signer.signer_key in keys:
            emit(
                session, outbox, request, TriggerKind.SIGNER_REMINDER, signers,
                signer=signer, dedupe_key=f"{signer.signer_key}:reminder:{signer.reminder_count}",
            )
    append_event(session, request_id, actor, "reminded", {"signer_keys": sorted(keys)})
    session.commit()
    outbox.flush()
    return sorted(keys)
