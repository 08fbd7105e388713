"""Artifact assembly pipeline.

One attempt reads the already-persisted signer state, resolves field values,
renders the final PDF and stores it. The request only becomes ``completed``
through a compare-and-set that still finds it ``finalizing`` without an
artifact, so a request cancelled, expired or reset while rendering is never
given one. Retries are driven by the caller: ``run_assembly`` sleeps between
attempts when running inline, the Celery task schedules them with a
countdown instead.
"""
import logging
import time
from dataclasses import dataclass, field
from typing import List, Optional

from sqlalchemy import func
from sqlmodel import Session, select

from . import rendering, storage, store
from .audit import append_event
from .config import ASSEMBLY_BACKOFF_BASE_SECONDS, ASSEMBLY_MAX_ATTEMPTS, ASSEMBLY_MODE
from .errors import AssemblyFailure, MissingFieldData
from .models import ArtifactAttempt, FieldKind, RequestStatus, SignerStatus
from .notifications import Outbox, TriggerKind, emit
from .resolver import resolve_fields
from .utils import canonical_json, utcnow

logger = logging.getLogger(__name__)

_sleep = time.sleep


class AttemptOutcomeKind:
    SUCCESS = "success"
    FAILURE = "failure"
    ABORTED = "aborted"


@dataclass
class AttemptOutcome:
    outcome: str
    attempt_number: Optional[int] = None
    artifact_ref: Optional[str] = None
    error: Optional[str] = None
    retryable: bool = False
    warnings: List[dict] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return self.outcome == AttemptOutcomeKind.SUCCESS


def backoff_delay(failed_attempts: int) -> float:
    """Delay before the next attempt after ``failed_attempts`` consecutive failures."""
    return ASSEMBLY_BACKOFF_BASE_SECONDS * (2 ** (failed_attempts - 1))


def _next_attempt_number(session: Session, request_id: int) -> int:
    current = session.exec(
        select(func.max(ArtifactAttempt.attempt_number)).where(ArtifactAttempt.request_id == request_id)
    ).one()
    return (current or 0) + 1


def _load_placements(resolution) -> list:
    placements = []
    for resolved in resolution.fields.values():
        value = resolved.value
        if resolved.kind in FieldKind.IMAGE:
            value = storage.get_bytes(value)
        placements.append({"kind": resolved.kind, "geometry": resolved.geometry, "value": value})
    return placements


def _record(session, attempt: ArtifactAttempt, outcome: str, error=None, artifact_ref=None, warnings=None):
    attempt.outcome = outcome
    attempt.error_detail = error
    attempt.artifact_ref = artifact_ref
    attempt.finished_at = utcnow()
    if warnings is not None:
        attempt.warnings_json = canonical_json(warnings)
    session.add(attempt)


def attempt_assembly(session: Session, request_id: int, outbox: Optional[Outbox] = None) -> AttemptOutcome:
    """Run a single assembly attempt and commit its outcome."""
    outbox = outbox if outbox is not None else Outbox()
    request = store.load_request(session, request_id)

    if request.status == RequestStatus.COMPLETED and request.artifact_ref:
        return AttemptOutcome(AttemptOutcomeKind.SUCCESS, artifact_ref=request.artifact_ref)

    attempt = ArtifactAttempt(request_id=request_id, attempt_number=_next_attempt_number(session, request_id))
    if request.status != RequestStatus.FINALIZING or request.artifact_ref:
        reason = f"request is {request.status}, not eligible for assembly"
        _record(session, attempt, AttemptOutcomeKind.ABORTED, error=reason)
        session.commit()
        logger.info("Assembly of request %s aborted: %s", request_id, reason)
        return AttemptOutcome(AttemptOutcomeKind.ABORTED, attempt.attempt_number, error=reason)

    signers = store.load_signers(session, request_id)
    warnings = []
    try:
        resolution = resolve_fields(store.load_fields(session, request_id), signers)
        warnings = [w.to_dict() for w in resolution.warnings]
        for warning in resolution.warnings:
            logger.warning(
                "Degraded resolution on request %s: field %s -> %s via %s",
                request_id, warning.field_name, warning.signer_key, warning.method,
            )
        audit = {
            "request_id": request.id,
            "title": request.title,
            "signers": ", ".join(f"{s.name or s.signer_key} <{s.email}>" for s in signers if s.status == SignerStatus.SIGNED),
            "sealed_at": utcnow().isoformat() + "Z",
        }
        pdf_bytes, sha_final = rendering.render_artifact(
            storage.get_bytes(request.document_key), _load_placements(resolution), audit
        )
        artifact_ref = storage.put_blob(
            pdf_bytes, f"requests/{request.id}/final", content_type="application/pdf", suffix=".pdf"
        )
    except MissingFieldData as exc:
        request.last_error = f"{exc.code}: {exc.message}"
        request.assembly_exhausted = True
        request.updated_at = utcnow()
        session.add(request)
        _record(session, attempt, AttemptOutcomeKind.FAILURE, error=request.last_error, warnings=warnings)
        session.commit()
        logger.error("Assembly of request %s cannot proceed: %s", request_id, exc.message)
        return AttemptOutcome(
            AttemptOutcomeKind.FAILURE, attempt.attempt_number, error=request.last_error,
            retryable=False, warnings=warnings,
        )
    except Exception as exc:
        failure = AssemblyFailure(f"assembly attempt {attempt.attempt_number} failed: {exc}")
        request.last_error = f"{failure.code}: {failure.message}"
        request.updated_at = utcnow()
        session.add(request)
        _record(session, attempt, AttemptOutcomeKind.FAILURE, error=request.last_error, warnings=warnings)
        session.commit()
        logger.exception("Assembly attempt %s for request %s failed", attempt.attempt_number, request_id)
        return AttemptOutcome(
            AttemptOutcomeKind.FAILURE, attempt.attempt_number, error=request.last_error,
            retryable=True, warnings=warnings,
        )

    if not store.complete_with_artifact(session, request_id, artifact_ref, sha_final):
        reason = "request changed state during assembly"
        _record(session, attempt, AttemptOutcomeKind.ABORTED, error=reason, warnings=warnings)
        session.commit()
        logger.warning("Discarding artifact %s for request %s: %s", artifact_ref, request_id, reason)
        return AttemptOutcome(AttemptOutcomeKind.ABORTED, attempt.attempt_number, error=reason, warnings=warnings)

    _record(session, attempt, AttemptOutcomeKind.SUCCESS, artifact_ref=artifact_ref, warnings=warnings)
    append_event(session, request_id, "system", "completed", {
        "artifact_ref": artifact_ref,
        "sha256_final": sha_final,
        "attempt": attempt.attempt_number,
        "degraded_fields": [w["field"] for w in warnings],
    })
    request = store.load_request(session, request_id)
    emit(session, outbox, request, TriggerKind.REQUEST_COMPLETED, signers)
    session.commit()
    outbox.flush()
    logger.info("Request %s completed with artifact %s", request_id, artifact_ref)
    return AttemptOutcome(
        AttemptOutcomeKind.SUCCESS, attempt.attempt_number, artifact_ref=artifact_ref, warnings=warnings,
    )


def mark_exhausted(session: Session, request_id: int, attempts: int, error: Optional[str]):
    request = store.load_request(session, request_id)
    if request.status != RequestStatus.FINALIZING:
        return
    request.last_error = f"assembly failed after {attempts} attempts, manual retry required: {error}"
    request.assembly_exhausted = True
    request.updated_at = utcnow()
    session.add(request)
    append_event(session, request_id, "system", "assembly_exhausted", {"attempts": attempts, "error": error})
    session.commit()
    logger.error("Assembly of request %s exhausted after %s attempts", request_id, attempts)


def run_assembly(session: Session, request_id: int, max_attempts: Optional[int] = None, sleep=None) -> AttemptOutcome:
    """Attempt assembly up to ``max_attempts`` times with exponential backoff."""
    max_attempts = max_attempts or ASSEMBLY_MAX_ATTEMPTS
    sleep = sleep or _sleep
    outcome = None
    for failed in range(1, max_attempts + 1):
        outcome = attempt_assembly(session, request_id)
        if outcome.outcome != AttemptOutcomeKind.FAILURE or not outcome.retryable:
            return outcome
        if failed < max_attempts:
            delay = backoff_delay(failed)
            logger.warning("Retrying assembly of request %s in %.1fs", request_id, delay)
            sleep(delay)
    mark_exhausted(session, request_id, max_attempts, outcome.error)
    return outcome


def schedule_assembly(session: Session, request_id: int) -> Optional[AttemptOutcome]:
    """Hand a freshly finalizing request to the configured assembly runner."""
    if ASSEMBLY_MODE == "celery":
        from .worker import assemble_request
        assemble_request.delay(request_id)
        logger.info("Queued assembly of request %s", request_id)
        return None
    return run_assembly(session, request_id)
