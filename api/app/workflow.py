"""Signing request state machine.

    draft -> in_progress -> finalizing -> completed
                  |-> declined | cancelled | expired

Signers move pending -> viewed -> signed | declined and never backwards,
except through ``recovery.reset_signer``. Every status change is a
compare-and-set against the stored status, so a transition raced by another
process fails cleanly instead of being applied twice.
"""
import logging
from datetime import date, timedelta
from typing import Optional

from sqlmodel import Session

from . import completion, storage, store
from .audit import append_event
from .config import DEFAULT_EXPIRATION_DAYS, MAX_EXPIRATION_DAYS, MAX_SIGNERS_PER_REQUEST
from .errors import InvalidFieldValue, InvalidRequest, InvalidTransition, NotFound, OutOfTurn
from .models import FieldKind, RequestStatus, SchemaField, Signer, SignerStatus, SigningRequest
from .notifications import Outbox, TriggerKind, emit
from .schemas import RequestCreate, RequestSettings, load_request_settings
from .utils import b64png_to_bytes, canonical_json, is_b64_image, load_json, utcnow

logger = logging.getLogger(__name__)


def _find_signer(signers, signer_key: str) -> Signer:
    for signer in signers:
        if signer.signer_key == signer_key:
            return signer
    raise NotFound(f"signer {signer_key!r} not found")


# ---------- creation ----------

def _validate_create(payload: RequestCreate):
    if not payload.signers:
        raise InvalidRequest("at least one signer is required")
    if len(payload.signers) > MAX_SIGNERS_PER_REQUEST:
        raise InvalidRequest(f"a request may have at most {MAX_SIGNERS_PER_REQUEST} signers")
    keys = [s.signer_key for s in payload.signers]
    if any(not k for k in keys) or len(set(keys)) != len(keys):
        raise InvalidRequest("signer keys must be present and unique")
    if payload.ordering_mode == "sequential":
        orders = sorted(s.order_index for s in payload.signers)
        if orders != list(range(1, len(orders) + 1)):
            raise InvalidRequest(
                "sequential order indices must be unique and run 1..n without gaps",
                {"order_indices": orders},
            )
    names = [f.name for f in payload.fields]
    if len(set(names)) != len(names):
        raise InvalidRequest("field names must be unique")
    for f in payload.fields:
        if f.kind not in FieldKind.ALL:
            raise InvalidRequest(f"unknown field kind {f.kind!r} on field {f.name!r}")
        if f.owner_signer_key and f.owner_signer_key not in keys:
            raise InvalidRequest(f"field {f.name!r} is owned by unknown signer {f.owner_signer_key!r}")
    days = payload.expires_in_days or DEFAULT_EXPIRATION_DAYS
    if days < 1 or days > MAX_EXPIRATION_DAYS:
        raise InvalidRequest(f"expiration must be between 1 and {MAX_EXPIRATION_DAYS} days")
    return days


def create_request(session: Session, payload: RequestCreate, actor: str = "system") -> SigningRequest:
    """Create the request with all its signers and fields in one transaction."""
    days = _validate_create(payload)
    settings = RequestSettings(
        ordering_mode=payload.ordering_mode,
        any_decline_cancels=payload.any_decline_cancels,
    )
    now = utcnow()
    request = SigningRequest(
        title=payload.title,
        document_key=payload.document_key,
        settings_json=settings.to_json(),
        status=RequestStatus.DRAFT,
        total_signer_count=len(payload.signers),
        completed_signer_count=0,
        expires_at=now + timedelta(days=days),
        requester_name=payload.requester_name,
        requester_email=payload.requester_email,
        created_at=now,
        updated_at=now,
    )
    session.add(request)
    session.flush()
    for s in payload.signers:
        session.add(Signer(
            request_id=request.id,
            signer_key=s.signer_key,
            order_index=s.order_index,
            email=s.email,
            name=s.name,
            external_ref=s.external_ref,
        ))
    for f in payload.fields:
        session.add(SchemaField(
            request_id=request.id,
            name=f.name,
            kind=f.kind,
            owner_signer_key=f.owner_signer_key,
            signer_email=f.signer_email,
            signer_ref=f.signer_ref,
            order_index=f.order_index,
            required=f.required,
            auto_fill_date=f.auto_fill_date,
            options_json=canonical_json(list(f.options)),
            geometry_json=canonical_json({"page": f.page, "x": f.x, "y": f.y, "w": f.w, "h": f.h}),
        ))
    append_event(session, request.id, actor, "created", {
        "signers": len(payload.signers),
        "fields": len(payload.fields),
        "ordering_mode": settings.ordering_mode,
    })
    session.commit()
    logger.info("Created signing request %s with %s signers", request.id, len(payload.signers))
    if payload.send:
        return send_request(session, request.id, actor=actor)
    return store.load_request(session, request.id)


def send_request(session: Session, request_id: int, actor: str = "system") -> SigningRequest:
    """``draft -> in_progress``; invites the first signer, or every signer when parallel."""
    outbox = Outbox()
    if not store.cas_request_status(session, request_id, [RequestStatus.DRAFT], RequestStatus.IN_PROGRESS, sent_at=utcnow()):
        status = store.load_request(session, request_id).status
        session.rollback()
        raise InvalidTransition(f"cannot send a request that is {status}")
    request = store.load_request(session, request_id)
    signers = store.load_signers(session, request_id)
    settings = load_request_settings(request.settings_json)
    invitees = [completion.head_signer(signers)] if settings.sequential else list(signers)
    for signer in invitees:
        if signer is not None:
            emit(session, outbox, request, TriggerKind.SIGNER_INVITED, signers, signer=signer)
    append_event(session, request_id, actor, "sent", {"invited": [s.signer_key for s in invitees if s]})
    session.commit()
    outbox.flush()
    return store.load_request(session, request_id)


# ---------- signer actions ----------

def _expire_if_due(session: Session, request: SigningRequest) -> bool:
    if request.status in RequestStatus.OPEN and request.expires_at and request.expires_at <= utcnow():
        expire(session, request.id)
        return True
    return False


def _require_in_progress(session: Session, request: SigningRequest):
    if _expire_if_due(session, request):
        raise InvalidTransition("request has expired")
    if request.status != RequestStatus.IN_PROGRESS:
        raise InvalidTransition(f"request is {request.status}")


def _normalize_value(request: SigningRequest, f: SchemaField, data: dict, now_iso: str) -> dict:
    value = data.get("value")
    if f.kind in FieldKind.IMAGE:
        if not is_b64_image(value):
            raise InvalidFieldValue(f"field {f.name!r} expects a base64 PNG image")
        value = storage.put_blob(
            b64png_to_bytes(value.strip()),
            f"requests/{request.id}/captures",
            content_type="image/png",
            suffix=".png",
        )
    elif f.kind == FieldKind.DATE:
        if value in (None, "") and f.auto_fill_date:
            value = None
        else:
            try:
                value = date.fromisoformat(str(value).strip()[:10]).isoformat()
            except ValueError:
                raise InvalidFieldValue(f"field {f.name!r} expects an ISO date") from None
    elif f.kind == FieldKind.CHECKBOX:
        if isinstance(value, str) and value.strip().lower() in ("true", "false"):
            value = value.strip().lower() == "true"
        if not isinstance(value, bool):
            raise InvalidFieldValue(f"field {f.name!r} expects true or false")
    elif f.kind == FieldKind.DROPDOWN:
        options = load_json(f.options_json, []) or []
        if value is None or (options and str(value) not in options):
            raise InvalidFieldValue(f"field {f.name!r} expects one of {options}")
        value = str(value)
    else:
        value = "" if value is None else str(value)
    context = dict(data.get("context") or {})
    if data.get("captured_at"):
        context["client_captured_at"] = str(data["captured_at"])
    return {"value": value, "captured_at": now_iso, "context": context}


def normalize_captured_values(session: Session, request: SigningRequest, signer: Signer, values: dict) -> dict:
    fields = {f.name: f for f in store.load_fields(session, request.id)}
    now_iso = utcnow().isoformat()
    captured = {}
    for name in sorted(values):
        f = fields.get(name)
        if f is None:
            raise InvalidFieldValue(f"unknown field {name!r}")
        if f.owner_signer_key and f.owner_signer_key != signer.signer_key:
            raise InvalidFieldValue(f"field {name!r} belongs to another signer")
        data = values[name]
        if hasattr(data, "model_dump"):
            data = data.model_dump()
        elif not isinstance(data, dict):
            data = {"value": data}
        captured[name] = _normalize_value(request, f, data, now_iso)
    return captured


def submit(
    session: Session,
    request_id: int,
    signer_key: str,
    values: dict,
    ip: Optional[str] = None,
    ua: Optional[str] = None,
) -> completion.CompletionResult:
    """Record a signer's captured values and mark them signed."""
    request = store.load_request(session, request_id)
    _require_in_progress(session, request)
    signers = store.load_signers(session, request_id)
    signer = _find_signer(signers, signer_key)
    if signer.status not in SignerStatus.ACTIONABLE:
        raise InvalidTransition(f"signer {signer_key!r} has already {signer.status}")

    if load_request_settings(request.settings_json).sequential:
        head = completion.head_signer(signers)
        if head is None or head.order_index != signer.order_index:
            raise OutOfTurn(signer_key, head.order_index if head else None)

    captured = normalize_captured_values(session, request, signer, values or {})
    if not store.cas_signer_status(
        session,
        signer.id,
        SignerStatus.ACTIONABLE,
        SignerStatus.SIGNED,
        captured_values_json=canonical_json(captured),
        signed_at=utcnow(),
        counted=True,
    ):
        session.rollback()
        raise InvalidTransition(f"signer {signer_key!r} has already completed")
    append_event(session, request_id, f"signer:{signer_key}", "signed", {"fields": sorted(captured)}, ip=ip, ua=ua)
    result = completion.check_and_maybe_complete(session, request)
    logger.info(
        "Signer %s signed request %s (%s/%s)", signer_key, request_id, result.completed, result.total
    )
    return result


def mark_viewed(session: Session, request_id: int, signer_key: str, ip=None, ua=None) -> Signer:
    """Advisory ``pending -> viewed``; a no-op in every other case."""
    request = store.load_request(session, request_id)
    signer = store.load_signer(session, request_id, signer_key)
    if request.status == RequestStatus.IN_PROGRESS and store.cas_signer_status(
        session, signer.id, [SignerStatus.PENDING], SignerStatus.VIEWED, viewed_at=utcnow()
    ):
        append_event(session, request_id, f"signer:{signer_key}", "viewed", {}, ip=ip, ua=ua)
        session.commit()
    return store.load_signer(session, request_id, signer_key)


def decline(session: Session, request_id: int, signer_key: str, reason: str = "", ip=None, ua=None) -> SigningRequest:
    request = store.load_request(session, request_id)
    _require_in_progress(session, request)
    signers = store.load_signers(session, request_id)
    signer = _find_signer(signers, signer_key)
    if signer.status not in SignerStatus.ACTIONABLE:
        raise InvalidTransition(f"signer {signer_key!r} has already {signer.status}")

    settings = load_request_settings(request.settings_json)
    cascade = settings.sequential or settings.any_decline_cancels
    outbox = Outbox()
    if not store.cas_signer_status(
        session,
        signer.id,
        SignerStatus.ACTIONABLE,
        SignerStatus.DECLINED,
        declined_at=utcnow(),
        decline_reason=reason,
        excused=not cascade,
    ):
        session.rollback()
        raise InvalidTransition(f"signer {signer_key!r} has already completed")
    append_event(session, request_id, f"signer:{signer_key}", "declined", {"reason": reason}, ip=ip, ua=ua)

    close = cascade
    finalizing = False
    if not cascade:
        counts = store.excuse_from_total(session, request_id)
        if counts is None:
            session.rollback()
            raise InvalidTransition("request counters are inconsistent")
        completed, total = counts
        if total == 0:
            close = True
        elif completed == total:
            finalizing = completion.try_finalize(session, request_id)

    if close and store.cas_request_status(session, request_id, [RequestStatus.IN_PROGRESS], RequestStatus.DECLINED):
        append_event(session, request_id, "system", "request_declined", {"signer_key": signer_key, "reason": reason})
        request = store.load_request(session, request_id)
        emit(session, outbox, request, TriggerKind.REQUEST_DECLINED, store.load_signers(session, request_id))

    session.commit()
    outbox.flush()
    logger.info("Signer %s declined request %s (cascade=%s)", signer_key, request_id, cascade)
    if finalizing:
        completion.hand_off(session, request_id)
    return store.load_request(session, request_id)


# ---------- request-level transitions ----------

def cancel(session: Session, request_id: int, actor: str = "system") -> SigningRequest:
    request = store.load_request(session, request_id)
    prior = request.status
    if not store.cas_request_status(session, request_id, RequestStatus.OPEN, RequestStatus.CANCELLED):
        session.rollback()
        raise InvalidTransition(f"cannot cancel a request that is {prior}")
    append_event(session, request_id, actor, "cancelled", {"prior_status": prior})
    session.commit()
    logger.info("Request %s cancelled by %s", request_id, actor)
    return store.load_request(session, request_id)


def expire(session: Session, request_id: int) -> SigningRequest:
    """Expire an open request past its deadline; signed values are preserved."""
    request = store.load_request(session, request_id)
    if not request.expires_at or request.expires_at > utcnow():
        raise InvalidTransition(f"request {request_id} has not reached its expiration")
    outbox = Outbox()
    if not store.cas_request_status(session, request_id, RequestStatus.OPEN, RequestStatus.EXPIRED):
        session.rollback()
        raise InvalidTransition(f"cannot expire a request that is {request.status}")
    append_event(session, request_id, "system", "expired", {"expires_at": request.expires_at})
    request = store.load_request(session, request_id)
    emit(session, outbox, request, TriggerKind.REQUEST_EXPIRED, store.load_signers(session, request_id))
    session.commit()
    outbox.flush()
    logger.info("Request %s expired", request_id)
    return request


def extend_expiration(session: Session, request_id: int, days: int, actor: str = "system") -> SigningRequest:
    request = store.load_request(session, request_id)
    if request.status not in RequestStatus.OPEN:
        raise InvalidTransition(f"cannot extend a request that is {request.status}")
    if days < 1:
        raise InvalidRequest("days must be positive")
    base = max(request.expires_at or utcnow(), utcnow())
    new_expiry = base + timedelta(days=days)
    if (new_expiry - request.created_at).days > MAX_EXPIRATION_DAYS:
        raise InvalidRequest(f"total expiration cannot exceed {MAX_EXPIRATION_DAYS} days")
    old_expiry = request.expires_at
    request.expires_at = new_expiry
    request.updated_at = utcnow()
    session.add(request)
    append_event(session, request_id, actor, "expiration_extended", {
        "days": days,
        "old_expires_at": old_expiry,
        "new_expires_at": new_expiry,
    })
    session.commit()
    return store.load_request(session, request_id)
