from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Response
from sqlmodel import Session, select

from .. import recovery, storage, store, workflow
from ..audit import list_events, verify_chain
from ..auth import AccessContext, require_admin_access
from ..db import get_session
from ..models import ArtifactAttempt
from ..notifications import signing_link
from ..schemas import ExtendExpiration, RequestCreate
from ..utils import load_json, sa_to_dict

router = APIRouter()


def _outcome_body(outcome):
    if outcome is None:
        return {"queued": True}
    return {
        "outcome": outcome.outcome,
        "attempt_number": outcome.attempt_number,
        "artifact_ref": outcome.artifact_ref,
        "error": outcome.error,
        "warnings": outcome.warnings,
    }


def request_body(session: Session, request_id: int) -> dict:
    request = store.load_request(session, request_id)
    body = sa_to_dict(request, exclude=("settings_json",))
    body["settings"] = load_json(request.settings_json, {})
    body["signers"] = [
        sa_to_dict(s, exclude=("captured_values_json",)) for s in store.load_signers(session, request_id)
    ]
    return body


@router.post("")
def create_request(
    data: RequestCreate,
    session: Session = Depends(get_session),
    ctx: AccessContext = Depends(require_admin_access),
):
    request = workflow.create_request(session, data, actor=ctx.actor)
    return request_body(session, request.id)


@router.get("/{request_id}")
def get_request(request_id: int, session: Session = Depends(get_session), ctx=Depends(require_admin_access)):
    body = request_body(session, request_id)
    body["fields"] = [sa_to_dict(f) for f in store.load_fields(session, request_id)]
    events = list_events(session, request_id)
    body["events"] = [
        {"actor": e.actor, "type": e.type, "meta": load_json(e.meta_json, {}).get("meta"), "at": e.at}
        for e in events
    ]
    body["audit_chain_valid"] = verify_chain(events)
    return body


@router.post("/{request_id}/send")
def send_request(
    request_id: int,
    session: Session = Depends(get_session),
    ctx: AccessContext = Depends(require_admin_access),
):
    workflow.send_request(session, request_id, actor=ctx.actor)
    return request_body(session, request_id)


@router.get("/{request_id}/attempts")
def list_attempts(request_id: int, session: Session = Depends(get_session), ctx=Depends(require_admin_access)):
    store.load_request(session, request_id)
    attempts = session.exec(
        select(ArtifactAttempt)
        .where(ArtifactAttempt.request_id == request_id)
        .order_by(ArtifactAttempt.attempt_number)
    ).all()
    return [
        {**sa_to_dict(a, exclude=("warnings_json",)), "warnings": load_json(a.warnings_json, [])}
        for a in attempts
    ]


@router.post("/{request_id}/cancel")
def cancel_request(
    request_id: int,
    session: Session = Depends(get_session),
    ctx: AccessContext = Depends(require_admin_access),
):
    workflow.cancel(session, request_id, actor=ctx.actor)
    return request_body(session, request_id)


@router.post("/{request_id}/extend")
def extend_request(
    request_id: int,
    payload: ExtendExpiration,
    session: Session = Depends(get_session),
    ctx: AccessContext = Depends(require_admin_access),
):
    workflow.extend_expiration(session, request_id, payload.days, actor=ctx.actor)
    return request_body(session, request_id)


@router.post("/{request_id}/signers/{signer_key}/reset")
def reset_signer(
    request_id: int,
    signer_key: str,
    session: Session = Depends(get_session),
    ctx: AccessContext = Depends(require_admin_access),
):
    recovery.reset_signer(session, request_id, signer_key, actor=ctx.actor)
    return request_body(session, request_id)


@router.post("/{request_id}/retry-assembly")
def retry_assembly(
    request_id: int,
    session: Session = Depends(get_session),
    ctx: AccessContext = Depends(require_admin_access),
):
    outcome = recovery.retry_assembly(session, request_id, actor=ctx.actor)
    return {**_outcome_body(outcome), "status": store.load_request(session, request_id).status}


@router.post("/{request_id}/reminders")
def send_reminders(
    request_id: int,
    signer_key: Optional[str] = None,
    session: Session = Depends(get_session),
    ctx: AccessContext = Depends(require_admin_access),
):
    return {"reminded": recovery.send_reminders(session, request_id, signer_key=signer_key, actor=ctx.actor)}


@router.get("/{request_id}/signing-links")
def signing_links(request_id: int, session: Session = Depends(get_session), ctx=Depends(require_admin_access)):
    return {s.signer_key: signing_link(request_id, s.signer_key) for s in store.load_signers(session, request_id)}


@router.get("/{request_id}/artifact")
def download_artifact(request_id: int, session: Session = Depends(get_session), ctx=Depends(require_admin_access)):
    request = store.load_request(session, request_id)
    if not request.artifact_ref:
        raise HTTPException(404, "final artifact not ready")
    return Response(content=storage.get_bytes(request.artifact_ref), media_type="application/pdf")
