from fastapi import APIRouter, Depends, HTTPException, Request, Response
from sqlmodel import Session

from .. import storage, store, workflow
from ..auth import SignerContext, resolve_signer_token
from ..db import get_session
from ..models import RequestStatus, SignerStatus
from ..schemas import SignDecline, SignSubmit
from ..utils import load_json, sa_to_dict

router = APIRouter()


def _client(request: Request):
    return (request.client.host if request.client else None), request.headers.get("user-agent")


# ---------- routes ----------

@router.get("/{token}")
def load_signing_session(
    request: Request,
    ctx: SignerContext = Depends(resolve_signer_token),
    session: Session = Depends(get_session),
):
    ip, ua = _client(request)
    signer = workflow.mark_viewed(session, ctx.request_id, ctx.signer_key, ip=ip, ua=ua)
    signing_request = store.load_request(session, ctx.request_id)
    signers = store.load_signers(session, ctx.request_id)
    fields = [
        f for f in store.load_fields(session, ctx.request_id)
        if not f.owner_signer_key or f.owner_signer_key == signer.signer_key
    ]
    return {
        "request": {
            "id": signing_request.id,
            "title": signing_request.title,
            "status": signing_request.status,
            "expires_at": signing_request.expires_at,
            "completed_signer_count": signing_request.completed_signer_count,
            "total_signer_count": signing_request.total_signer_count,
        },
        "signer": sa_to_dict(signer, exclude=("captured_values_json",)),
        "waiting_on": len([s for s in signers if s.status not in SignerStatus.DONE and s.id != signer.id]),
        "fields": [
            {**sa_to_dict(f, exclude=("options_json", "geometry_json")),
             "options": load_json(f.options_json, []),
             "geometry": load_json(f.geometry_json, {})}
            for f in fields
        ],
    }


@router.get("/{token}/pdf")
def get_original_pdf(ctx: SignerContext = Depends(resolve_signer_token), session: Session = Depends(get_session)):
    signing_request = store.load_request(session, ctx.request_id)
    return Response(content=storage.get_bytes(signing_request.document_key), media_type="application/pdf")


@router.get("/{token}/final-pdf")
def get_final_pdf(ctx: SignerContext = Depends(resolve_signer_token), session: Session = Depends(get_session)):
    signing_request = store.load_request(session, ctx.request_id)
    if signing_request.status != RequestStatus.COMPLETED or not signing_request.artifact_ref:
        raise HTTPException(404, "final artifact not ready")
    return Response(content=storage.get_bytes(signing_request.artifact_ref), media_type="application/pdf")


@router.post("/{token}/submit")
def submit_signature(
    payload: SignSubmit,
    request: Request,
    ctx: SignerContext = Depends(resolve_signer_token),
    session: Session = Depends(get_session),
):
    ip, ua = _client(request)
    result = workflow.submit(session, ctx.request_id, ctx.signer_key, payload.values, ip=ip, ua=ua)
    signing_request = store.load_request(session, ctx.request_id)
    response = {
        "ok": True,
        "status": signing_request.status,
        "completed_signer_count": result.completed,
        "total_signer_count": result.total,
    }
    if result.next_signer_key:
        response["next_signer_key"] = result.next_signer_key
    if signing_request.artifact_sha256:
        response["sha256_final"] = signing_request.artifact_sha256
    return response


@router.post("/{token}/decline")
def decline_signature(
    payload: SignDecline,
    request: Request,
    ctx: SignerContext = Depends(resolve_signer_token),
    session: Session = Depends(get_session),
):
    ip, ua = _client(request)
    signing_request = workflow.decline(session, ctx.request_id, ctx.signer_key, reason=payload.reason, ip=ip, ua=ua)
    return {"ok": True, "status": signing_request.status}
