from fastapi import APIRouter, Depends
from sqlmodel import Session

from .. import recovery
from ..auth import require_admin_access
from ..db import get_session

router = APIRouter()


@router.post("/process-expired")
def run_process_expired(session: Session = Depends(get_session), ctx=Depends(require_admin_access)):
    return recovery.process_expired(session).to_dict()


@router.post("/retry-stuck-assemblies")
def run_retry_stuck_assemblies(session: Session = Depends(get_session), ctx=Depends(require_admin_access)):
    return recovery.retry_stuck_assemblies(session).to_dict()
