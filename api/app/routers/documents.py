from fastapi import APIRouter, Depends, File, HTTPException, UploadFile

from .. import storage
from ..auth import require_admin_access
from ..utils import sha256_bytes

router = APIRouter()


@router.post("")
async def upload_document(
    file: UploadFile = File(...),
    ctx=Depends(require_admin_access),
):
    data = await file.read()
    if not data:
        raise HTTPException(400, "empty upload")
    key = storage.put_blob(
        data, "templates", content_type=file.content_type or "application/pdf", suffix=".pdf"
    )
    return {"document_key": key, "filename": file.filename, "sha256": sha256_bytes(data)}
