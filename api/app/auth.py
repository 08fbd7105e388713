from typing import Optional
from fastapi import Depends, Header, HTTPException, Query, status
from itsdangerous import BadData
from pydantic import BaseModel

from .config import ADMIN_ACCESS_TOKEN
from .utils import read_token


class AccessContext(BaseModel):
    role: str
    actor_id: Optional[str] = None

    @property
    def actor(self) -> str:
        return f"user:{self.actor_id}" if self.actor_id else self.role


class SignerContext(BaseModel):
    request_id: int
    signer_key: str


def resolve_access_context(
    x_access_token: Optional[str] = Header(default=None, alias="X-Access-Token"),
    x_actor_id: Optional[str] = Header(default=None, alias="X-Actor-Id"),
    token: Optional[str] = Query(default=None),
) -> AccessContext:
    candidate = x_access_token or token
    if not candidate:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing access token")
    if ADMIN_ACCESS_TOKEN and candidate == ADMIN_ACCESS_TOKEN:
        return AccessContext(role="admin", actor_id=x_actor_id)
    raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Invalid access token")


def require_admin_access(context: AccessContext = Depends(resolve_access_context)) -> AccessContext:
    if context.role != "admin":
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Admin access required")
    return context


def resolve_signer_token(token: str) -> SignerContext:
    try:
        data = read_token(token)
    except BadData:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="not found")
    if not isinstance(data, dict) or "request_id" not in data or "signer_key" not in data:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="not found")
    return SignerContext(request_id=data["request_id"], signer_key=data["signer_key"])
