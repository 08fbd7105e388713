
import json
import logging
from pydantic import BaseModel, Field
from typing import Any, Dict, List, Literal, Optional

logger = logging.getLogger(__name__)

SETTINGS_VERSION = 1


class RequestSettings(BaseModel):
    """Per-request workflow settings, persisted as versioned JSON.

    Version 0 blobs predate this model: they stored the ordering mode under
    ``signing_mode`` or ``signing_order`` and had no version key.
    ``load_request_settings`` migrates them on read.
    """

    version: int = SETTINGS_VERSION
    ordering_mode: Literal["sequential", "parallel"] = "sequential"
    any_decline_cancels: bool = True

    @property
    def sequential(self) -> bool:
        return self.ordering_mode == "sequential"

    def to_json(self) -> str:
        return self.model_dump_json()


def _normalize_mode(raw) -> str:
    mode = str(raw or "").strip().lower()
    if mode in ("sequential", "parallel"):
        return mode
    if mode:
        logger.warning("Unknown ordering mode %r, falling back to sequential", raw)
    return "sequential"


def load_request_settings(raw) -> RequestSettings:
    if isinstance(raw, str):
        try:
            data = json.loads(raw) if raw.strip() else {}
        except json.JSONDecodeError:
            logger.warning("Unreadable request settings blob, using defaults")
            data = {}
    else:
        data = dict(raw or {})
    if not isinstance(data, dict):
        data = {}

    version = data.get("version") or 0
    if version == 0:
        data = {
            "version": SETTINGS_VERSION,
            "ordering_mode": data.get("ordering_mode") or data.get("signing_mode") or data.get("signing_order"),
            "any_decline_cancels": data.get("decline_cancels", data.get("any_decline_cancels", True)),
        }
    data["ordering_mode"] = _normalize_mode(data.get("ordering_mode"))
    data["version"] = SETTINGS_VERSION
    return RequestSettings.model_validate(
        {k: v for k, v in data.items() if k in RequestSettings.model_fields}
    )


class SignerCreate(BaseModel):
    signer_key: str
    name: str = ""
    email: str
    order_index: int = 1
    external_ref: Optional[str] = None


class FieldCreate(BaseModel):
    name: str
    kind: str
    owner_signer_key: Optional[str] = None
    signer_email: Optional[str] = None
    signer_ref: Optional[str] = None
    order_index: Optional[int] = None
    required: bool = True
    auto_fill_date: bool = False
    options: List[str] = []
    page: int = 1
    x: float = 0
    y: float = 0
    w: float = 0
    h: float = 0


class RequestCreate(BaseModel):
    document_key: str
    title: str = "Please sign"
    ordering_mode: Literal["sequential", "parallel"] = "sequential"
    any_decline_cancels: bool = True
    expires_in_days: Optional[int] = None
    requester_name: Optional[str] = None
    requester_email: Optional[str] = None
    signers: List[SignerCreate]
    fields: List[FieldCreate]
    send: bool = False


class CapturedValueIn(BaseModel):
    value: Any = None
    captured_at: Optional[str] = None
    context: Dict[str, Any] = {}


class SignSubmit(BaseModel):
    values: Dict[str, CapturedValueIn]  # field name -> captured value


class SignDecline(BaseModel):
    reason: str = ""


class ExtendExpiration(BaseModel):
    days: int = Field(gt=0)
