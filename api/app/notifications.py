"""Notification trigger dispatcher.

Triggers are recorded in the same transaction as the state transition that
causes them and delivered only after that transaction commits. A unique
constraint on ``(request_id, kind, dedupe_key)`` guarantees that one
transition yields at most one trigger, even across processes. Delivery is
best effort: failures are logged and never undo the transition.
"""
import logging
from dataclasses import dataclass, field
from typing import List, Optional, Sequence

from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from .config import SIGNING_APP_URL
from .email import format_sender_name, send_email
from .models import NotificationTrigger, Signer, SigningRequest
from .utils import canonical_json, make_token

logger = logging.getLogger(__name__)


class TriggerKind:
    SIGNER_INVITED = "signer-invited"
    SIGNER_TURN = "signer-turn"
    SIGNER_REMINDER = "signer-reminder"
    REQUEST_COMPLETED = "request-completed"
    REQUEST_DECLINED = "request-declined"
    REQUEST_EXPIRED = "request-expired"

    SIGNER_LEVEL = frozenset({SIGNER_INVITED, SIGNER_TURN, SIGNER_REMINDER})


@dataclass
class PendingDelivery:
    trigger_id: int
    request_id: int
    kind: str
    signer_key: Optional[str]
    payload: dict
    recipients: List[str]
    title: str = ""
    link: Optional[str] = None
    requester_name: Optional[str] = None
    requester_email: Optional[str] = None


@dataclass
class Outbox:
    """Deliveries collected during a transaction, flushed after commit."""

    items: List[PendingDelivery] = field(default_factory=list)

    def add(self, item: PendingDelivery):
        self.items.append(item)

    def flush(self):
        items, self.items = self.items, []
        for item in items:
            try:
                deliver_trigger(item)
            except Exception:
                logger.exception(
                    "Delivery of %s for request %s failed", item.kind, item.request_id
                )
        return items


def signing_link(request_id: int, signer_key: str) -> str:
    token = make_token({"request_id": request_id, "signer_key": signer_key})
    return f"{SIGNING_APP_URL}/sign/{token}"


def _queue_position(signers: Sequence[Signer], signer: Signer) -> int:
    ordered = sorted(signers, key=lambda s: (s.order_index, s.id or 0))
    for idx, candidate in enumerate(ordered, start=1):
        if candidate.signer_key == signer.signer_key:
            return idx
    return 0


def contacted_signer_keys(session: Session, request_id: int) -> set:
    """Signers that have been invited or given their turn; request-level news goes only to them."""
    rows = session.exec(
        select(NotificationTrigger.signer_key).where(
            NotificationTrigger.request_id == request_id,
            NotificationTrigger.kind.in_([TriggerKind.SIGNER_INVITED, TriggerKind.SIGNER_TURN]),
        )
    ).all()
    return {key for key in rows if key}


def emit(
    session: Session,
    outbox: Outbox,
    request: SigningRequest,
    kind: str,
    signers: Sequence[Signer],
    signer: Optional[Signer] = None,
    dedupe_key: Optional[str] = None,
) -> Optional[NotificationTrigger]:
    """Record one trigger; returns ``None`` when it was already emitted."""
    if kind in TriggerKind.SIGNER_LEVEL and signer is None:
        raise ValueError(f"{kind} requires a signer")
    payload = {"request_id": request.id, "total_signers": len(signers)}
    if signer is not None:
        payload["signer_key"] = signer.signer_key
        payload["position"] = _queue_position(signers, signer)
    if dedupe_key is None:
        dedupe_key = f"{signer.signer_key}:{signer.turn_epoch}" if signer is not None else ""

    row = NotificationTrigger(
        request_id=request.id,
        kind=kind,
        signer_key=signer.signer_key if signer is not None else None,
        dedupe_key=dedupe_key,
        payload_json=canonical_json(payload),
    )
    nested = session.begin_nested()
    try:
        session.add(row)
        session.flush()
    except IntegrityError:
        nested.rollback()
        logger.info("Suppressed duplicate %s trigger for request %s (%s)", kind, request.id, dedupe_key)
        return None
    nested.commit()

    if signer is not None:
        recipients = [signer.email]
        link = signing_link(request.id, signer.signer_key)
    else:
        contacted = contacted_signer_keys(session, request.id)
        recipients = sorted({s.email for s in signers if s.email and s.signer_key in contacted})
        if request.requester_email:
            recipients.append(request.requester_email)
        link = None
    outbox.add(PendingDelivery(
        trigger_id=row.id,
        request_id=request.id,
        kind=kind,
        signer_key=row.signer_key,
        payload=payload,
        recipients=recipients,
        title=request.title,
        link=link,
        requester_name=request.requester_name,
        requester_email=request.requester_email,
    ))
    logger.info("Emitted %s for request %s signer=%s", kind, request.id, row.signer_key)
    return row


_SUBJECTS = {
    TriggerKind.SIGNER_INVITED: "Signature requested: {title}",
    TriggerKind.SIGNER_TURN: "Your turn to sign: {title}",
    TriggerKind.SIGNER_REMINDER: "Reminder: {title} is waiting for your signature",
    TriggerKind.REQUEST_COMPLETED: "Completed: {title}",
    TriggerKind.REQUEST_DECLINED: "Declined: {title}",
    TriggerKind.REQUEST_EXPIRED: "Expired: {title}",
}


def deliver_trigger(item: PendingDelivery):
    """Default delivery adapter: one plain-text email per recipient."""
    subject = _SUBJECTS.get(item.kind, "{title}").format(title=item.title)
    lines = [subject]
    if item.link:
        lines.append(f"Open document: {item.link}")
    if "position" in item.payload:
        lines.append(f"Signer {item.payload['position']} of {item.payload['total_signers']}")
    body = "\n\n".join(lines)
    sender = format_sender_name(item.requester_name)
    for to in item.recipients:
        send_email(to, subject, body, sender_name=sender, reply_to=item.requester_email)
