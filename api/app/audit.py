
from sqlmodel import Session, select
from .models import Event
from .utils import canonical_json, sha256_bytes

def append_event(session: Session, request_id: int, actor: str, type_: str, meta: dict, ip=None, ua=None) -> Event:
    """Append to the request's hash-chained event log. The caller commits."""
    last = session.exec(
        select(Event).where(Event.request_id == request_id).order_by(Event.id.desc())
    ).first()
    prev_hash = last.hash if last else "0" * 64
    payload = {"actor": actor, "type": type_, "meta": meta}
    event = Event(
        request_id=request_id,
        actor=actor,
        type=type_,
        meta_json=canonical_json(payload),
        prev_hash=prev_hash,
        ip=ip,
        ua=ua,
    )
    event.hash = sha256_bytes((prev_hash + event.meta_json).encode())
    session.add(event)
    session.flush()
    return event

def list_events(session: Session, request_id: int):
    return session.exec(
        select(Event).where(Event.request_id == request_id).order_by(Event.id)
    ).all()

def verify_chain(events) -> bool:
    prev_hash = "0" * 64
    for event in events:
        if event.prev_hash != prev_hash:
            return False
        if event.hash != sha256_bytes((prev_hash + event.meta_json).encode()):
            return False
        prev_hash = event.hash
    return True
