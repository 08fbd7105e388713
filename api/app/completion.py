"""Completion detection.

Runs after every successful submission, inside the submitting transaction.
The completed-signer counter is bumped with one atomic statement; the caller
whose increment reaches the total then has to win a compare-and-set from
``in_progress`` to ``finalizing`` before it may hand the request to the
assembly pipeline. Two signers finishing at the same instant therefore
produce exactly one finalize hand-off.
"""
import logging
from dataclasses import dataclass
from typing import Optional, Sequence

from sqlmodel import Session

from . import assembly, store
from .audit import append_event
from .errors import InvalidTransition
from .models import RequestStatus, Signer, SignerStatus, SigningRequest
from .notifications import Outbox, TriggerKind, emit
from .schemas import load_request_settings

logger = logging.getLogger(__name__)


@dataclass
class CompletionResult:
    completed: int
    total: int
    finalizing: bool = False
    next_signer_key: Optional[str] = None
    assembly: Optional[object] = None


def head_signer(signers: Sequence[Signer]) -> Optional[Signer]:
    """The signer whose turn it is: lowest order index among those still to act."""
    waiting = [s for s in signers if s.status not in SignerStatus.DONE]
    if not waiting:
        return None
    return min(waiting, key=lambda s: (s.order_index, s.id or 0))


def try_finalize(session: Session, request_id: int) -> bool:
    """Claim the finalize hand-off; only one caller per request ever gets ``True``."""
    won = store.cas_request_status(
        session,
        request_id,
        [RequestStatus.IN_PROGRESS],
        RequestStatus.FINALIZING,
        require_full=True,
        last_error=None,
        assembly_exhausted=False,
    )
    if won:
        append_event(session, request_id, "system", "finalizing", {})
        logger.info("Request %s is finalizing", request_id)
    return won


def hand_off(session: Session, request_id: int):
    return assembly.schedule_assembly(session, request_id)


def check_and_maybe_complete(
    session: Session,
    request: SigningRequest,
    outbox: Optional[Outbox] = None,
) -> CompletionResult:
    """Count one more signature and finalize the request if it was the last one.

    Commits the caller's open transaction together with the counter update.
    """
    outbox = outbox if outbox is not None else Outbox()
    counts = store.increment_completed(session, request.id)
    if counts is None:
        session.rollback()
        raise InvalidTransition(f"request {request.id} is no longer accepting signatures")
    completed, total = counts
    result = CompletionResult(completed=completed, total=total)

    if completed == total:
        result.finalizing = try_finalize(session, request.id)
    elif load_request_settings(request.settings_json).sequential:
        signers = store.load_signers(session, request.id)
        nxt = head_signer(signers)
        if nxt is not None:
            result.next_signer_key = nxt.signer_key
            emit(session, outbox, request, TriggerKind.SIGNER_TURN, signers, signer=nxt)

    session.commit()
    outbox.flush()
    if result.finalizing:
        result.assembly = hand_off(session, request.id)
    return result
