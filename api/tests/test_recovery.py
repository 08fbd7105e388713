from datetime import timedelta

import pytest
from sqlalchemy import update
from sqlmodel import select

from app import assembly, completion, recovery, rendering, store, workflow
from app.audit import list_events, verify_chain
from app.errors import InvalidTransition, OutOfTurn
from app.models import NotificationTrigger, RequestStatus, SignerStatus, SigningRequest
from app.notifications import TriggerKind
from app.utils import load_json, utcnow

from conftest import build_request, signature_field, signature_values


def snapshot(session, request_id):
    request = store.load_request(session, request_id)
    signers = store.load_signers(session, request_id)
    return {
        "status": request.status,
        "counts": (request.completed_signer_count, request.total_signer_count),
        "last_error": request.last_error,
        "signers": [
            (
                s.signer_key,
                s.status,
                s.counted,
                s.excused,
                {
                    k: str(v["value"]).replace(f"requests/{request_id}/", "")
                    for k, v in load_json(s.captured_values_json, {}).items()
                },
            )
            for s in signers
        ],
    }


def test_reset_then_resubmit_matches_signing_later(session):
    replayed = build_request(session)
    workflow.submit(session, replayed.id, "alice", signature_values("alice"))
    workflow.submit(session, replayed.id, "bob", signature_values("bob"))
    reset = recovery.reset_signer(session, replayed.id, "bob", actor="user:ops-1")
    assert reset.status == SignerStatus.PENDING
    assert reset.turn_epoch == 1
    assert reset.signed_at is None
    assert store.load_request(session, replayed.id).completed_signer_count == 1
    workflow.submit(session, replayed.id, "bob", signature_values("bob"))

    direct = build_request(session)
    workflow.submit(session, direct.id, "alice", signature_values("alice"))
    workflow.submit(session, direct.id, "bob", signature_values("bob"))

    assert snapshot(session, replayed.id) == snapshot(session, direct.id)


def test_reset_notifies_and_audits(session):
    request = build_request(session)
    workflow.submit(session, request.id, "alice", signature_values("alice"))
    recovery.reset_signer(session, request.id, "alice", actor="user:ops-1")

    turns = session.exec(
        select(NotificationTrigger).where(
            NotificationTrigger.request_id == request.id,
            NotificationTrigger.kind == TriggerKind.SIGNER_TURN,
        ).order_by(NotificationTrigger.id)
    ).all()
    assert [(t.signer_key, t.dedupe_key) for t in turns] == [("bob", "bob:0"), ("alice", "alice:1")]

    with pytest.raises(OutOfTurn):
        workflow.submit(session, request.id, "bob", signature_values("bob"))
    session.rollback()

    events = list_events(session, request.id)
    reset_event = [e for e in events if e.type == "signer_reset"][0]
    assert reset_event.actor == "user:ops-1"
    meta = load_json(reset_event.meta_json)["meta"]
    assert meta["prior"]["status"] == SignerStatus.SIGNED
    assert meta["prior_request_status"] == RequestStatus.IN_PROGRESS
    assert verify_chain(events)


def test_reset_rewinds_finalizing_request(session):
    fields = [
        signature_field("alice_signature", "alice"),
        {"name": "title", "kind": "text", "owner_signer_key": "alice"},
        signature_field("bob_signature", "bob"),
    ]
    request = build_request(session, keys=("alice", "bob"), ordering_mode="parallel", fields=fields)
    workflow.submit(session, request.id, "alice", signature_values("alice"))
    workflow.submit(session, request.id, "bob", signature_values("bob"))
    stuck = store.load_request(session, request.id)
    assert stuck.status == RequestStatus.FINALIZING
    assert stuck.last_error

    recovery.reset_signer(session, request.id, "alice", actor="user:ops-1")
    rewound = store.load_request(session, request.id)
    assert rewound.status == RequestStatus.IN_PROGRESS
    assert rewound.last_error is None
    assert rewound.completed_signer_count == 1
    invites = session.exec(
        select(NotificationTrigger.dedupe_key).where(
            NotificationTrigger.request_id == request.id,
            NotificationTrigger.kind == TriggerKind.SIGNER_INVITED,
            NotificationTrigger.signer_key == "alice",
        )
    ).all()
    assert sorted(invites) == ["alice:0", "alice:1"]

    workflow.submit(session, request.id, "alice", {**signature_values("alice"), "title": {"value": "CFO"}})
    assert store.load_request(session, request.id).status == RequestStatus.COMPLETED


def test_reset_restores_excused_signer(session):
    request = build_request(session, ordering_mode="parallel", any_decline_cancels=False)
    workflow.decline(session, request.id, "bob", reason="away")
    assert store.load_request(session, request.id).total_signer_count == 2

    recovery.reset_signer(session, request.id, "bob")
    restored = store.load_request(session, request.id)
    assert restored.total_signer_count == 3
    assert store.load_signer(session, request.id, "bob").excused is False

    for key in ("alice", "bob", "carol"):
        workflow.submit(session, request.id, key, signature_values(key))
    assert store.load_request(session, request.id).status == RequestStatus.COMPLETED


def test_reset_rejects_pending_signers_and_closed_requests(session):
    request = build_request(session)
    with pytest.raises(InvalidTransition):
        recovery.reset_signer(session, request.id, "alice")
    workflow.submit(session, request.id, "alice", signature_values("alice"))
    workflow.cancel(session, request.id)
    with pytest.raises(InvalidTransition):
        recovery.reset_signer(session, request.id, "alice")


def _backdate(session, request_id, days=1):
    session.exec(
        update(SigningRequest)
        .where(SigningRequest.id == request_id)
        .values(expires_at=utcnow() - timedelta(days=days))
    )
    session.commit()


def test_process_expired_sweeps_in_batches(session):
    due = [build_request(session).id for _ in range(3)]
    draft = build_request(session, send=False).id
    fresh = build_request(session).id
    for request_id in due + [draft]:
        _backdate(session, request_id)

    result = recovery.process_expired(session, batch_size=2)
    assert sorted(result.processed) == sorted(due + [draft])
    assert result.errors == {}
    for request_id in due + [draft]:
        assert store.load_request(session, request_id).status == RequestStatus.EXPIRED
    assert store.load_request(session, fresh).status == RequestStatus.IN_PROGRESS
    assert recovery.process_expired(session).processed == []


def test_process_expired_collects_failures(session, monkeypatch):
    first, second = build_request(session).id, build_request(session).id
    _backdate(session, first, days=2)
    _backdate(session, second)
    real_expire = workflow.expire

    def failing_expire(s, request_id):
        if request_id == first:
            raise RuntimeError("storage offline")
        return real_expire(s, request_id)

    monkeypatch.setattr(workflow, "expire", failing_expire)
    result = recovery.process_expired(session, batch_size=1)
    assert result.processed == [second]
    assert result.errors == {first: "storage offline"}
    assert store.load_request(session, first).status == RequestStatus.IN_PROGRESS


def test_retry_stuck_assemblies(session):
    request = build_request(session, keys=("alice",))
    workflow.submit(session, request.id, "alice", signature_values("alice"))
    assert store.load_request(session, request.id).status == RequestStatus.COMPLETED

    stuck = build_request(session, keys=("alice",))
    store.cas_signer_status(
        session, store.load_signer(session, stuck.id, "alice").id, SignerStatus.ACTIONABLE, SignerStatus.SIGNED,
        captured_values_json=store.load_signer(session, request.id, "alice").captured_values_json,
        signed_at=utcnow(), counted=True,
    )
    store.increment_completed(session, stuck.id)
    assert completion.try_finalize(session, stuck.id)
    session.exec(
        update(SigningRequest)
        .where(SigningRequest.id == stuck.id)
        .values(updated_at=utcnow() - timedelta(hours=2))
    )
    session.commit()

    result = recovery.retry_stuck_assemblies(session)
    assert result.processed == [stuck.id]
    assert store.load_request(session, stuck.id).status == RequestStatus.COMPLETED
    assert recovery.retry_stuck_assemblies(session).processed == []


def _backdate_updated(session, *request_ids):
    session.exec(
        update(SigningRequest)
        .where(SigningRequest.id.in_(request_ids))
        .values(updated_at=utcnow() - timedelta(hours=2))
    )
    session.commit()


def test_stuck_sweep_resumes_interrupted_retries(session, monkeypatch):
    render_failures = {"left": 2}
    real_render = rendering.render_artifact

    def render(*args, **kwargs):
        if render_failures["left"]:
            render_failures["left"] -= 1
            raise RuntimeError("boom")
        return real_render(*args, **kwargs)

    monkeypatch.setattr(rendering, "render_artifact", render)
    # the worker dies right after its first attempt
    monkeypatch.setattr(completion, "hand_off", lambda s, request_id: assembly.attempt_assembly(s, request_id))

    interrupted = build_request(session, keys=("alice",))
    workflow.submit(session, interrupted.id, "alice", signature_values("alice"))
    given_up = build_request(session, keys=("alice",))
    workflow.submit(session, given_up.id, "alice", signature_values("alice"))
    assembly.mark_exhausted(session, given_up.id, 3, "boom")

    pending = store.load_request(session, interrupted.id)
    assert pending.status == RequestStatus.FINALIZING
    assert pending.last_error
    assert not pending.assembly_exhausted
    assert store.load_request(session, given_up.id).assembly_exhausted

    assert recovery.retry_stuck_assemblies(session).processed == []
    _backdate_updated(session, interrupted.id, given_up.id)
    assert recovery.retry_stuck_assemblies(session).processed == [interrupted.id]
    assert store.load_request(session, interrupted.id).status == RequestStatus.COMPLETED
    assert store.load_request(session, given_up.id).status == RequestStatus.FINALIZING


def test_reset_gives_queued_signer_a_fresh_turn(session, sent_emails):
    request = build_request(session)
    workflow.submit(session, request.id, "alice", signature_values("alice"))
    workflow.submit(session, request.id, "bob", signature_values("bob"))
    recovery.reset_signer(session, request.id, "alice", actor="user:ops-1")

    sent_emails.clear()
    result = workflow.submit(session, request.id, "alice", signature_values("alice"))
    assert result.next_signer_key == "carol"

    carol_turns = session.exec(
        select(NotificationTrigger.dedupe_key).where(
            NotificationTrigger.request_id == request.id,
            NotificationTrigger.kind == TriggerKind.SIGNER_TURN,
            NotificationTrigger.signer_key == "carol",
        ).order_by(NotificationTrigger.id)
    ).all()
    assert list(carol_turns) == ["carol:0", "carol:1"]
    assert [m["subject"] for m in sent_emails if m["to"] == "carol@example.com"] == [
        "Your turn to sign: Purchase agreement"
    ]

    workflow.submit(session, request.id, "carol", signature_values("carol"))
    assert store.load_request(session, request.id).status == RequestStatus.COMPLETED
