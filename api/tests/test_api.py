from conftest import (
    ADMIN_HEADERS,
    SIMPLE_PDF,
    SIMPLE_SIGNATURE_B64,
    signature_field,
    signer_payload,
)


def upload_template(client):
    response = client.post(
        "/api/documents",
        files={"file": ("contract.pdf", SIMPLE_PDF, "application/pdf")},
        headers=ADMIN_HEADERS,
    )
    assert response.status_code == 200
    return response.json()["document_key"]


def create_request(client, keys=("alice", "bob"), **extra):
    body = {
        "document_key": upload_template(client),
        "title": "Lease",
        "requester_email": "dana@example.com",
        "signers": [signer_payload(k, i) for i, k in enumerate(keys, start=1)],
        "fields": [signature_field(f"{k}_signature", k) for k in keys],
        "send": True,
        **extra,
    }
    response = client.post("/api/requests", json=body, headers=ADMIN_HEADERS)
    assert response.status_code == 200, response.text
    data = response.json()
    links = client.get(f"/api/requests/{data['id']}/signing-links", headers=ADMIN_HEADERS).json()
    tokens = {key: link.rsplit("/sign/", 1)[1] for key, link in links.items()}
    return data, tokens


def sign(client, token, key):
    return client.post(
        f"/api/sign/{token}/submit",
        json={"values": {f"{key}_signature": {"value": SIMPLE_SIGNATURE_B64}}},
    )


def test_admin_endpoints_require_token(client):
    assert client.post("/api/requests", json={}).status_code == 401
    assert client.get("/api/requests/1", headers={"X-Access-Token": "wrong"}).status_code == 403


def test_sequential_signing_over_http(client):
    data, tokens = create_request(client)
    assert data["status"] == "in_progress"
    assert [s["signer_key"] for s in data["signers"]] == ["alice", "bob"]

    session_view = client.get(f"/api/sign/{tokens['alice']}")
    assert session_view.status_code == 200
    body = session_view.json()
    assert body["signer"]["status"] == "viewed"
    assert [f["name"] for f in body["fields"]] == ["alice_signature"]
    assert client.get(f"/api/sign/{tokens['alice']}/pdf").content == SIMPLE_PDF

    out_of_turn = sign(client, tokens["bob"], "bob")
    assert out_of_turn.status_code == 409
    assert out_of_turn.json()["code"] == "out_of_turn"
    assert client.get(f"/api/sign/{tokens['bob']}/final-pdf").status_code == 404

    first = sign(client, tokens["alice"], "alice").json()
    assert first["status"] == "in_progress"
    assert first["next_signer_key"] == "bob"
    last = sign(client, tokens["bob"], "bob").json()
    assert last["status"] == "completed"
    assert last["sha256_final"]

    final_pdf = client.get(f"/api/sign/{tokens['bob']}/final-pdf")
    assert final_pdf.status_code == 200
    assert final_pdf.content.startswith(b"%PDF")
    assert client.get(f"/api/requests/{data['id']}/artifact", headers=ADMIN_HEADERS).content == final_pdf.content

    detail = client.get(f"/api/requests/{data['id']}", headers=ADMIN_HEADERS).json()
    assert detail["audit_chain_valid"]
    assert [e["type"] for e in detail["events"]][:2] == ["created", "sent"]
    assert detail["events"][0]["actor"] == "user:ops-1"
    attempts = client.get(f"/api/requests/{data['id']}/attempts", headers=ADMIN_HEADERS).json()
    assert [a["outcome"] for a in attempts] == ["success"]


def test_decline_over_http(client):
    data, tokens = create_request(client, keys=("alice", "bob", "carol"))
    sign(client, tokens["alice"], "alice")
    response = client.post(f"/api/sign/{tokens['bob']}/decline", json={"reason": "unavailable"})
    assert response.json() == {"ok": True, "status": "declined"}
    assert sign(client, tokens["carol"], "carol").status_code == 409


def test_invalid_signing_token(client):
    assert client.get("/api/sign/not-a-token").status_code == 404


def test_admin_recovery_endpoints(client):
    data, tokens = create_request(client, ordering_mode="parallel")
    request_id = data["id"]
    sign(client, tokens["alice"], "alice")

    reset = client.post(f"/api/requests/{request_id}/signers/alice/reset", headers=ADMIN_HEADERS)
    assert reset.status_code == 200
    alice = [s for s in reset.json()["signers"] if s["signer_key"] == "alice"][0]
    assert alice["status"] == "pending"
    assert reset.json()["completed_signer_count"] == 0

    reminded = client.post(f"/api/requests/{request_id}/reminders", headers=ADMIN_HEADERS)
    assert reminded.json() == {"reminded": ["alice", "bob"]}
    again = client.post(f"/api/requests/{request_id}/reminders", headers=ADMIN_HEADERS)
    assert again.status_code == 429
    assert again.json()["code"] == "reminder_not_allowed"

    retry = client.post(f"/api/requests/{request_id}/retry-assembly", headers=ADMIN_HEADERS)
    assert retry.status_code == 409

    extended = client.post(f"/api/requests/{request_id}/extend", json={"days": 7}, headers=ADMIN_HEADERS)
    assert extended.status_code == 200
    assert client.post(f"/api/requests/{request_id}/extend", json={"days": 0}, headers=ADMIN_HEADERS).status_code == 422

    cancelled = client.post(f"/api/requests/{request_id}/cancel", headers=ADMIN_HEADERS)
    assert cancelled.json()["status"] == "cancelled"
    assert client.post(f"/api/requests/{request_id}/cancel", headers=ADMIN_HEADERS).status_code == 409


def test_create_validation_error_shape(client):
    response = client.post(
        "/api/requests",
        json={"document_key": "templates/x.pdf", "signers": [], "fields": []},
        headers=ADMIN_HEADERS,
    )
    assert response.status_code == 400
    assert response.json()["code"] == "invalid_request"


def test_job_endpoints(client):
    assert client.post("/api/jobs/process-expired", headers=ADMIN_HEADERS).json() == {"processed": [], "errors": {}}
    assert client.post("/api/jobs/retry-stuck-assemblies", headers=ADMIN_HEADERS).json() == {
        "processed": [],
        "errors": {},
    }
    assert client.get("/api/requests/999", headers=ADMIN_HEADERS).status_code == 404
