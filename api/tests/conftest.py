import os
from typing import Dict

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import event
from sqlmodel import SQLModel, Session, create_engine

os.environ.setdefault("DATABASE_URL", "sqlite:///./test.db")
os.environ.setdefault("ADMIN_ACCESS_TOKEN", "admin-test-token")
os.environ.setdefault("ASSEMBLY_MODE", "inline")

from app.main import app  # noqa: E402
from app import assembly as assembly_module  # noqa: E402
from app import db as db_module  # noqa: E402
from app.db import get_session  # noqa: E402
from app import storage as storage_module  # noqa: E402
from app import notifications as notifications_module  # noqa: E402
from app.schemas import RequestCreate  # noqa: E402
from app.workflow import create_request  # noqa: E402

SIMPLE_PDF = (
    b"%PDF-1.4\n"
    b"1 0 obj\n<< /Type /Catalog /Pages 2 0 R >>\nendobj\n"
    b"2 0 obj\n<< /Type /Pages /Count 1 /Kids [3 0 R] >>\nendobj\n"
    b"3 0 obj\n<< /Type /Page /Parent 2 0 R /MediaBox [0 0 300 144] /Contents 4 0 R >>\nendobj\n"
    b"4 0 obj\n<< /Length 44 >>\nstream\nBT /F1 24 Tf 72 100 Td (Hello) Tj ET\nendstream\nendobj\n"
    b"xref\n0 5\n"
    b"0000000000 65535 f \n"
    b"0000000010 00000 n \n"
    b"0000000057 00000 n \n"
    b"0000000116 00000 n \n"
    b"0000000211 00000 n \n"
    b"trailer\n<< /Size 5 /Root 1 0 R >>\nstartxref\n300\n%%EOF\n"
)

SIMPLE_SIGNATURE_B64 = "iVBORw0KGgoAAAANSUhEUgAAAAEAAAABCAYAAAAfFcSJAAAADUlEQVR42mP8/5+hHgAHggJ/Pf8icQAAAABJRU5ErkJggg=="

TEMPLATE_KEY = "templates/contract.pdf"

ADMIN_HEADERS = {"X-Access-Token": os.environ["ADMIN_ACCESS_TOKEN"], "X-Actor-Id": "ops-1"}


@pytest.fixture(scope="session")
def test_engine(tmp_path_factory):
    db_path = tmp_path_factory.mktemp("data") / "test.db"
    engine = create_engine(
        f"sqlite:///{db_path}",
        connect_args={"check_same_thread": False},
    )
    return engine


@pytest.fixture
def setup_db(test_engine):
    SQLModel.metadata.drop_all(test_engine)
    SQLModel.metadata.create_all(test_engine)
    yield
    SQLModel.metadata.drop_all(test_engine)


@pytest.fixture
def session(test_engine, setup_db, monkeypatch):
    monkeypatch.setattr(db_module, "engine", test_engine)
    with Session(test_engine) as s:
        yield s


@pytest.fixture
def concurrent_engine(tmp_path):
    """File-backed engine whose transactions take the write lock up front.

    pysqlite defers BEGIN until the first write; emitting BEGIN IMMEDIATE
    serialises writers the way a server database's row locks would.
    """
    engine = create_engine(
        f"sqlite:///{tmp_path / 'concurrent.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )

    @event.listens_for(engine, "connect")
    def _no_pysqlite_transactions(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _begin_immediate(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    SQLModel.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture(autouse=True)
def no_backoff_sleep(monkeypatch):
    delays = []
    monkeypatch.setattr(assembly_module, "_sleep", delays.append)
    return delays


@pytest.fixture(autouse=True)
def mock_storage(monkeypatch) -> Dict[str, bytes]:
    store: Dict[str, bytes] = {TEMPLATE_KEY: SIMPLE_PDF}

    def fake_put_bytes(key: str, data: bytes, content_type: str = "application/octet-stream"):
        store[key] = bytes(data)

    def fake_get_bytes(key: str) -> bytes:
        if key not in store:
            raise KeyError(f"no such object: {key}")
        return store[key]

    monkeypatch.setattr(storage_module, "put_bytes", fake_put_bytes)
    monkeypatch.setattr(storage_module, "get_bytes", fake_get_bytes)
    return store


@pytest.fixture(autouse=True)
def sent_emails(monkeypatch):
    messages = []

    def fake_send_email(to, subject, body, sender_name=None, reply_to=None):
        messages.append({"to": to, "subject": subject, "text": body, "reply_to": reply_to})

    monkeypatch.setattr(notifications_module, "send_email", fake_send_email)
    return messages


@pytest.fixture
def client(test_engine, setup_db, monkeypatch):
    monkeypatch.setattr(db_module, "engine", test_engine)

    def override_session():
        with Session(test_engine) as session:
            yield session

    app.dependency_overrides[get_session] = override_session
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def signer_payload(key, order, **extra):
    return {"signer_key": key, "name": key.title(), "email": f"{key}@example.com", "order_index": order, **extra}


def signature_field(name, owner, **extra):
    return {"name": name, "kind": "signature", "owner_signer_key": owner, "x": 20, "y": 20, "w": 120, "h": 40, **extra}


def build_request(session, keys=("alice", "bob", "carol"), ordering_mode="sequential", send=True, **extra):
    payload = RequestCreate(
        document_key=TEMPLATE_KEY,
        title="Purchase agreement",
        ordering_mode=ordering_mode,
        requester_name="Dana",
        requester_email="dana@example.com",
        signers=[signer_payload(k, i) for i, k in enumerate(keys, start=1)],
        fields=extra.pop("fields", None) or [signature_field(f"{k}_signature", k) for k in keys],
        send=send,
        **extra,
    )
    return create_request(session, payload, actor="user:ops-1")


def signature_values(key):
    return {f"{key}_signature": {"value": SIMPLE_SIGNATURE_B64}}
