from __future__ import annotations

import json
from pathlib import Path

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

import orderflow.persistence.pg as pg
from orderflow.core.config import get_settings
from orderflow.domain.email.client import EmailMessage, SendResult
from orderflow.persistence.models import Base
from orderflow.webhooks.verification import compute_signature, sign_payload

PAYMENTS_SECRET = "whsec_test_payments"
CARRIER_SECRET = "carrier_test_secret"


class FakeEmailClient:
    """Records outgoing messages instead of calling the provider."""

    def __init__(self):
        self.sent: list[EmailMessage] = []
        self.fail_with: Exception | None = None

    def send(self, message: EmailMessage) -> SendResult:
        if self.fail_with is not None:
            raise self.fail_with
        self.sent.append(message)
        return SendResult(message_id=f"msg_{len(self.sent)}")

    def kinds(self) -> list[str]:
        return [message.tags["email_kind"] for message in self.sent]


@pytest.fixture(scope="session")
def test_db_path(tmp_path_factory: pytest.TempPathFactory) -> Path:
    return tmp_path_factory.mktemp("db") / "test.sqlite"


@pytest.fixture(scope="session", autouse=True)
def configure_test_engine(test_db_path: Path):
    settings = get_settings()
    settings.payments_webhook_secret = PAYMENTS_SECRET
    settings.carrier_webhook_secret = CARRIER_SECRET
    settings.webhook_signature_bypass = False
    settings.auth_enabled = True

    engine = create_engine(
        f"sqlite+pysqlite:///{test_db_path}",
        future=True,
        connect_args={"check_same_thread": False},
    )
    TestSessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False)

    pg.engine = engine
    pg.SessionLocal = TestSessionLocal

    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture(autouse=True)
def clean_tables(configure_test_engine):
    yield
    with pg.engine.begin() as conn:
        for table in reversed(Base.metadata.sorted_tables):
            conn.execute(table.delete())


@pytest.fixture()
def email_client() -> FakeEmailClient:
    return FakeEmailClient()


@pytest.fixture()
def client(configure_test_engine, email_client):
    from orderflow.api.routes_webhooks import get_email_client
    from orderflow.main import app

    app.dependency_overrides[get_email_client] = lambda: email_client
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()


@pytest.fixture()
def session(configure_test_engine):
    with pg.session_scope() as s:
        yield s


@pytest.fixture()
def auth_headers():
    settings = get_settings()
    return {
        "operator": {"X-API-Key": settings.operator_api_key},
        "system": {"Authorization": f"Bearer {settings.system_api_key}"},
    }


@pytest.fixture()
def post_payment(client):
    def _post(event: dict, secret: str = PAYMENTS_SECRET, header: str | None = None):
        body = json.dumps(event).encode("utf-8")
        signature = header if header is not None else sign_payload(secret, body)
        return client.post(
            "/webhooks/payments",
            content=body,
            headers={"Content-Type": "application/json", "Stripe-Signature": signature},
        )

    return _post


@pytest.fixture()
def post_carrier(client):
    def _post(event: dict, secret: str = CARRIER_SECRET):
        body = json.dumps(event).encode("utf-8")
        return client.post(
            "/webhooks/carrier",
            content=body,
            headers={
                "Content-Type": "application/json",
                "X-Hmac-Signature": f"hmac-sha256-hex={compute_signature(secret, body)}",
            },
        )

    return _post
