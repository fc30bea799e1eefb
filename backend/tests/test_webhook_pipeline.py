import hashlib
import hmac
import json
import os
import time

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, func, select, text
from sqlalchemy.exc import DataError
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app.application.services import webhook_event_router
from app.application.services import webhook_ledger_service as ledger
from app.application.services.webhook_event_router import WebhookEventKind
from app.application.services.webhook_pipeline_service import (
    INVALID_EVENT_PREFIX,
    LedgerUnavailableError,
    process_notification,
)
from app.application.services.webhook_retry_service import RetryPolicy
from app.application.services.webhook_signature_service import (
    SecretCache,
    WebhookSignatureVerifier,
    get_webhook_verifier,
)
from app.core.config import settings
from app.domain.errors import TransientStoreError
from app.domain.models.company import Company
from app.domain.models.company_user import CompanyUser
from app.domain.models.contractor import Contractor
from app.domain.models.project import Project
from app.domain.models.webhook_dead_letter import WebhookDeadLetter
from app.domain.models.webhook_event import WebhookEvent, WebhookEventStatus
from app.infrastructure.db.base import Base
from app.infrastructure.db.session import get_db

TEST_DATABASE_URL = os.getenv("TEST_DATABASE_URL", "")
WEBHOOK_SECRET = "pdl_ntfset_pipeline"
NO_WAIT = RetryPolicy(max_attempts=5, base_delay_seconds=0.0, max_delay_seconds=0.0, budget_seconds=None)


@pytest.fixture
def db_engine():
    if TEST_DATABASE_URL:
        engine = create_engine(TEST_DATABASE_URL, pool_pre_ping=True)
        try:
            with engine.connect() as conn:
                conn.execute(text("SELECT 1"))
        except Exception as exc:
            pytest.skip(f"Database unavailable: {exc}")
    else:
        engine = create_engine("sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool)
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return sessionmaker(bind=db_engine, autocommit=False, autoflush=False, expire_on_commit=False)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


class StaticSecretStore:
    def get_secret(self, name: str) -> str | None:
        return WEBHOOK_SECRET


@pytest.fixture
def client(session_factory):
    from main import app

    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    verifier = WebhookSignatureVerifier(
        secret_cache=SecretCache(StaticSecretStore(), ttl_seconds=300),
        secret_name=settings.webhook_secret_name,
    )
    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_webhook_verifier] = lambda: verifier
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def _notification(event_id: str = "evt_1", event_type: str = "subscription.activated", **custom) -> bytes:
    custom_data = {"companyId": "t1", "userId": "u1", "companyName": "Acme"}
    custom_data.update(custom)
    custom_data = {key: value for key, value in custom_data.items() if value is not None}
    payload = {
        "event_id": event_id,
        "event_type": event_type,
        "occurred_at": "2026-10-01T10:00:00Z",
        "data": {
            "id": "sub_01",
            "status": "active",
            "customer_id": "ctm_01",
            "next_billed_at": "2026-11-01T10:00:00Z",
            "items": [{"price": {"id": settings.paddle_price_id_professional}}],
            "custom_data": custom_data,
        },
    }
    return json.dumps(payload).encode("utf-8")


def _signed_headers(body: bytes) -> dict:
    timestamp = int(time.time())
    digest = hmac.new(WEBHOOK_SECRET.encode("utf-8"), f"{timestamp}:".encode("utf-8") + body, hashlib.sha256).hexdigest()
    return {"Paddle-Signature": f"ts={timestamp};h1={digest}", "Content-Type": "application/json"}


def _count(db, model) -> int:
    return db.execute(select(func.count()).select_from(model)).scalar_one()


def _ledger_status(db, event_id: str) -> str | None:
    event = ledger.get_event(db, event_id)
    return event.status if event else None


class CountingHandler:
    def __init__(self, error: Exception | None = None):
        self.error = error
        self.calls = 0

    def __call__(self, db, payload):
        self.calls += 1
        if self.error is not None:
            raise self.error
        return {"ok": True}


def test_activation_is_processed_once_and_redelivery_is_deduplicated(db):
    first = process_notification(db, _notification(), policy=NO_WAIT)

    assert first.success is True
    assert first.retry_count == 0
    assert _ledger_status(db, "evt_1") == WebhookEventStatus.PROCESSED.value
    assert db.get(Company, "t1").subscription_tier == "professional"

    second = process_notification(db, _notification(), policy=NO_WAIT)

    assert second.success is True
    assert second.deduplicated is True
    assert second.to_response()["deduplicated"] is True
    assert _count(db, Company) == 1
    assert _count(db, CompanyUser) == 1
    assert _count(db, Project) == 1
    assert _count(db, Contractor) == 1
    assert _count(db, WebhookEvent) == 1


def test_missing_company_name_is_dead_lettered_after_one_attempt(db):
    result = process_notification(db, _notification("evt_2", companyName=None), policy=NO_WAIT)

    assert result.success is False
    assert result.retry_count == 0
    assert _ledger_status(db, "evt_2") == WebhookEventStatus.FAILED_TO_DLQ.value

    entries = db.execute(select(WebhookDeadLetter).where(WebhookDeadLetter.event_id == "evt_2")).scalars().all()
    assert len(entries) == 1
    entry = entries[0]
    assert entry.attempt_count == 0
    assert len(entry.processing_history) == 1
    assert entry.error_category == "validation"
    assert entry.company_id == "t1"
    assert entry.dlq_entry_id.startswith("dlq_evt_2_")
    assert _count(db, Company) == 0


def test_transient_failures_are_retried_five_times_then_dead_lettered(db, monkeypatch):
    handler = CountingHandler(TransientStoreError("database unavailable"))
    monkeypatch.setitem(webhook_event_router.HANDLERS, WebhookEventKind.SUBSCRIPTION_ACTIVATED, handler)

    result = process_notification(db, _notification("evt_3"), policy=NO_WAIT, sleep=lambda _: None)

    assert handler.calls == 5
    assert result.success is False
    assert result.retry_count == 5
    entry = db.execute(select(WebhookDeadLetter).where(WebhookDeadLetter.event_id == "evt_3")).scalar_one()
    assert entry.attempt_count == 5
    assert entry.max_attempts == 5
    assert len(entry.processing_history) == 5
    assert entry.error_category == "transient"
    assert _ledger_status(db, "evt_3") == WebhookEventStatus.FAILED_TO_DLQ.value


def test_terminal_event_is_never_handled_again(db, monkeypatch):
    handler = CountingHandler(TransientStoreError("database unavailable"))
    monkeypatch.setitem(webhook_event_router.HANDLERS, WebhookEventKind.SUBSCRIPTION_ACTIVATED, handler)
    process_notification(db, _notification("evt_4"), policy=NO_WAIT, sleep=lambda _: None)
    assert handler.calls == 5

    handler.error = None
    redelivered = process_notification(db, _notification("evt_4"), policy=NO_WAIT, sleep=lambda _: None)

    assert redelivered.deduplicated is True
    assert handler.calls == 5
    assert _count(db, WebhookDeadLetter) == 1


def test_non_tenant_events_run_once_without_retry(db, monkeypatch):
    handler = CountingHandler(TransientStoreError("timeout"))
    monkeypatch.setitem(webhook_event_router.HANDLERS, WebhookEventKind.SUBSCRIPTION_UPDATED, handler)

    result = process_notification(db, _notification("evt_5", "subscription.updated"), policy=NO_WAIT, sleep=lambda _: None)

    assert handler.calls == 1
    assert result.success is False
    entry = db.execute(select(WebhookDeadLetter).where(WebhookDeadLetter.event_id == "evt_5")).scalar_one()
    assert entry.max_attempts == 1
    assert len(entry.processing_history) == 1


def test_unrecognized_event_type_is_acknowledged(db):
    result = process_notification(db, _notification("evt_6", "address.created"), policy=NO_WAIT)

    assert result.success is True
    assert _ledger_status(db, "evt_6") == WebhookEventStatus.PROCESSED.value
    assert _count(db, WebhookDeadLetter) == 0


def test_body_without_event_id_is_dead_lettered_under_synthetic_id(db):
    body = json.dumps({"event_type": "subscription.activated", "data": {}}).encode("utf-8")

    result = process_notification(db, body, policy=NO_WAIT)

    assert result.success is False
    assert result.event_id.startswith(INVALID_EVENT_PREFIX)
    assert _ledger_status(db, result.event_id) == WebhookEventStatus.FAILED_TO_DLQ.value
    assert _count(db, WebhookDeadLetter) == 1

    again = process_notification(db, body, policy=NO_WAIT)
    assert again.deduplicated is True
    assert _count(db, WebhookDeadLetter) == 1


def test_dead_letter_write_failure_still_completes(db, monkeypatch):
    from app.application.services import dead_letter_service

    def broken_entry(**kwargs):
        raise RuntimeError("dead-letter table unavailable")

    monkeypatch.setattr(dead_letter_service, "WebhookDeadLetter", broken_entry)

    result = process_notification(db, _notification("evt_7", userId=None), policy=NO_WAIT)

    assert result.success is False
    assert _ledger_status(db, "evt_7") == WebhookEventStatus.FAILED_TO_DLQ.value


def test_ledger_write_failure_is_reported(db, monkeypatch):
    def unavailable(*args, **kwargs):
        raise TransientStoreError("ledger table unavailable")

    monkeypatch.setattr(ledger, "record_received", unavailable)

    with pytest.raises(LedgerUnavailableError):
        process_notification(db, _notification("evt_8"), policy=NO_WAIT)


def test_endpoint_processes_signed_notification(client, session_factory):
    body = _notification("evt_http")

    response = client.post("/webhooks/paddle", content=body, headers=_signed_headers(body))

    assert response.status_code == 200
    assert response.json() == {
        "success": True,
        "message": "Webhook processed successfully",
        "event_id": "evt_http",
        "retry_count": 0,
    }

    duplicate = client.post("/webhooks/paddle", content=body, headers=_signed_headers(body))
    assert duplicate.status_code == 200
    assert duplicate.json()["deduplicated"] is True

    with session_factory() as check:
        assert _count(check, Company) == 1


def test_endpoint_rejects_bad_signature_without_touching_ledger(client, session_factory):
    body = _notification("evt_forged")
    headers = _signed_headers(body)

    response = client.post("/webhooks/paddle", content=body + b" ", headers=headers)
    missing = client.post("/webhooks/paddle", content=body, headers={"Content-Type": "application/json"})

    assert response.status_code == 401
    assert response.json()["error_code"] == "401"
    assert missing.status_code == 401
    with session_factory() as check:
        assert _count(check, WebhookEvent) == 0


def test_endpoint_dead_letters_and_still_returns_200(client):
    body = _notification("evt_2", companyName=None)

    response = client.post("/webhooks/paddle", content=body, headers=_signed_headers(body))

    assert response.status_code == 200
    assert response.json()["success"] is False


def test_endpoint_answers_500_when_ledger_is_unavailable(client, monkeypatch):
    def unavailable(*args, **kwargs):
        raise TransientStoreError("ledger table unavailable")

    monkeypatch.setattr(ledger, "record_received", unavailable)
    body = _notification("evt_500")

    response = client.post("/webhooks/paddle", content=body, headers=_signed_headers(body))

    assert response.status_code == 500
    assert response.json()["error_code"] == "webhook_ledger_unavailable"


def test_endpoint_only_accepts_post(client):
    assert client.get("/webhooks/paddle").status_code == 405
    assert client.put("/webhooks/paddle", content=b"{}").status_code == 405


def test_tenant_key_names_create_the_tenant(db):
    payload = json.loads(_notification("evt_9", companyId=None, companyName=None))
    payload["data"]["custom_data"].update({"tenantId": "t1", "tenantName": "Acme"})

    result = process_notification(db, json.dumps(payload).encode("utf-8"), policy=NO_WAIT)

    assert result.success is True
    assert db.get(Company, "t1").name == "Acme"
    assert _count(db, CompanyUser) == 1
    assert ledger.get_event(db, "evt_9").tenant_id == "t1"


def test_subscription_created_is_retried_like_activation(db, monkeypatch):
    handler = CountingHandler(TransientStoreError("database unavailable"))
    monkeypatch.setitem(webhook_event_router.HANDLERS, WebhookEventKind.SUBSCRIPTION_CREATED, handler)

    result = process_notification(db, _notification("evt_10", "subscription.created"), policy=NO_WAIT, sleep=lambda _: None)

    assert handler.calls == 5
    assert result.retry_count == 5
    entry = db.execute(select(WebhookDeadLetter).where(WebhookDeadLetter.event_id == "evt_10")).scalar_one()
    assert entry.max_attempts == 5
    assert len(entry.processing_history) == 5


def test_oversized_tenant_id_is_dead_lettered_not_rejected(db):
    result = process_notification(db, _notification("evt_11", companyId="t" * 200), policy=NO_WAIT)

    assert result.success is False
    assert result.event_id.startswith(INVALID_EVENT_PREFIX)
    assert _ledger_status(db, "evt_11") is None
    assert _count(db, WebhookDeadLetter) == 1
    assert _count(db, Company) == 0


def test_ledger_row_refused_by_database_is_dead_lettered(db, monkeypatch):
    record_received = ledger.record_received

    def refuse_notification(session, **kwargs):
        if kwargs["event_id"].startswith(INVALID_EVENT_PREFIX):
            return record_received(session, **kwargs)
        raise DataError("INSERT INTO webhook_events", {}, Exception("value too long for type character varying(128)"))

    monkeypatch.setattr(ledger, "record_received", refuse_notification)

    result = process_notification(db, _notification("evt_12"), policy=NO_WAIT)

    assert result.success is False
    assert result.event_id.startswith(INVALID_EVENT_PREFIX)
    assert _ledger_status(db, result.event_id) == WebhookEventStatus.FAILED_TO_DLQ.value
    assert _count(db, WebhookDeadLetter) == 1
    assert _count(db, Company) == 0


def test_longest_event_id_still_gets_a_dead_letter_row(db):
    event_id = "evt_" + "x" * 251

    result = process_notification(db, _notification(event_id, companyName=None), policy=NO_WAIT)

    assert result.success is False
    entry = db.execute(select(WebhookDeadLetter).where(WebhookDeadLetter.event_id == event_id)).scalar_one()
    assert len(entry.dlq_entry_id) <= 255
    assert entry.dlq_entry_id.startswith("dlq_")
    assert event_id not in entry.dlq_entry_id
    assert _ledger_status(db, event_id) == WebhookEventStatus.FAILED_TO_DLQ.value


def test_readiness_follows_the_ledger_database(client, monkeypatch):
    from app.interfaces.api import health

    monkeypatch.setattr(health, "_probe_ledger_database", lambda: {"status": "down", "latency_ms": None})
    not_ready = client.get("/ready")
    monkeypatch.setattr(health, "_probe_ledger_database", lambda: {"status": "up", "latency_ms": 1.0})
    ready = client.get("/ready")

    assert not_ready.status_code == 503
    assert not_ready.json()["status"] == "not_ready"
    assert ready.status_code == 200
    assert ready.json()["status"] == "ready"


def test_error_payload_carries_request_id(client):
    response = client.get("/webhooks/paddle", headers={"X-Request-ID": "req-123"})

    assert response.status_code == 405
    assert response.json()["trace_id"] == "req-123"
    assert response.headers["X-Request-ID"] == "req-123"
