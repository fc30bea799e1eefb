import os
from datetime import UTC, datetime, timedelta

import pytest
from sqlalchemy import create_engine, select, text
from sqlalchemy.exc import DataError, IntegrityError, OperationalError
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app.application.services import webhook_ledger_service as ledger
from app.domain.errors import StoreConflictError, TransientStoreError, error_category, is_retryable
from app.domain.models.webhook_event import WebhookEvent, WebhookEventStatus
from app.infrastructure.db.base import Base
from app.infrastructure.db.conditional_writes import translate_storage_errors

TEST_DATABASE_URL = os.getenv("TEST_DATABASE_URL", "")


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
def db(db_engine):
    Session = sessionmaker(bind=db_engine, autocommit=False, autoflush=False, expire_on_commit=False)
    session = Session()
    try:
        yield session
    finally:
        session.close()


def _record(db, event_id: str = "evt_1", **overrides) -> bool:
    values = {
        "event_id": event_id,
        "event_type": "subscription.activated",
        "payload": '{"event_id": "%s"}' % event_id,
        "tenant_id": "t1",
    }
    values.update(overrides)
    written = ledger.record_received(db, **values)
    db.commit()
    return written


def test_record_received_writes_processing_row(db):
    assert _record(db) is True

    event = ledger.get_event(db, "evt_1")
    assert event.status == WebhookEventStatus.PROCESSING.value
    assert event.tenant_id == "t1"
    assert ledger.is_processed(db, "evt_1") is False
    assert ledger.is_processed(db, "evt_unknown") is False


def test_processing_row_may_be_rewritten_by_redelivery(db):
    _record(db)
    assert _record(db, payload='{"event_id": "evt_1", "retry": true}') is True

    rows = db.execute(select(WebhookEvent)).scalars().all()
    assert len(rows) == 1
    assert ledger.get_event(db, "evt_1").payload.endswith("true}")


def test_terminal_rows_are_never_rewritten(db):
    _record(db)
    assert ledger.mark_terminal(db, "evt_1", WebhookEventStatus.PROCESSED.value) is True
    db.commit()
    assert ledger.is_processed(db, "evt_1") is True

    assert _record(db) is False
    assert ledger.get_event(db, "evt_1").status == WebhookEventStatus.PROCESSED.value

    assert ledger.mark_terminal(db, "evt_1", WebhookEventStatus.FAILED_TO_DLQ.value, "late failure") is False
    db.commit()
    event = ledger.get_event(db, "evt_1")
    assert event.status == WebhookEventStatus.PROCESSED.value
    assert event.error is None


def test_failed_to_dlq_counts_as_processed(db):
    _record(db, "evt_2")
    ledger.mark_terminal(db, "evt_2", WebhookEventStatus.FAILED_TO_DLQ.value, "x" * 5000)
    db.commit()

    event = ledger.get_event(db, "evt_2")
    assert ledger.is_processed(db, "evt_2") is True
    assert len(event.error) == ledger.MAX_ERROR_LENGTH


def test_mark_terminal_rejects_non_terminal_status(db):
    _record(db)
    with pytest.raises(ValueError):
        ledger.mark_terminal(db, "evt_1", WebhookEventStatus.PROCESSING.value)


def test_purge_expired_removes_only_old_rows(db):
    now = datetime.now(UTC)
    _record(db, "evt_old", now=now - timedelta(days=120))
    _record(db, "evt_new", now=now)

    assert ledger.purge_expired(db, now=now) == 1
    db.commit()

    remaining = db.execute(select(WebhookEvent.event_id)).scalars().all()
    assert remaining == ["evt_new"]


def test_storage_errors_are_classified():
    with pytest.raises(TransientStoreError):
        with translate_storage_errors("ledger_write"):
            raise OperationalError("INSERT", {}, Exception("server closed the connection"))

    with pytest.raises(StoreConflictError) as conflict:
        with translate_storage_errors("ledger_write"):
            raise IntegrityError("INSERT", {}, Exception("violates foreign key constraint"))
    assert is_retryable(conflict.value) is False
    assert error_category(conflict.value) == "conflict"

    with pytest.raises(DataError):
        with translate_storage_errors("ledger_write"):
            raise DataError("INSERT", {}, Exception("value too long"))
