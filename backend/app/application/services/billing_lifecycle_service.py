"""Handlers for subscription and transaction notifications after provisioning.

These run once without retries; a notification without a company id is
acknowledged as a no-op.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime

from sqlalchemy import update
from sqlalchemy.orm import Session

from app.application.services.audit_service import log_audit_event
from app.application.services.paddle_payload import event_data, nested, parse_timestamp, tenant_id_of
from app.application.services.plan_catalog import first_price_id, resolve_tier
from app.application.services.subscription_store import upsert_subscription
from app.domain.models.company import Company, SubscriptionStatus
from app.domain.models.payment import Payment
from app.infrastructure.db.conditional_writes import translate_storage_errors, upsert

logger = logging.getLogger(__name__)

PAYMENT_COMPLETED = "completed"
PAYMENT_FAILED = "failed"


def _update_company(db: Session, company_id: str, **values) -> bool:
    with translate_storage_errors("company_update"):
        result = db.execute(
            update(Company.__table__)
            .where(Company.company_id == company_id)
            .values(**values, updated_at=datetime.now(UTC))
        )
    if not result.rowcount:
        logger.info("company_missing_for_lifecycle_event company_id=%s", company_id)
        return False
    return True


def _company_id_or_skip(payload: dict) -> str | None:
    company_id = tenant_id_of(payload)
    if company_id is None:
        logger.warning(
            "lifecycle_event_missing_company_id event_id=%s event_type=%s",
            payload.get("event_id"),
            payload.get("event_type"),
        )
    return company_id


def handle_subscription_updated(db: Session, payload: dict) -> dict:
    company_id = _company_id_or_skip(payload)
    if company_id is None:
        return {"skipped": True}

    data = event_data(payload)
    tier = resolve_tier(first_price_id(data), None)
    status_value = str(data.get("status") or SubscriptionStatus.ACTIVE.value)
    next_billing_date = parse_timestamp(data.get("next_billed_at"))

    upsert_subscription(
        db,
        company_id,
        subscription_id=str(data.get("id") or "") or None,
        current_plan=tier,
        subscription_status=status_value,
        next_billing_date=next_billing_date,
        scheduled_change_id=nested(data, "scheduled_change", "id"),
    )
    company_updated = _update_company(
        db,
        company_id,
        subscription_tier=tier,
        subscription_status=status_value,
        next_billing_date=next_billing_date,
    )
    log_audit_event(
        db,
        company_id=company_id,
        action="billing.subscription_updated",
        metadata={"event_id": payload.get("event_id"), "tier": tier, "subscription_status": status_value},
    )
    return {"company_id": company_id, "tier": tier, "company_updated": company_updated}


def handle_subscription_canceled(db: Session, payload: dict) -> dict:
    company_id = _company_id_or_skip(payload)
    if company_id is None:
        return {"skipped": True}

    data = event_data(payload)
    canceled_at = parse_timestamp(data.get("canceled_at")) or datetime.now(UTC)
    upsert_subscription(
        db,
        company_id,
        subscription_status=SubscriptionStatus.CANCELED.value,
        canceled_at=canceled_at,
    )
    company_updated = _update_company(db, company_id, subscription_status=SubscriptionStatus.CANCELED.value)
    log_audit_event(
        db,
        company_id=company_id,
        action="billing.subscription_canceled",
        metadata={"event_id": payload.get("event_id"), "canceled_at": canceled_at.isoformat()},
    )
    return {"company_id": company_id, "company_updated": company_updated}


def handle_subscription_past_due(db: Session, payload: dict) -> dict:
    company_id = _company_id_or_skip(payload)
    if company_id is None:
        return {"skipped": True}

    upsert_subscription(db, company_id, subscription_status=SubscriptionStatus.PAST_DUE.value)
    company_updated = _update_company(db, company_id, subscription_status=SubscriptionStatus.PAST_DUE.value)
    log_audit_event(
        db,
        company_id=company_id,
        action="billing.payment_past_due",
        metadata={"event_id": payload.get("event_id")},
    )
    return {"company_id": company_id, "company_updated": company_updated}


def _record_payment(db: Session, payload: dict, *, payment_status: str) -> dict:
    company_id = _company_id_or_skip(payload)
    if company_id is None:
        return {"skipped": True}

    data = event_data(payload)
    payment_id = str(data.get("id") or "") or str(payload.get("event_id"))
    payments = data.get("payments") if isinstance(data.get("payments"), list) else []
    first_payment = payments[0] if payments and isinstance(payments[0], dict) else {}
    total = nested(data, "details", "totals", "total")

    upsert(
        db,
        Payment,
        {
            "payment_id": payment_id,
            "company_id": company_id,
            "subscription_id": str(data.get("subscription_id") or "") or None,
            "amount": str(total) if total is not None else None,
            "currency": str(data.get("currency_code") or "") or None,
            "status": payment_status,
            "payment_method": str(first_payment.get("payment_method_id") or "") or None,
            "paid_at": parse_timestamp(data.get("billed_at")) if payment_status == PAYMENT_COMPLETED else None,
            "created_at": datetime.now(UTC),
        },
        update_columns=["subscription_id", "amount", "currency", "status", "payment_method", "paid_at"],
    )
    if payment_status == PAYMENT_FAILED:
        log_audit_event(
            db,
            company_id=company_id,
            action="billing.payment_failed",
            metadata={"event_id": payload.get("event_id"), "payment_id": payment_id},
        )
    logger.info("payment_recorded company_id=%s payment_id=%s status=%s", company_id, payment_id, payment_status)
    return {"company_id": company_id, "payment_id": payment_id, "status": payment_status}


def handle_transaction_completed(db: Session, payload: dict) -> dict:
    return _record_payment(db, payload, payment_status=PAYMENT_COMPLETED)


def handle_transaction_payment_failed(db: Session, payload: dict) -> dict:
    return _record_payment(db, payload, payment_status=PAYMENT_FAILED)
