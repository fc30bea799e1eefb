"""Denormalized per-tenant subscription mirror read by plan enforcement."""

from datetime import UTC, datetime

from sqlalchemy.orm import Session

from app.domain.models.subscription import Subscription
from app.infrastructure.db.conditional_writes import translate_storage_errors, upsert

MIRROR_FIELDS = {
    "subscription_id",
    "paddle_customer_id",
    "current_plan",
    "subscription_status",
    "next_billing_date",
    "scheduled_change_id",
    "canceled_at",
}


def upsert_subscription(db: Session, company_id: str, **fields) -> None:
    """Last-writer-wins merge; columns not passed keep their stored value."""
    unknown = set(fields) - MIRROR_FIELDS
    if unknown:
        raise ValueError(f"Unknown subscription fields: {', '.join(sorted(unknown))}")

    now = datetime.now(UTC)
    values = {"company_id": company_id, **fields, "updated_at": now}
    upsert(db, Subscription, values, update_columns=[*fields, "updated_at"])


def get_subscription(db: Session, company_id: str) -> Subscription | None:
    with translate_storage_errors("subscription_read"):
        return db.get(Subscription, company_id, populate_existing=True)
