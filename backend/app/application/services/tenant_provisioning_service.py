"""Creates or reconciles a tenant when its subscription starts.

Safe under duplicate delivery, out-of-order ``created`` / ``activated``
notifications, concurrent notifications for the same tenant and partial
completion of an earlier attempt: every row that must exist exactly once is
written through ``create_if_absent`` and a lost race counts as success.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import UTC, datetime

from sqlalchemy import update
from sqlalchemy.orm import Session

from app.application.services.audit_service import log_audit_event
from app.application.services.paddle_payload import (
    TENANT_ID_KEYS,
    TENANT_NAME_KEYS,
    custom_data,
    event_data,
    first_text,
    nested,
    parse_timestamp,
)
from app.application.services.plan_catalog import first_price_id, resolve_tier
from app.application.services.subscription_store import upsert_subscription
from app.domain.errors import WebhookValidationError
from app.domain.models.company import Company, SubscriptionStatus
from app.domain.models.company_user import CompanyUser, UserRole
from app.domain.models.contractor import Contractor
from app.domain.models.project import Project
from app.infrastructure.db.conditional_writes import create_if_absent, translate_storage_errors

logger = logging.getLogger(__name__)

SYSTEM_PROJECT_ID = "proj_GENERAL_EXPENSES"
SYSTEM_PROJECT_NAME = "הוצאות כלליות"
SYSTEM_PROJECT_DESCRIPTION = "הוצאות שאינן משויכות לפרויקט ספציפי"
SYSTEM_CONTRACTOR_ID = "cont_GENERAL"
SYSTEM_CONTRACTOR_NAME = "ספק כללי"
SYSTEM_CONTRACTOR_SPECIALTY = "כללי"
SYSTEM_CONTRACTOR_NOTES = "ספק ברירת מחדל עבור הוצאות ללא ספק מזוהה"


@dataclass(frozen=True)
class TenantMetadata:
    company_id: str
    user_id: str
    company_name: str
    tier_hint: str | None = None
    user_email: str | None = None
    description: str = ""
    industry: str = ""
    company_address: str = ""
    company_phone: str = ""
    company_email: str | None = None
    logo_url: str = ""


@dataclass(frozen=True)
class ProvisioningResult:
    company_id: str
    tier: str
    company_created: bool
    admin_created: bool
    system_entities_created: int


def _text(values: dict, key: str) -> str:
    value = values.get(key)
    return str(value).strip() if value is not None else ""


def extract_tenant_metadata(payload: dict) -> TenantMetadata:
    values = custom_data(payload)
    company_id = first_text(values, TENANT_ID_KEYS)
    user_id = _text(values, "userId")
    company_name = first_text(values, TENANT_NAME_KEYS)

    required = (("companyId", company_id), ("userId", user_id), ("companyName", company_name))
    missing = [name for name, value in required if not value]
    if missing:
        raise WebhookValidationError(f"Missing required custom_data fields: {', '.join(missing)}")

    return TenantMetadata(
        company_id=company_id,
        user_id=user_id,
        company_name=company_name,
        tier_hint=_text(values, "subscriptionTier") or None,
        user_email=_text(values, "userEmail") or None,
        description=_text(values, "description"),
        industry=_text(values, "industry"),
        company_address=_text(values, "companyAddress"),
        company_phone=_text(values, "companyPhone"),
        company_email=_text(values, "companyEmail") or _text(values, "userEmail") or None,
        logo_url=_text(values, "logoUrl"),
    )


def _create_system_entities(db: Session, *, company_id: str, user_id: str, now: datetime) -> int:
    created = 0
    project = create_if_absent(
        db,
        Project,
        {
            "company_id": company_id,
            "project_id": SYSTEM_PROJECT_ID,
            "user_id": user_id,
            "name": SYSTEM_PROJECT_NAME,
            "description": SYSTEM_PROJECT_DESCRIPTION,
            "is_system_project": True,
            "status": "active",
            "start_date": now,
            "budget": 0,
            "spent_amount": 0,
            "created_at": now,
            "updated_at": now,
        },
    )
    created += int(project.created)

    contractor = create_if_absent(
        db,
        Contractor,
        {
            "company_id": company_id,
            "contractor_id": SYSTEM_CONTRACTOR_ID,
            "user_id": user_id,
            "name": SYSTEM_CONTRACTOR_NAME,
            "specialty": SYSTEM_CONTRACTOR_SPECIALTY,
            "notes": SYSTEM_CONTRACTOR_NOTES,
            "is_system_contractor": True,
            "status": "active",
            "created_at": now,
            "updated_at": now,
        },
    )
    created += int(contractor.created)
    return created


def provision_tenant(db: Session, payload: dict, *, subscription_status: str, event_id: str | None = None) -> ProvisioningResult:
    metadata = extract_tenant_metadata(payload)
    data = event_data(payload)
    tier = resolve_tier(first_price_id(data), metadata.tier_hint)
    subscription_id = str(data.get("id") or "") or None
    customer_id = str(data.get("customer_id") or "") or None
    next_billing_date = parse_timestamp(data.get("next_billed_at"))
    started_at = parse_timestamp(data.get("started_at"))
    scheduled_change_id = nested(data, "scheduled_change", "id")
    now = datetime.now(UTC)

    with translate_storage_errors("company_read"):
        company = db.get(Company, metadata.company_id, populate_existing=True)

    company_created = False
    if company is None:
        result = create_if_absent(
            db,
            Company,
            {
                "company_id": metadata.company_id,
                "name": metadata.company_name,
                "description": metadata.description,
                "industry": metadata.industry,
                "company_address": metadata.company_address,
                "company_phone": metadata.company_phone,
                "company_email": metadata.company_email,
                "logo_url": metadata.logo_url,
                "subscription_tier": tier,
                "subscription_status": subscription_status,
                "subscription_id": subscription_id,
                "paddle_customer_id": customer_id,
                "next_billing_date": next_billing_date,
                "trial_start_date": started_at if subscription_status == SubscriptionStatus.TRIALING.value else None,
                "trial_end_date": next_billing_date if subscription_status == SubscriptionStatus.TRIALING.value else None,
                "current_users": 1,
                "current_projects": 0,
                "current_month_expenses": 0,
                "created_at": now,
                "updated_at": now,
            },
        )
        company_created = result.created
        if not company_created:
            logger.info("company_create_conflict company_id=%s event_id=%s", metadata.company_id, event_id)
    else:
        with translate_storage_errors("company_update"):
            db.execute(
                update(Company.__table__)
                .where(Company.company_id == metadata.company_id)
                .values(
                    subscription_tier=tier,
                    subscription_status=subscription_status,
                    subscription_id=subscription_id or company.subscription_id,
                    paddle_customer_id=customer_id or company.paddle_customer_id,
                    next_billing_date=next_billing_date or company.next_billing_date,
                    updated_at=now,
                )
            )

    admin = create_if_absent(
        db,
        CompanyUser,
        {
            "company_id": metadata.company_id,
            "user_id": metadata.user_id,
            "email": metadata.user_email,
            "name": "",
            "role": UserRole.ADMIN.value,
            "status": "active",
            "created_at": now,
            "updated_at": now,
        },
    )

    system_entities_created = 0
    if company_created:
        system_entities_created = _create_system_entities(db, company_id=metadata.company_id, user_id=metadata.user_id, now=now)

    upsert_subscription(
        db,
        metadata.company_id,
        subscription_id=subscription_id,
        paddle_customer_id=customer_id,
        current_plan=tier,
        subscription_status=subscription_status,
        next_billing_date=next_billing_date,
        scheduled_change_id=str(scheduled_change_id) if scheduled_change_id else None,
    )

    log_audit_event(
        db,
        company_id=metadata.company_id,
        action="billing.tenant_provisioned" if company_created else "billing.tenant_reconciled",
        metadata={
            "event_id": event_id,
            "tier": tier,
            "subscription_status": subscription_status,
            "admin_created": admin.created,
            "system_entities_created": system_entities_created,
        },
    )
    logger.info(
        "tenant_provisioning_completed company_id=%s tier=%s company_created=%s admin_created=%s",
        metadata.company_id,
        tier,
        company_created,
        admin.created,
    )
    return ProvisioningResult(
        company_id=metadata.company_id,
        tier=tier,
        company_created=company_created,
        admin_created=admin.created,
        system_entities_created=system_entities_created,
    )


def handle_subscription_activated(db: Session, payload: dict) -> ProvisioningResult:
    return provision_tenant(db, payload, subscription_status=SubscriptionStatus.ACTIVE.value, event_id=payload.get("event_id"))


def handle_subscription_created(db: Session, payload: dict) -> ProvisioningResult:
    status_value = str(event_data(payload).get("status") or SubscriptionStatus.TRIALING.value)
    return provision_tenant(db, payload, subscription_status=status_value, event_id=payload.get("event_id"))
