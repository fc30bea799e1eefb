from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from enum import StrEnum
from typing import Any

from sqlalchemy.orm import Session

from app.application.services import billing_lifecycle_service, tenant_provisioning_service

logger = logging.getLogger(__name__)

Handler = Callable[[Session, dict], Any]


class WebhookEventKind(StrEnum):
    SUBSCRIPTION_CREATED = "subscription.created"
    SUBSCRIPTION_ACTIVATED = "subscription.activated"
    SUBSCRIPTION_UPDATED = "subscription.updated"
    SUBSCRIPTION_CANCELED = "subscription.canceled"
    SUBSCRIPTION_PAST_DUE = "subscription.past_due"
    TRANSACTION_COMPLETED = "transaction.completed"
    TRANSACTION_PAYMENT_FAILED = "transaction.payment_failed"
    UNRECOGNIZED = "unrecognized"


HANDLERS: dict[WebhookEventKind, Handler] = {
    WebhookEventKind.SUBSCRIPTION_CREATED: tenant_provisioning_service.handle_subscription_created,
    WebhookEventKind.SUBSCRIPTION_ACTIVATED: tenant_provisioning_service.handle_subscription_activated,
    WebhookEventKind.SUBSCRIPTION_UPDATED: billing_lifecycle_service.handle_subscription_updated,
    WebhookEventKind.SUBSCRIPTION_CANCELED: billing_lifecycle_service.handle_subscription_canceled,
    WebhookEventKind.SUBSCRIPTION_PAST_DUE: billing_lifecycle_service.handle_subscription_past_due,
    WebhookEventKind.TRANSACTION_COMPLETED: billing_lifecycle_service.handle_transaction_completed,
    WebhookEventKind.TRANSACTION_PAYMENT_FAILED: billing_lifecycle_service.handle_transaction_payment_failed,
}

# Tenant-creating kinds; everything else runs once.
RETRIED_KINDS = frozenset({WebhookEventKind.SUBSCRIPTION_CREATED, WebhookEventKind.SUBSCRIPTION_ACTIVATED})


@dataclass(frozen=True)
class RoutedEvent:
    kind: WebhookEventKind
    event_type: str
    handler: Handler | None
    retried: bool

    @property
    def recognized(self) -> bool:
        return self.handler is not None

    def attempt(self, db: Session, payload: dict) -> Any:
        """One transactional handler run; rolled back on any failure."""
        if self.handler is None:
            raise LookupError(f"No handler for event type '{self.event_type}'")
        try:
            result = self.handler(db, payload)
            db.commit()
        except Exception:
            db.rollback()
            raise
        return result


def parse_event_kind(event_type: str | None) -> WebhookEventKind:
    try:
        kind = WebhookEventKind(str(event_type or ""))
    except ValueError:
        return WebhookEventKind.UNRECOGNIZED
    return kind


def route(event_type: str | None) -> RoutedEvent:
    kind = parse_event_kind(event_type)
    handler = HANDLERS.get(kind)
    if handler is None:
        logger.info("webhook_event_unrecognized event_type=%s", event_type)
    return RoutedEvent(kind=kind, event_type=str(event_type or ""), handler=handler, retried=kind in RETRIED_KINDS)
