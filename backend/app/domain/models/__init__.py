from app.domain.models.audit_log import AuditLog
from app.domain.models.company import Company, SubscriptionStatus, SubscriptionTier
from app.domain.models.company_user import CompanyUser, UserRole
from app.domain.models.contractor import Contractor
from app.domain.models.payment import Payment
from app.domain.models.project import Project
from app.domain.models.subscription import Subscription
from app.domain.models.webhook_dead_letter import DeadLetterStatus, WebhookDeadLetter
from app.domain.models.webhook_event import TERMINAL_STATUSES, WebhookEvent, WebhookEventStatus

__all__ = [
    "AuditLog",
    "Company",
    "CompanyUser",
    "Contractor",
    "DeadLetterStatus",
    "Payment",
    "Project",
    "Subscription",
    "SubscriptionStatus",
    "SubscriptionTier",
    "TERMINAL_STATUSES",
    "UserRole",
    "WebhookDeadLetter",
    "WebhookEvent",
    "WebhookEventStatus",
]
