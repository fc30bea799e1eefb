"""Maps billing-provider price ids to subscription tiers."""

import logging

from app.core.config import Settings, settings
from app.domain.models.company import SubscriptionTier

logger = logging.getLogger(__name__)

DEFAULT_TIER = SubscriptionTier.STARTER.value
PAID_TIERS = {
    SubscriptionTier.STARTER.value,
    SubscriptionTier.PROFESSIONAL.value,
    SubscriptionTier.ENTERPRISE.value,
}


def price_tier_map(app_settings: Settings = settings) -> dict[str, str]:
    mapping = dict(app_settings.legacy_price_tier_map)
    mapping.update(
        {
            app_settings.paddle_price_id_starter: SubscriptionTier.STARTER.value,
            app_settings.paddle_price_id_professional: SubscriptionTier.PROFESSIONAL.value,
            app_settings.paddle_price_id_enterprise: SubscriptionTier.ENTERPRISE.value,
        }
    )
    return {price_id: tier for price_id, tier in mapping.items() if price_id}


def first_price_id(data: dict) -> str | None:
    items = data.get("items") if isinstance(data, dict) else None
    if not isinstance(items, list) or not items:
        return None
    first = items[0] if isinstance(items[0], dict) else {}
    price = first.get("price") if isinstance(first.get("price"), dict) else {}
    price_id = price.get("id") or first.get("price_id")
    return str(price_id) if price_id else None


def resolve_tier(price_id: str | None, hint: str | None = None, *, app_settings: Settings = settings) -> str:
    """Tier for ``price_id``; falls back to ``hint`` and then to starter."""
    if price_id:
        tier = price_tier_map(app_settings).get(price_id)
        if tier:
            return tier
        logger.warning("unknown_price_id price_id=%s hint=%s", price_id, hint)

    normalized_hint = (hint or "").strip().lower()
    if normalized_hint in PAID_TIERS:
        return normalized_hint
    return DEFAULT_TIER
