from __future__ import annotations

from datetime import UTC, datetime

from app.domain.errors import WebhookValidationError


def event_data(payload: dict) -> dict:
    data = payload.get("data")
    return data if isinstance(data, dict) else {}


def custom_data(payload: dict) -> dict:
    value = event_data(payload).get("custom_data")
    return value if isinstance(value, dict) else {}


TENANT_ID_KEYS = ("companyId", "tenantId")
TENANT_NAME_KEYS = ("companyName", "tenantName")


def first_text(values: dict, keys: tuple[str, ...]) -> str:
    """First non-blank value among ``keys``; checkout clients send either naming."""
    for key in keys:
        value = values.get(key)
        if value is not None and str(value).strip():
            return str(value).strip()
    return ""


def tenant_id_of(payload: dict) -> str | None:
    return first_text(custom_data(payload), TENANT_ID_KEYS) or None


def parse_timestamp(value) -> datetime | None:
    """Parses the provider's RFC 3339 timestamps; unix seconds are accepted too."""
    if value in (None, ""):
        return None
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value, tz=UTC)
    try:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError as exc:
        raise WebhookValidationError(f"Invalid timestamp '{value}'") from exc
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def nested(data: dict, *path: str):
    current = data
    for key in path:
        if not isinstance(current, dict):
            return None
        current = current.get(key)
    return current
