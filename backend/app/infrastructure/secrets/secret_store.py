import logging
import os
from typing import Protocol

from app.core.config import Settings, settings

logger = logging.getLogger(__name__)


class SecretStore(Protocol):
    def get_secret(self, name: str) -> str | None:
        ...


def secret_env_var_name(name: str) -> str:
    # "paddle/webhook-secret" -> "PADDLE_WEBHOOK_SECRET"
    return name.upper().replace("/", "_").replace("-", "_")


class EnvironmentSecretStore:
    """Resolves secrets from application settings, then the process environment."""

    def __init__(self, app_settings: Settings | None = None) -> None:
        self._settings = app_settings or settings

    def get_secret(self, name: str) -> str | None:
        env_name = secret_env_var_name(name)
        value = getattr(self._settings, env_name.lower(), None) or os.getenv(env_name)
        if not value:
            logger.warning("secret_not_found name=%s env=%s", name, env_name)
            return None
        return str(value)


def get_secret_store() -> SecretStore:
    return EnvironmentSecretStore()
