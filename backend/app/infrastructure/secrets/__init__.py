from app.infrastructure.secrets.secret_store import (
    EnvironmentSecretStore,
    SecretStore,
    get_secret_store,
)

__all__ = ["EnvironmentSecretStore", "SecretStore", "get_secret_store"]
