from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    app_name: str = "Expense Ledger"
    app_env: str = "development"
    api_host: str = "0.0.0.0"
    api_port: int = 8000

    postgres_host: str = "localhost"
    postgres_port: int = 5432
    postgres_db: str = "expense_ledger"
    postgres_user: str = "expense_ledger"
    postgres_password: str = "expense_ledger"

    redis_host: str = "localhost"
    redis_port: int = 6379

    database_url: str | None = None
    redis_url: str | None = None
    worker_heartbeat_key: str = "worker:heartbeat"
    worker_heartbeat_ttl_seconds: int = 45

    paddle_webhook_secret: str | None = None
    webhook_secret_name: str = "paddle/webhook-secret"
    webhook_signature_scheme: str = "paddle"
    webhook_tolerance_seconds: int = 300
    secret_cache_ttl_seconds: int = 300

    webhook_retry_max_attempts: int = 5
    webhook_retry_base_delay_seconds: float = 1.0
    webhook_retry_max_delay_seconds: float = 16.0
    webhook_retry_budget_seconds: float = 25.0
    webhook_retry_jitter_ratio: float = 0.0
    webhook_event_ttl_days: int = 90

    paddle_price_id_starter: str = "pri_01kdwqn0d0ebbev71xa0v6e2hd"
    paddle_price_id_professional: str = "pri_01kdwqsgm7mcr7myg3cxnrxt9y"
    paddle_price_id_enterprise: str = "pri_01kdwqwn1e1z4xc93rgstytpj1"
    paddle_legacy_price_ids: str = (
        "pri_01k9f1wq2ffpb9abm3kcr9t77f=starter,"
        "pri_01k9f1y03zd5f3cxwnnza118r2=professional,"
        "pri_01k9f1yt0hm9767jh0htqbp6t1=enterprise"
    )

    ops_api_token: str | None = None

    @property
    def legacy_price_tier_map(self) -> dict[str, str]:
        mapping: dict[str, str] = {}
        for chunk in self.paddle_legacy_price_ids.split(","):
            if "=" not in chunk:
                continue
            price_id, tier = chunk.split("=", 1)
            if price_id.strip() and tier.strip():
                mapping[price_id.strip()] = tier.strip().lower()
        return mapping

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    @property
    def sqlalchemy_database_uri(self) -> str:
        if self.database_url:
            return self.database_url
        return (
            f"postgresql+psycopg://{self.postgres_user}:{self.postgres_password}"
            f"@{self.postgres_host}:{self.postgres_port}/{self.postgres_db}"
        )

    @property
    def cache_redis_url(self) -> str:
        if self.redis_url:
            return self.redis_url
        return f"redis://{self.redis_host}:{self.redis_port}/0"


settings = Settings()
