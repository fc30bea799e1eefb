import base64
import hashlib
import hmac

import pytest

from app.application.services.webhook_signature_service import (
    SCHEME_HMAC,
    SCHEME_STANDARD,
    SecretCache,
    WebhookSignatureVerifier,
)
from app.core.config import Settings
from app.domain.errors import WebhookAuthenticationError
from app.infrastructure.secrets.secret_store import EnvironmentSecretStore, secret_env_var_name

SECRET_NAME = "paddle/webhook-secret"
PADDLE_SECRET = "pdl_ntfset_test_secret"
NOW = 1_760_000_000
BODY = b'{"event_id":"evt_1","event_type":"subscription.activated","data":{}}'


class StaticSecretStore:
    def __init__(self, secrets: dict[str, str]):
        self.secrets = secrets
        self.calls = 0

    def get_secret(self, name: str) -> str | None:
        self.calls += 1
        return self.secrets.get(name)


class BrokenSecretStore:
    def get_secret(self, name: str) -> str | None:
        raise ConnectionError("secret manager unreachable")


def _verifier(secret: str | None = PADDLE_SECRET, *, scheme: str = "paddle", tolerance_seconds: int = 300):
    store = StaticSecretStore({SECRET_NAME: secret} if secret else {})
    return WebhookSignatureVerifier(
        secret_cache=SecretCache(store, ttl_seconds=300),
        secret_name=SECRET_NAME,
        scheme=scheme,
        tolerance_seconds=tolerance_seconds,
        clock=lambda: NOW,
    )


def _paddle_header(body: bytes, *, secret: str = PADDLE_SECRET, timestamp: int = NOW) -> str:
    digest = hmac.new(secret.encode("utf-8"), f"{timestamp}:".encode("utf-8") + body, hashlib.sha256).hexdigest()
    return f"ts={timestamp};h1={digest}"


def test_paddle_signature_accepts_valid_and_rejects_tampered_body():
    verifier = _verifier()
    header = _paddle_header(BODY)

    assert verifier.verify(BODY, {"Paddle-Signature": header}) is True
    assert verifier.verify(BODY + b" ", {"Paddle-Signature": header}) is False


def test_paddle_signature_accepts_any_matching_h1_candidate():
    verifier = _verifier()
    valid = _paddle_header(BODY).split(";h1=")[1]
    header = f"ts={NOW};h1={'0' * 64};h1={valid}"

    assert verifier.verify(BODY, {"paddle-signature": header}) is True


def test_paddle_signature_rejects_missing_header_missing_secret_and_stale_timestamp():
    assert _verifier().verify(BODY, {}) is False
    assert _verifier(secret=None).verify(BODY, {"Paddle-Signature": _paddle_header(BODY)}) is False

    stale = _paddle_header(BODY, timestamp=NOW - 3600)
    assert _verifier().verify(BODY, {"Paddle-Signature": stale}) is False
    assert _verifier(tolerance_seconds=0).verify(BODY, {"Paddle-Signature": stale}) is True


def test_require_valid_raises_authentication_error():
    with pytest.raises(WebhookAuthenticationError):
        _verifier().require_valid(BODY, {"Paddle-Signature": f"ts={NOW};h1=deadbeef"})


def test_standard_webhook_signature_with_versioned_candidates():
    key = b"standard-webhooks-key"
    secret = "whsec_" + base64.b64encode(key).decode("ascii")
    verifier = _verifier(secret, scheme=SCHEME_STANDARD)
    signed = f"msg_1.{NOW}.".encode("utf-8") + BODY
    signature = base64.b64encode(hmac.new(key, signed, hashlib.sha256).digest()).decode("ascii")

    headers = {"webhook-id": "msg_1", "webhook-timestamp": str(NOW), "webhook-signature": f"v1,bogus v1,{signature}"}
    assert verifier.verify(BODY, headers) is True

    svix_headers = {"svix-id": "msg_1", "svix-timestamp": str(NOW), "svix-signature": f"v1,{signature}"}
    assert verifier.verify(BODY, svix_headers) is True

    wrong_version = {**headers, "webhook-signature": f"v2,{signature}"}
    assert verifier.verify(BODY, wrong_version) is False

    missing_id = {"webhook-timestamp": str(NOW), "webhook-signature": f"v1,{signature}"}
    assert verifier.verify(BODY, missing_id) is False


def test_body_hmac_signature_bare_and_versioned():
    verifier = _verifier("plain-secret", scheme=SCHEME_HMAC)
    digest = hmac.new(b"plain-secret", BODY, hashlib.sha256).hexdigest()

    assert verifier.verify(BODY, {"X-Signature": digest}) is True
    assert verifier.verify(BODY, {"X-Signature": f"v1,{digest}"}) is True
    assert verifier.verify(BODY, {"X-Signature": "v1,abc"}) is False


def test_unknown_scheme_is_rejected_at_construction():
    with pytest.raises(ValueError):
        _verifier(scheme="md5")


def test_secret_cache_reuses_value_until_ttl_expires():
    now = [100.0]
    store = StaticSecretStore({SECRET_NAME: "abc"})
    cache = SecretCache(store, ttl_seconds=60, clock=lambda: now[0])

    assert cache.get(SECRET_NAME) == "abc"
    assert cache.get(SECRET_NAME) == "abc"
    assert store.calls == 1

    now[0] += 61
    store.secrets[SECRET_NAME] = "rotated"
    assert cache.get(SECRET_NAME) == "rotated"
    assert store.calls == 2

    cache.invalidate(SECRET_NAME)
    cache.get(SECRET_NAME)
    assert store.calls == 3


def test_secret_cache_treats_store_failure_as_missing_secret():
    cache = SecretCache(BrokenSecretStore(), ttl_seconds=60)
    assert cache.get(SECRET_NAME) is None

    verifier = WebhookSignatureVerifier(secret_cache=cache, secret_name=SECRET_NAME, clock=lambda: NOW)
    assert verifier.verify(BODY, {"Paddle-Signature": _paddle_header(BODY)}) is False


def test_environment_secret_store_prefers_settings_then_environment(monkeypatch):
    assert secret_env_var_name(SECRET_NAME) == "PADDLE_WEBHOOK_SECRET"

    from_settings = EnvironmentSecretStore(Settings(paddle_webhook_secret="from-settings"))
    assert from_settings.get_secret(SECRET_NAME) == "from-settings"

    monkeypatch.setenv("PADDLE_WEBHOOK_SECRET", "from-env")
    from_env = EnvironmentSecretStore(Settings(paddle_webhook_secret=None))
    assert from_env.get_secret(SECRET_NAME) == "from-env"

    monkeypatch.delenv("PADDLE_WEBHOOK_SECRET")
    assert EnvironmentSecretStore(Settings(paddle_webhook_secret=None)).get_secret(SECRET_NAME) is None
