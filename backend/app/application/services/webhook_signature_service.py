"""Authenticates inbound billing notifications.

Three signing schemes are understood:

* ``paddle``: ``Paddle-Signature: ts=<unix>;h1=<hex>`` over ``"{ts}:{body}"``.
* ``standard``: Standard Webhooks (Svix) ``webhook-id`` / ``webhook-timestamp`` /
  ``webhook-signature`` triplet over ``"{id}.{timestamp}.{body}"``, base64 digest,
  header holding space separated ``v1,<signature>`` candidates.
* ``hmac``: plain HMAC of the body, hex digest, bare or ``v1,<signature>``.

All schemes use HMAC-SHA256 and a secret resolved through a ``SecretStore``.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import logging
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from functools import lru_cache

from app.core.config import settings
from app.domain.errors import WebhookAuthenticationError
from app.infrastructure.observability.metrics import WEBHOOK_SIGNATURE_REJECTIONS_TOTAL
from app.infrastructure.secrets import SecretStore, get_secret_store

logger = logging.getLogger(__name__)

SCHEME_PADDLE = "paddle"
SCHEME_STANDARD = "standard"
SCHEME_HMAC = "hmac"
SUPPORTED_SCHEMES = {SCHEME_PADDLE, SCHEME_STANDARD, SCHEME_HMAC}

PADDLE_SIGNATURE_HEADER = "paddle-signature"
HMAC_SIGNATURE_HEADER = "x-signature"
STANDARD_HEADER_PREFIXES = ("webhook-", "svix-")
SIGNATURE_VERSION = "v1"
STANDARD_SECRET_PREFIX = "whsec_"


@dataclass
class _CachedSecret:
    value: str
    fetched_at: float


class SecretCache:
    """Per-process cache in front of a secret store.

    Entries expire after ``ttl_seconds``; a miss or an expired entry triggers a
    fresh lookup. Lookup failures are not cached.
    """

    def __init__(
        self,
        store: SecretStore,
        *,
        ttl_seconds: float,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._store = store
        self._ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: dict[str, _CachedSecret] = {}

    def get(self, name: str) -> str | None:
        now = self._clock()
        entry = self._entries.get(name)
        if entry is not None and now - entry.fetched_at < self._ttl_seconds:
            return entry.value

        try:
            value = self._store.get_secret(name)
        except Exception:
            logger.exception("secret_lookup_failed name=%s", name)
            value = None

        if value:
            self._entries[name] = _CachedSecret(value=value, fetched_at=now)
        else:
            self._entries.pop(name, None)
        return value or None

    def invalidate(self, name: str | None = None) -> None:
        if name is None:
            self._entries.clear()
        else:
            self._entries.pop(name, None)


def _normalize_headers(headers: Mapping[str, str]) -> dict[str, str]:
    return {str(key).lower(): str(value) for key, value in headers.items()}


def _hmac_sha256(key: bytes, message: bytes) -> bytes:
    return hmac.new(key, message, hashlib.sha256).digest()


def _versioned_candidates(header_value: str) -> list[str]:
    candidates: list[str] = []
    for chunk in header_value.split(" "):
        chunk = chunk.strip()
        if not chunk or "," not in chunk:
            continue
        version, signature = chunk.split(",", 1)
        if version == SIGNATURE_VERSION and signature:
            candidates.append(signature)
    return candidates


def _any_match(expected: str, candidates: list[str]) -> bool:
    return any(hmac.compare_digest(expected, candidate) for candidate in candidates)


class WebhookSignatureVerifier:
    def __init__(
        self,
        *,
        secret_cache: SecretCache,
        secret_name: str,
        scheme: str = SCHEME_PADDLE,
        tolerance_seconds: int = 300,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if scheme not in SUPPORTED_SCHEMES:
            raise ValueError(f"Unsupported webhook signature scheme '{scheme}'")
        self.scheme = scheme
        self._secret_cache = secret_cache
        self._secret_name = secret_name
        self._tolerance_seconds = tolerance_seconds
        self._clock = clock

    def verify(self, payload_bytes: bytes, headers: Mapping[str, str]) -> bool:
        normalized = _normalize_headers(headers)
        secret = self._secret_cache.get(self._secret_name)
        if not secret:
            logger.error("webhook_secret_unavailable name=%s", self._secret_name)
            return False

        if self.scheme == SCHEME_PADDLE:
            valid = self._verify_paddle(payload_bytes, normalized, secret)
        elif self.scheme == SCHEME_STANDARD:
            valid = self._verify_standard(payload_bytes, normalized, secret)
        else:
            valid = self._verify_body_hmac(payload_bytes, normalized, secret)

        if not valid:
            WEBHOOK_SIGNATURE_REJECTIONS_TOTAL.labels(scheme=self.scheme).inc()
        return valid

    def require_valid(self, payload_bytes: bytes, headers: Mapping[str, str]) -> None:
        if not self.verify(payload_bytes, headers):
            raise WebhookAuthenticationError("Invalid webhook signature")

    def _timestamp_is_fresh(self, timestamp: str) -> bool:
        try:
            signed_at = int(timestamp)
        except ValueError:
            logger.warning("webhook_signature_bad_timestamp timestamp=%s", timestamp[:32])
            return False
        if self._tolerance_seconds <= 0:
            return True
        age = abs(int(self._clock()) - signed_at)
        if age > self._tolerance_seconds:
            logger.warning("webhook_signature_expired age_seconds=%s", age)
            return False
        return True

    def _verify_paddle(self, payload_bytes: bytes, headers: dict[str, str], secret: str) -> bool:
        header_value = headers.get(PADDLE_SIGNATURE_HEADER)
        if not header_value:
            logger.warning("webhook_signature_missing header=%s", PADDLE_SIGNATURE_HEADER)
            return False

        timestamp = None
        candidates: list[str] = []
        for part in header_value.split(";"):
            if "=" not in part:
                continue
            key, value = part.split("=", 1)
            key = key.strip()
            if key == "ts":
                timestamp = value.strip()
            elif key == "h1" and value.strip():
                candidates.append(value.strip())

        if not timestamp or not candidates:
            logger.warning("webhook_signature_malformed scheme=%s", SCHEME_PADDLE)
            return False
        if not self._timestamp_is_fresh(timestamp):
            return False

        signed_payload = f"{timestamp}:".encode("utf-8") + payload_bytes
        expected = _hmac_sha256(secret.encode("utf-8"), signed_payload).hex()
        return _any_match(expected, candidates)

    def _verify_standard(self, payload_bytes: bytes, headers: dict[str, str], secret: str) -> bool:
        message_id = timestamp = signature_header = None
        for prefix in STANDARD_HEADER_PREFIXES:
            message_id = message_id or headers.get(f"{prefix}id")
            timestamp = timestamp or headers.get(f"{prefix}timestamp")
            signature_header = signature_header or headers.get(f"{prefix}signature")

        if not message_id or not timestamp or not signature_header:
            logger.warning("webhook_signature_missing scheme=%s", SCHEME_STANDARD)
            return False
        if not self._timestamp_is_fresh(timestamp):
            return False

        raw_secret = secret[len(STANDARD_SECRET_PREFIX):] if secret.startswith(STANDARD_SECRET_PREFIX) else secret
        try:
            key = base64.b64decode(raw_secret)
        except (binascii.Error, ValueError):
            logger.error("webhook_secret_not_base64 scheme=%s", SCHEME_STANDARD)
            return False

        signed_content = f"{message_id}.{timestamp}.".encode("utf-8") + payload_bytes
        expected = base64.b64encode(_hmac_sha256(key, signed_content)).decode("ascii")
        return _any_match(expected, _versioned_candidates(signature_header))

    def _verify_body_hmac(self, payload_bytes: bytes, headers: dict[str, str], secret: str) -> bool:
        header_value = (headers.get(HMAC_SIGNATURE_HEADER) or "").strip()
        if not header_value:
            logger.warning("webhook_signature_missing header=%s", HMAC_SIGNATURE_HEADER)
            return False

        candidates = _versioned_candidates(header_value) if "," in header_value else [header_value]
        expected = _hmac_sha256(secret.encode("utf-8"), payload_bytes).hex()
        return _any_match(expected, candidates)


@lru_cache(maxsize=1)
def get_webhook_verifier() -> WebhookSignatureVerifier:
    return WebhookSignatureVerifier(
        secret_cache=SecretCache(get_secret_store(), ttl_seconds=settings.secret_cache_ttl_seconds),
        secret_name=settings.webhook_secret_name,
        scheme=settings.webhook_signature_scheme,
        tolerance_seconds=settings.webhook_tolerance_seconds,
    )
