"""Error taxonomy shared by the webhook pipeline and the storage layer.

Handlers and stores raise these instead of leaking driver-specific exceptions,
so the retry executor can decide what to do from the type alone.
"""


class WebhookError(RuntimeError):
    retryable: bool = True
    error_code: str = "webhook_error"


class WebhookAuthenticationError(WebhookError):
    retryable = False
    error_code = "webhook_authentication_error"


class NonRetryableError(WebhookError):
    retryable = False
    error_code = "non_retryable_error"


class WebhookValidationError(NonRetryableError):
    error_code = "webhook_validation_error"


class TransientStoreError(WebhookError):
    retryable = True
    error_code = "transient_store_error"


class StoreConflictError(WebhookError):
    retryable = False
    error_code = "store_conflict"


def is_retryable(exc: BaseException) -> bool:
    if isinstance(exc, WebhookError):
        return exc.retryable
    return True


def error_category(exc: BaseException) -> str:
    if isinstance(exc, WebhookValidationError):
        return "validation"
    if isinstance(exc, TransientStoreError):
        return "transient"
    if isinstance(exc, StoreConflictError):
        return "conflict"
    if isinstance(exc, WebhookError):
        return exc.error_code
    return "unknown"
