import json
import logging
import logging.config
from pathlib import Path

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from app.core.config import settings
from app.domain import models  # noqa: F401
from app.interfaces.api.router import api_router
from app.interfaces.http.middleware import (
    MetricsMiddleware,
    RequestIDMiddleware,
    SecurityHeadersMiddleware,
)

LOGGING_CONFIG_PATH = Path(__file__).with_name("logging.json")


def configure_logging() -> None:
    if LOGGING_CONFIG_PATH.exists():
        logging.config.dictConfig(json.loads(LOGGING_CONFIG_PATH.read_text(encoding="utf-8")))
    else:
        logging.basicConfig(level=logging.INFO)


configure_logging()
logger = logging.getLogger("app")

app = FastAPI(title=settings.app_name)
app.add_middleware(SecurityHeadersMiddleware)
app.add_middleware(RequestIDMiddleware)
app.add_middleware(MetricsMiddleware)


def _error_response(
    request: Request,
    *,
    status_code: int,
    error_code: str,
    message: str,
    headers: dict | None = None,
) -> JSONResponse:
    # trace_id matches the X-Request-ID response header.
    return JSONResponse(
        status_code=status_code,
        content={
            "error_code": error_code,
            "message": message,
            "trace_id": getattr(request.state, "request_id", None),
        },
        headers=headers,
    )


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    detail = exc.detail
    if isinstance(detail, dict) and "error_code" in detail and "message" in detail:
        error_code, message = str(detail["error_code"]), str(detail["message"])
    else:
        error_code = str(exc.status_code)
        message = detail if isinstance(detail, str) else "Request failed"
    return _error_response(
        request,
        status_code=exc.status_code,
        error_code=error_code,
        message=message,
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(RequestValidationError)
async def request_validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    return _error_response(request, status_code=422, error_code="validation_error", message="Request validation failed")


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("unhandled_exception path=%s method=%s", request.url.path, request.method)
    return _error_response(request, status_code=500, error_code="internal_server_error", message="Internal server error")


app.include_router(api_router)
