import logging

from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from app.application.services.webhook_pipeline_service import LedgerUnavailableError, process_notification
from app.application.services.webhook_signature_service import WebhookSignatureVerifier, get_webhook_verifier
from app.domain.errors import TransientStoreError, WebhookAuthenticationError
from app.infrastructure.db.session import get_db

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


@router.post("/paddle", status_code=status.HTTP_200_OK)
async def paddle_webhook(
    request: Request,
    db: Session = Depends(get_db),
    verifier: WebhookSignatureVerifier = Depends(get_webhook_verifier),
) -> JSONResponse:
    payload_bytes = await request.body()
    try:
        verifier.require_valid(payload_bytes, request.headers)
    except WebhookAuthenticationError as exc:
        logger.warning("webhook_signature_rejected scheme=%s", verifier.scheme)
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=str(exc)) from exc

    try:
        result = await run_in_threadpool(process_notification, db, payload_bytes)
    except (LedgerUnavailableError, TransientStoreError) as exc:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={"error_code": "webhook_ledger_unavailable", "message": "Webhook could not be recorded"},
        ) from exc
    return JSONResponse(status_code=status.HTTP_200_OK, content=result.to_response())
