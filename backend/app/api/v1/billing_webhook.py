"""PayMongo webhook: verifies the signed raw body, then reconciles entitlements."""

from __future__ import annotations

import json
import logging

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.core.config import get_settings
from app.core.dependencies import get_db
from app.services.audit_service import create_audit_log
from app.services.billing_service import RetryEnqueueError, process_event, verify_signature
from app.utils.rate_limit import get_client_ip, get_user_agent

router = APIRouter()
logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "Paymongo-Signature"


@router.post("/webhooks/paymongo")
async def paymongo_webhook(request: Request, db: Session = Depends(get_db)):
    settings = get_settings()
    if not settings.paymongo_webhook_secret:
        logger.error("PAYMONGO_WEBHOOK_SECRET is not configured")
        return JSONResponse(status_code=500, content={"received": False})

    # Verify the exact bytes received; never a re-serialised body.
    raw_body = await request.body()
    signature = request.headers.get(SIGNATURE_HEADER)
    ip_address = get_client_ip(request)

    if not verify_signature(
        raw_body,
        signature,
        settings.paymongo_webhook_secret,
        tolerance_seconds=settings.webhook_tolerance_seconds,
    ):
        logger.warning("PayMongo webhook: invalid or stale signature from %s", ip_address)
        try:
            create_audit_log(
                db,
                entity_type="system",
                entity_id="paymongo",
                action="PAYMONGO_SIGNATURE_INVALID",
                old_value=None,
                new_value=None,
                actor_type="SYSTEM",
                actor_id=None,
                ip_address=ip_address,
                user_agent=get_user_agent(request),
                metadata={"path": request.url.path, "has_signature": bool(signature)},
            )
            db.commit()
        except SQLAlchemyError:
            db.rollback()
            logger.exception("Failed to audit invalid PayMongo signature")
        return JSONResponse(status_code=401, content={"error": "Invalid signature"})

    try:
        event = json.loads(raw_body)
    except (ValueError, UnicodeDecodeError):
        return JSONResponse(status_code=400, content={"error": "Invalid JSON"})
    if not isinstance(event, dict):
        return JSONResponse(status_code=400, content={"error": "Invalid JSON"})

    try:
        outcome = process_event(db, event, ip_address=ip_address)
    except RetryEnqueueError:
        return JSONResponse(status_code=500, content={"received": False})

    logger.info("PayMongo webhook handled: outcome=%s", outcome.value)
    return {"received": True}
