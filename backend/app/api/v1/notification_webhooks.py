from __future__ import annotations

import hashlib
import hmac
import json
import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import ValidationError
from sqlalchemy.orm import Session
from twilio.request_validator import RequestValidator

from app.core.config import get_settings
from app.core.dependencies import get_db
from app.schemas.notification import (
    NotificationChannel,
    ProviderReceiptRequest,
    ProviderReceiptResponse,
    ReceiptOutcome,
)
from app.services.channels.sms import PERMANENT_TWILIO_CODES
from app.services.delivery_confirmation import ReceiptResult, find_job_by_provider_message_id, on_provider_receipt
from app.services.notification_queue import get_job
from app.utils.alerting import alert_tracker
from app.utils.rate_limit import get_client_ip, ip_in_networks

router = APIRouter()
logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "X-Notification-Signature"

# Twilio MessageStatus values that close an SMS attempt; the rest are progress updates.
TWILIO_FINAL_STATUSES = {
    "delivered": ReceiptOutcome.DELIVERED,
    "failed": ReceiptOutcome.FAILED,
    "undelivered": ReceiptOutcome.FAILED,
}


def sign_receipt_body(secret: str, body: bytes) -> str:
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def _twilio_request_url(request: Request) -> str:
    url = request.url
    peer_ip = request.client.host if request.client else None
    trusted = get_settings().trusted_proxy_cidrs
    if not (peer_ip and trusted and ip_in_networks(peer_ip, trusted)):
        return str(url)
    proto = request.headers.get("x-forwarded-proto")
    host = request.headers.get("x-forwarded-host")
    if proto:
        url = url.replace(scheme=proto)
    if host:
        url = url.replace(netloc=host)
    return str(url)


def _reject_signature(request: Request, source: str) -> None:
    alert_tracker.record(
        "RECEIPT_SIGNATURE_INVALID",
        channel=source,
        detail={"ip": get_client_ip(request) or "unknown"},
    )
    logger.warning("Rejected %s receipt with invalid signature", source)
    raise HTTPException(401, "Invalid signature")


def _verify_receipt_signature(request: Request, body: bytes) -> None:
    settings = get_settings()
    if settings.allow_insecure_webhooks:
        return
    if not settings.notification_receipt_secret:
        raise HTTPException(500, "Receipt secret is not configured")

    provided = (request.headers.get(SIGNATURE_HEADER) or "").strip()
    if provided.startswith("sha256="):
        provided = provided[len("sha256="):]
    expected = sign_receipt_body(settings.notification_receipt_secret, body)
    if not provided or not hmac.compare_digest(provided.lower(), expected):
        _reject_signature(request, "receipt")


def _result_response(job_id: str, result: ReceiptResult, db: Session) -> ProviderReceiptResponse:
    job = get_job(db, job_id)
    return ProviderReceiptResponse(
        job_id=str(job_id),
        result=result.value,
        status=job.status if job is not None else None,
    )


@router.post("/webhook/notifications/receipt", response_model=ProviderReceiptResponse)
async def provider_receipt_webhook(request: Request, db: Session = Depends(get_db)):
    body = await request.body()
    _verify_receipt_signature(request, body)

    try:
        payload = ProviderReceiptRequest.model_validate(json.loads(body or b"{}"))
    except (ValueError, ValidationError) as exc:
        raise HTTPException(400, "Invalid receipt payload") from exc

    result = on_provider_receipt(
        db,
        job_id=payload.job_id,
        channel=payload.channel,
        outcome=payload.outcome,
        response_payload=payload.payload or None,
        reason=payload.reason,
        permanent=payload.permanent,
    )
    return _result_response(payload.job_id, result, db)


@router.post("/webhook/notifications/twilio-status", response_model=ProviderReceiptResponse)
async def twilio_status_webhook(request: Request, db: Session = Depends(get_db)):
    settings = get_settings()
    form = await request.form()
    params = {key: str(value) for key, value in form.items()}

    if not settings.allow_insecure_webhooks:
        if not settings.twilio_auth_token:
            raise HTTPException(500, "Twilio is not configured")
        signature = request.headers.get("X-Twilio-Signature")
        validator = RequestValidator(settings.twilio_auth_token)
        request_url = settings.twilio_status_callback_url or _twilio_request_url(request)
        if not (signature and validator.validate(request_url, params, signature)):
            _reject_signature(request, "twilio")

    message_sid = params.get("MessageSid") or params.get("SmsSid") or ""
    message_status = (params.get("MessageStatus") or params.get("SmsStatus") or "").lower()
    job = find_job_by_provider_message_id(db, message_sid)
    if job is None:
        logger.info("Twilio status for unknown message sid=%s status=%s", message_sid, message_status)
        return ProviderReceiptResponse(job_id="", result=ReceiptResult.IGNORED.value)

    outcome = TWILIO_FINAL_STATUSES.get(message_status)
    if outcome is None:
        return _result_response(str(job.id), ReceiptResult.IGNORED, db)

    error_code: Optional[int]
    try:
        error_code = int(params.get("ErrorCode") or 0) or None
    except ValueError:
        error_code = None
    reason = None
    if outcome != ReceiptOutcome.DELIVERED:
        reason = f"TWILIO_{message_status.upper()}" + (f": error {error_code}" if error_code else "")

    result = on_provider_receipt(
        db,
        job_id=job.id,
        channel=NotificationChannel.SMS,
        outcome=outcome,
        response_payload=params,
        reason=reason,
        permanent=error_code in PERMANENT_TWILIO_CODES,
    )
    return _result_response(str(job.id), result, db)
