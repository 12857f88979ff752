import json
import logging
import uuid

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from pydantic import ValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from agenda.api.deps import get_broadcaster, get_commit_guard, get_messaging, get_payment_gateway_factory
from agenda.core.database import get_db
from agenda.schemas.webhook import EvolutionWebhook, PaymentNotification, WebhookAck
from agenda.services.chat_service import ChatService
from agenda.services.commit_pipeline import CommitGuard, CommitPipeline
from agenda.services.notifications import NotificationBroadcaster

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhook", tags=["Webhooks"])


async def _json_body(request: Request) -> dict:
    try:
        body = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Body is not valid JSON")
    if not isinstance(body, dict):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Body must be a JSON object")
    return body


# ==================== MESSAGING GATEWAY ====================

@router.get("/messaging/{instance_name}")
async def verify_messaging_webhook(instance_name: str):
    """Reachability check used when registering the webhook on the gateway."""
    return {"status": "ok", "instance": instance_name}


@router.post("/messaging/{instance_name}", response_model=WebhookAck)
async def receive_message(
    instance_name: str,
    request: Request,
    db: AsyncSession = Depends(get_db),
    messaging=Depends(get_messaging),
    broadcaster: NotificationBroadcaster = Depends(get_broadcaster),
    guard: CommitGuard = Depends(get_commit_guard),
    payment_gateway_factory=Depends(get_payment_gateway_factory),
):
    """
    Inbound WhatsApp event from the Evolution API.

    Always answers 200 with the action taken, so the gateway does not retry;
    only a payload that is not an Evolution event at all gets 400.
    """
    body = await _json_body(request)
    try:
        webhook = EvolutionWebhook.model_validate(body)
    except ValidationError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=f"Unrecognized payload: {e.error_count()} errors")

    chat_service = ChatService(db, messaging, broadcaster, guard, payment_gateway_factory)
    try:
        return await chat_service.handle_inbound(instance_name, webhook)
    except Exception:
        logger.exception("Unhandled error processing message webhook for %s", instance_name)
        await db.rollback()
        return WebhookAck(action="error", detail="internal error")


# ==================== PAYMENT GATEWAY ====================

@router.post("/payment", response_model=WebhookAck)
async def receive_payment(
    request: Request,
    business_id: uuid.UUID | None = Query(None),
    db: AsyncSession = Depends(get_db),
    messaging=Depends(get_messaging),
    broadcaster: NotificationBroadcaster = Depends(get_broadcaster),
    guard: CommitGuard = Depends(get_commit_guard),
    payment_gateway_factory=Depends(get_payment_gateway_factory),
):
    """
    Payment status callback.

    Accepts ``{status, reference}`` or MercadoPago's ``{type: "payment", data: {id}}``.
    Duplicate deliveries are acknowledged without creating a second booking.
    """
    body = await _json_body(request)
    try:
        notification = PaymentNotification.model_validate(body)
    except ValidationError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=f"Unrecognized payload: {e.error_count()} errors")

    if not notification.is_recognized:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Payload carries no status or payment id")

    if notification.type and notification.type != "payment" and not notification.status:
        return WebhookAck(action="ignored", detail=f"notification type {notification.type}")

    pipeline = CommitPipeline(db, messaging, broadcaster, guard, payment_gateway_factory)
    try:
        outcome = await pipeline.handle_payment_notification(
            business_id,
            status=notification.status,
            reference=notification.resolved_reference,
            payment_id=notification.payment_id,
        )
    except Exception:
        logger.exception("Unhandled error processing payment webhook")
        await db.rollback()
        return WebhookAck(action="error", detail="internal error")

    return WebhookAck(
        action=outcome.action,
        booking_id=outcome.booking.id if outcome.booking else None,
        payment_reference=outcome.payment_request.reference if outcome.payment_request else None,
    )
