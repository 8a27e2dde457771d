from fastapi import APIRouter, Depends, HTTPException, Request, status
from pydantic import ValidationError

from shopchat.config import settings
from shopchat.dependencies import get_coordinator
from shopchat.logging_config import get_logger
from shopchat.schemas.line import InboundMessage, LineWebhookRequest
from shopchat.services.coordinator import Coordinator
from shopchat.services.line_service import verify_signature

logger = get_logger("webhook")

router = APIRouter()

MSG_TEXT_ONLY = "ตอนนี้ระบบรองรับข้อความเท่านั้นนะคะ 🙏"


@router.post("/webhook")
async def line_webhook(request: Request, coordinator: Coordinator = Depends(get_coordinator)):
    """LINE webhook: text messages go to the aggregator, everything else gets a fixed reply."""
    body = await request.body()
    if not verify_signature(settings.line_channel_secret, body, request.headers.get("X-Line-Signature")):
        logger.warning("Webhook signature mismatch")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid signature")

    try:
        payload = LineWebhookRequest.model_validate_json(body)
    except ValidationError as exc:
        logger.warning("Webhook payload validation failed", extra={"context": {"error": str(exc)[:200]}})
        return {"status": "ignored"}

    accepted = 0
    for event in payload.events:
        user_id = event.user_id
        if event.type != "message" or not user_id or event.message is None:
            continue

        if event.message.type == "text":
            message = InboundMessage(
                conversation_key=user_id,
                text=event.message.text or "",
                reply_token=event.reply_token,
            )
            if await coordinator.accept(message):
                accepted += 1
            continue

        logger.info(
            "Unsupported message type",
            extra={"context": {"conversation_key": user_id, "message_type": event.message.type}},
        )
        if event.reply_token:
            await coordinator.channel.reply(event.reply_token, MSG_TEXT_ONLY)

    return {"status": "ok", "accepted": accepted}
