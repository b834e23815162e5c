# /autoreply/routes/messages.py

import logging
from fastapi import APIRouter, BackgroundTasks, Depends

from autoreply.config.settings import settings
from autoreply.models.api import APIResponse, InboundAccepted
from autoreply.models.domain import InboundMessage
from autoreply.services.auto_reply_service import auto_reply_engine
from autoreply.utils.dependencies import ensure_owner_access, verify_api_key, verify_jwt_token
from autoreply.utils.metrics import inbound_messages_counter
from autoreply.utils.queue import message_queue

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Auto Reply"])


@router.post("/messages/inbound", status_code=202, response_model=InboundAccepted,
             dependencies=[Depends(verify_api_key)])
async def receive_inbound_message(message: InboundMessage, background_tasks: BackgroundTasks):
    """
    Entry point for the ingestion layer. Duplicate deliveries of the same
    message id are acknowledged without being processed again.
    """
    try:
        duplicate = await message_queue.is_duplicate_message(message.id, message.tenant_id)
    except Exception as e:
        # Fall through: process_inbound is idempotent per message id.
        logger.warning(f"Duplicate check unavailable for message {message.id}: {e}")
        duplicate = False

    if duplicate:
        inbound_messages_counter.labels(status="duplicate").inc()
        return InboundAccepted(status="duplicate", message_id=message.id)

    try:
        queued = await message_queue.add_message(message)
    except Exception as e:
        logger.error(f"Failed to enqueue message {message.id}: {e}")
        queued = False

    if queued:
        inbound_messages_counter.labels(status="queued").inc()
        return InboundAccepted(status="queued", message_id=message.id)

    background_tasks.add_task(message_queue.process_now, message)
    inbound_messages_counter.labels(status="processing").inc()
    return InboundAccepted(status="processing", message_id=message.id)


@router.post("/auto-reply/preview", response_model=APIResponse)
async def preview_auto_reply(message: InboundMessage, user: dict = Depends(verify_jwt_token)):
    """Run the decision engine without recording statistics, storing or sending anything."""
    ensure_owner_access(user, message.tenant_id)
    decision = await auto_reply_engine.decide(message, record_stats=False)
    return APIResponse(
        success=True,
        message=f"Decision: {decision.kind.value}",
        data=decision.model_dump(by_alias=True, mode="json"),
        version=settings.api_version,
    )
