"""Payment provider webhook."""

import logging
from typing import Annotated

from fastapi import APIRouter, Header, Request

from .deps import StripeGatewayDep, WebhookProcessorDep
from .models import WebhookAck

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/stripe", tags=["billing"])


@router.post("/webhook", response_model=WebhookAck)
async def stripe_webhook(
    request: Request,
    gateway: StripeGatewayDep,
    processor: WebhookProcessorDep,
    signature: Annotated[str | None, Header(alias="stripe-signature")] = None,
) -> WebhookAck:
    """Apply a signed Stripe event at most once.

    Answers 200 for processed, duplicate and ignored events so the
    provider stops redelivering; any other status makes it retry,
    including 409 while another delivery still holds the claim.
    """
    payload = await request.body()
    event = await gateway.parse(payload, signature)
    if event is None:
        logger.info("Unhandled event type, acknowledged")
        return WebhookAck(status="ignored")

    outcome = await processor.process(event)
    logger.info(
        "Webhook %s %s: %s (+%d credits)",
        outcome.event_type,
        outcome.event_key,
        outcome.status,
        outcome.credits_added,
    )
    return WebhookAck(status=outcome.status)
