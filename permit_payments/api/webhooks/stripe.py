"""
Stripe Webhook Handler

The body is read raw: signature verification runs over the exact bytes
the provider signed, so it must not go through a pydantic model first.
"""
from fastapi import APIRouter, Depends, Header, Request

from permit_payments.api.dependencies.services import get_services
from permit_payments.core.logging import get_logger
from permit_payments.domain.container import PaymentServices

logger = get_logger(__name__)

router = APIRouter()


@router.post(
    "/stripe",
    summary="Stripe webhook",
    description=(
        "Receives payment intent events. Verified against STRIPE_WEBHOOK_SECRET, "
        "deduplicated by event id and processed once. Processing failures are "
        "retried in the background and still acknowledged with 200."
    ),
    responses={
        200: {"description": "Delivery accepted (processed, duplicate or retry scheduled)"},
        400: {"description": "Missing or invalid signature"},
        503: {"description": "Webhook secret not configured"},
    },
)
async def stripe_webhook(
    request: Request,
    stripe_signature: str | None = Header(default=None, alias="Stripe-Signature"),
    services: PaymentServices = Depends(get_services),
) -> dict:
    raw_payload = await request.body()
    result = await services.webhooks.handle_delivery(raw_payload, stripe_signature)

    logger.info(
        "Stripe webhook handled",
        extra_data={"event_id": result["event_id"], "status": result["status"]},
    )
    return {"received": True, "status": result["status"]}
