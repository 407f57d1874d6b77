"""
Payment operations endpoints (admin).

Manual triggers for the reliability layer, used when support needs to push
a stuck application along without waiting for the reconciliation sweep.
"""
from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from permit_payments.api.dependencies.admin_auth import require_admin_api_key
from permit_payments.api.dependencies.services import get_services
from permit_payments.core.exceptions import ErrorCode, NotFoundException
from permit_payments.core.logging import get_logger
from permit_payments.db.database import get_db
from permit_payments.db.repositories import ApplicationRepository
from permit_payments.domain.container import PaymentServices

logger = get_logger(__name__)

router = APIRouter()

_ADMIN_RESPONSES = {
    401: {"description": "Missing API key"},
    403: {"description": "Wrong API key or admin surface disabled"},
}


class RecoveryStatusResponse(BaseModel):
    application_id: int
    payment_intent_id: str
    attempts: int
    max_attempts: int
    can_retry: bool
    last_attempt_time: datetime | None
    next_attempt_delay: int = Field(description="Seconds before the next re-check")
    status: str
    last_error: str | None


async def _current_intent_id(db: AsyncSession, application_id: int) -> str:
    application = await ApplicationRepository(db).get(application_id)
    if application is None:
        raise NotFoundException("Application", application_id)
    if not application.payment_intent_id:
        raise NotFoundException("Payment intent for application", application_id, ErrorCode.PAYMENT_ORDER_NOT_FOUND)
    return application.payment_intent_id


@router.post(
    "/applications/{application_id}/reconcile",
    summary="Reconcile one application against the provider",
    responses=_ADMIN_RESPONSES,
)
async def reconcile_application(
    application_id: int,
    _: None = Depends(require_admin_api_key),
    services: PaymentServices = Depends(get_services),
) -> dict[str, Any]:
    logger.info("Manual reconciliation requested", extra_data={"application_id": application_id})
    return await services.recovery.reconcile_payment_status(application_id)


@router.post(
    "/applications/{application_id}/recover",
    summary="Run recovery for the application's current payment intent",
    responses={**_ADMIN_RESPONSES, 404: {"description": "Unknown application or no payment intent"}},
)
async def recover_application(
    application_id: int,
    _: None = Depends(require_admin_api_key),
    db: AsyncSession = Depends(get_db),
    services: PaymentServices = Depends(get_services),
) -> dict[str, Any]:
    payment_intent_id = await _current_intent_id(db, application_id)
    logger.info("Manual recovery requested", extra_data={"application_id": application_id})
    return await services.recovery.attempt_payment_recovery(
        application_id, payment_intent_id, {"trigger": "admin"}
    )


@router.get(
    "/applications/{application_id}/recovery-status",
    response_model=RecoveryStatusResponse,
    summary="Recovery bookkeeping for the application's current payment intent",
    responses={**_ADMIN_RESPONSES, 404: {"description": "Unknown application or no payment intent"}},
)
async def get_recovery_status(
    application_id: int,
    _: None = Depends(require_admin_api_key),
    db: AsyncSession = Depends(get_db),
    services: PaymentServices = Depends(get_services),
) -> RecoveryStatusResponse:
    payment_intent_id = await _current_intent_id(db, application_id)
    status = await services.recovery.get_recovery_status(application_id, payment_intent_id)
    return RecoveryStatusResponse(**status)
