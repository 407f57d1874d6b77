"""
Admin Endpoints - operational view of the payment reliability layer.
"""
from typing import Any

from fastapi import APIRouter, Depends, Query

from permit_payments.api.dependencies.admin_auth import require_admin_api_key
from permit_payments.api.dependencies.services import get_services
from permit_payments.domain.container import PaymentServices

router = APIRouter()


@router.get(
    "/payments/stats",
    summary="Payment reliability statistics",
    description=(
        "Recovery counters and attempt breakdown, circuit breaker snapshots, "
        "pending webhook retries, payment success/failure counters and recent alerts."
    ),
    responses={
        200: {"description": "Statistics snapshot"},
        401: {"description": "Missing API key"},
        403: {"description": "Wrong API key or admin surface disabled"},
    },
)
async def get_payment_stats(
    hours: int = Query(24, ge=1, le=24 * 30, description="Window for recovery attempt counts"),
    _: None = Depends(require_admin_api_key),
    services: PaymentServices = Depends(get_services),
) -> dict[str, Any]:
    return await services.stats(hours)
