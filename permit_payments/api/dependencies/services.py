"""
Access to the process-wide PaymentServices container.
"""
from fastapi import Request

from permit_payments.domain.container import PaymentServices


def get_services(request: Request) -> PaymentServices:
    """The container built at startup (``app.state.services``)."""
    return request.app.state.services
