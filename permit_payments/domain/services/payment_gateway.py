"""
Payment Gateway Client - the only component that talks to Stripe.

Every charge attempt goes through the same pipeline:
1. input validation (ValidationException, no external call)
2. velocity screening (SecurityRejection, provider never called)
3. per-(customer, application) rate limit (RateLimitExceededError)
4. open-order guard (PaymentInProgressError for a different open payment)
5. provider call through the method's circuit breaker, with an
   idempotency key derived from (method, application, customer)
6. local PaymentOrder upsert and application status update

The SDK is synchronous; calls run in a worker thread and the breaker
bounds them with the configured timeout.
"""
import asyncio
import hashlib
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Callable

import stripe
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from permit_payments.core.circuit_breaker import CircuitBreakerRegistry, OperationClass
from permit_payments.core.exceptions import (
    AppException,
    ConsistencyError,
    PaymentInProgressError,
    ProviderError,
    SecurityRejection,
    TransientInfraError,
    ValidationException,
    WebhookSecretMissingError,
    WebhookSignatureError,
)
from permit_payments.core.logging import get_logger, log_async_operation, mask_email, mask_secret
from permit_payments.core.validation import EmailValidator, PhoneNumberValidator, TextSanitizer
from permit_payments.db.models.application import application_status_for
from permit_payments.db.models.payment_order import PaymentMethod, PaymentOrder, order_status_for
from permit_payments.db.repositories import ApplicationRepository, PaymentOrderRepository
from permit_payments.domain.services.metrics import PaymentMetrics
from permit_payments.domain.services.payment_rate_limiter import PaymentRateLimiter
from permit_payments.domain.services.velocity_service import VelocityService

logger = get_logger(__name__)

PROVIDER_NAME = "stripe"

USER_MESSAGES = {
    "card_declined": "Su tarjeta fue rechazada. Por favor, verifique los datos o intente con otra tarjeta.",
    "insufficient_funds": "Fondos insuficientes en su tarjeta. Por favor, intente con otra tarjeta.",
    "expired_card": "Su tarjeta ha expirado. Por favor, verifique la fecha de vencimiento.",
    "incorrect_cvc": "El código de seguridad (CVC) es incorrecto. Por favor, verifíquelo.",
    "invalid_number": "El número de tarjeta es inválido. Por favor, verifíquelo.",
    "invalid_expiry_month": "La fecha de vencimiento es inválida. Por favor, verifíquela.",
    "invalid_expiry_year": "La fecha de vencimiento es inválida. Por favor, verifíquela.",
    "processing_error": "Error al procesar el pago. Por favor, intente nuevamente.",
    "rate_limit": "Demasiadas solicitudes. Por favor, espere un momento e intente nuevamente.",
}
GENERIC_USER_MESSAGE = "Error al procesar el pago. Por favor, intente nuevamente o contacte soporte."

_CLIENT_ERROR_TYPES = frozenset({"CardError", "InvalidRequestError", "IdempotencyError"})


def user_message_for(code: str | None) -> str:
    return USER_MESSAGES.get(code or "", GENERIC_USER_MESSAGE)


def map_provider_error(error: stripe.StripeError) -> AppException:
    """Translate an SDK error into the payment error taxonomy."""
    if isinstance(error, stripe.APIConnectionError):
        return TransientInfraError(PROVIDER_NAME, "Payment provider is unreachable")

    decline_code = getattr(getattr(error, "error", None), "decline_code", None)
    code = decline_code or getattr(error, "code", None)
    if isinstance(error, stripe.RateLimitError):
        code = "rate_limit"

    return ProviderError(
        user_message_for(code),
        provider_code=code,
        provider_type=type(error).__name__,
        is_decline=isinstance(error, stripe.CardError),
    )


def counts_as_breaker_failure(error: BaseException) -> bool:
    """Only provider or infrastructure outages count against a breaker."""
    if isinstance(error, ProviderError):
        return error.provider_type not in _CLIENT_ERROR_TYPES
    return not isinstance(
        error,
        (
            stripe.CardError,
            stripe.InvalidRequestError,
            stripe.IdempotencyError,
            ValidationException,
            ConsistencyError,
        ),
    )


def _digest(*parts: Any) -> str:
    raw = ":".join(str(p) for p in parts)
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()[:32]


def payment_idempotency_key(method: PaymentMethod, application_id: int, customer_id: str) -> str:
    """Same (method, application, customer) always yields the same key."""
    return f"pi_{method.value}_{_digest(method.value, application_id, customer_id)}"


def customer_idempotency_key(email: str) -> str:
    return f"customer_{_digest(EmailValidator.normalize(email))}"


def operation_for(method: PaymentMethod | str | None) -> OperationClass:
    """Breaker class guarding calls for an order of ``method``."""
    if method in (PaymentMethod.CASH_VOUCHER, PaymentMethod.CASH_VOUCHER.value):
        return OperationClass.CASH_VOUCHER_PAYMENT
    return OperationClass.CARD_PAYMENT


def to_minor_units(amount: Decimal) -> int:
    return int((amount * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


@dataclass
class PaymentRequest:
    """Input for a charge attempt"""
    application_id: int
    user_id: int
    customer_id: str
    amount: Decimal
    email: str | None = None
    customer_name: str | None = None
    ip_address: str | None = None
    card_fingerprint: str | None = None
    currency: str | None = None
    description: str | None = None


@dataclass
class PaymentIntentResult:
    """Canonical view of a provider payment intent"""
    payment_intent_id: str
    status: str
    method: PaymentMethod
    amount: Decimal
    currency: str
    idempotency_key: str | None = None
    client_secret: str | None = None
    created_at: datetime | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    voucher_reference: str | None = None
    voucher_url: str | None = None
    voucher_expires_at: datetime | None = None

    @property
    def order_status(self) -> str:
        return order_status_for(self.status).value

    @classmethod
    def from_intent(
        cls,
        intent: Any,
        method: PaymentMethod,
        idempotency_key: str | None = None,
    ) -> "PaymentIntentResult":
        created = intent.get("created")
        return cls(
            payment_intent_id=intent["id"],
            status=intent["status"],
            method=method,
            amount=Decimal(intent.get("amount") or 0) / 100,
            currency=(intent.get("currency") or "").upper(),
            idempotency_key=idempotency_key,
            client_secret=intent.get("client_secret"),
            created_at=datetime.fromtimestamp(created, tz=timezone.utc) if created else None,
            metadata=dict(intent.get("metadata") or {}),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "payment_intent_id": self.payment_intent_id,
            "status": self.status,
            "order_status": self.order_status,
            "method": self.method.value,
            "amount": str(self.amount),
            "currency": self.currency,
            "client_secret": self.client_secret,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "voucher_reference": self.voucher_reference,
            "voucher_url": self.voucher_url,
            "voucher_expires_at": self.voucher_expires_at.isoformat() if self.voucher_expires_at else None,
        }


class PaymentGatewayClient:
    def __init__(
        self,
        *,
        api_key: str,
        webhook_secret: str,
        breakers: CircuitBreakerRegistry,
        session_factory: async_sessionmaker[AsyncSession],
        metrics: PaymentMetrics,
        velocity: VelocityService | None = None,
        rate_limiter: PaymentRateLimiter | None = None,
        velocity_check_enabled: bool = True,
        currency: str = "MXN",
        description: str = "Permiso de Circulación",
        oxxo_expiration_days: int = 2,
    ):
        self._api_key = api_key
        self._webhook_secret = webhook_secret
        self._breakers = breakers
        self._session_factory = session_factory
        self.metrics = metrics
        self._velocity = velocity
        self._rate_limiter = rate_limiter
        self.velocity_check_enabled = velocity_check_enabled
        self.currency = currency
        self.description = description
        self.oxxo_expiration_days = oxxo_expiration_days

    async def _call(self, operation: OperationClass, fn: Callable[..., Any], *args: Any, **params: Any) -> Any:
        """Run a blocking SDK call through the breaker for ``operation``."""
        breaker = self._breakers.get(operation)
        return await breaker.execute(asyncio.to_thread, fn, *args, api_key=self._api_key, **params)

    # ------------------------------------------------------------------
    # Customers
    # ------------------------------------------------------------------

    async def _find_customer_by_email(self, email: str) -> Any | None:
        result = await self._call(
            OperationClass.CUSTOMER_OPERATIONS, stripe.Customer.list, email=email, limit=1
        )
        data = result.get("data") or []
        return data[0] if data else None

    async def create_customer(self, name: str, email: str, phone: str | None = None) -> dict[str, Any]:
        """
        Return the provider customer for ``email``, creating it if needed.

        Raises:
            ValidationException: missing name or invalid email
        """
        name = TextSanitizer.sanitize(name)
        if not name:
            raise ValidationException("Customer name is required", field="name")
        if not EmailValidator.validate(email):
            raise ValidationException("A valid email is required", field="email")
        email = EmailValidator.normalize(email)

        try:
            existing = await self._find_customer_by_email(email)
            if existing:
                logger.debug("Reusing provider customer", extra_data={"email": mask_email(email)})
                return {"id": existing["id"], "email": email, "name": existing.get("name"), "created": False}

            params: dict[str, Any] = {"name": name, "email": email}
            if phone and PhoneNumberValidator.validate(phone):
                params["phone"] = PhoneNumberValidator.normalize(phone)

            try:
                customer = await self._call(
                    OperationClass.CUSTOMER_OPERATIONS,
                    stripe.Customer.create,
                    idempotency_key=customer_idempotency_key(email),
                    **params,
                )
            except stripe.InvalidRequestError as e:
                # A concurrent creator won the race
                if "already exists" not in str(e).lower():
                    raise
                existing = await self._find_customer_by_email(email)
                if not existing:
                    raise
                return {"id": existing["id"], "email": email, "name": existing.get("name"), "created": False}
        except stripe.StripeError as e:
            raise map_provider_error(e) from e

        logger.info(
            "Provider customer created",
            extra_data={"customer_id": customer["id"], "email": mask_email(email)},
        )
        return {"id": customer["id"], "email": email, "name": name, "created": True}

    # ------------------------------------------------------------------
    # Charges
    # ------------------------------------------------------------------

    def _validate_request(self, request: PaymentRequest, method: PaymentMethod) -> None:
        if not request.application_id or request.application_id <= 0:
            raise ValidationException("A valid application id is required", field="application_id")
        if not request.customer_id:
            raise ValidationException("Customer id is required", field="customer_id")
        if request.amount is None or Decimal(str(request.amount)) <= 0:
            raise ValidationException("Amount must be greater than zero", field="amount")
        if method == PaymentMethod.CASH_VOUCHER:
            if not TextSanitizer.sanitize(request.customer_name):
                raise ValidationException("Customer name is required for OXXO", field="customer_name")
            if not EmailValidator.validate(request.email):
                raise ValidationException("A valid email is required for OXXO", field="email")

    async def _screen(self, request: PaymentRequest, method: PaymentMethod) -> None:
        if self.velocity_check_enabled and self._velocity is not None:
            verdict = await self._velocity.check_velocity(
                user_id=request.user_id,
                email=request.email,
                ip_address=request.ip_address,
                amount=request.amount,
                card_fingerprint=request.card_fingerprint,
            )
            if not verdict.allowed:
                self.metrics.record_failure(method.value, "velocity_check_failed")
                logger.warning(
                    "Payment blocked by velocity screening",
                    extra_data={
                        "application_id": request.application_id,
                        "user_id": request.user_id,
                        "risk_score": verdict.risk_score,
                        "violations": [v["type"] for v in verdict.violations],
                    },
                )
                raise SecurityRejection(verdict.risk_score, verdict.violations)

        if self._rate_limiter is not None:
            try:
                await self._rate_limiter.check(request.application_id, request.customer_id)
            except AppException:
                self.metrics.record_failure(method.value, "rate_limited")
                raise

    async def _guard_open_order(self, application_id: int, idempotency_key: str) -> None:
        async with self._session_factory() as db:
            open_order = await PaymentOrderRepository(db).get_open_for_application(application_id)
        if open_order is not None and open_order.idempotency_key != idempotency_key:
            raise PaymentInProgressError(application_id, open_order.payment_intent_id)

    async def _record_order(self, request: PaymentRequest, result: PaymentIntentResult) -> None:
        """Upsert the local order for ``result`` and point the application at it."""
        async with self._session_factory() as db:
            orders = PaymentOrderRepository(db)
            order = await orders.get_by_intent_id(result.payment_intent_id)
            try:
                if order is None:
                    await orders.add(PaymentOrder(
                        application_id=request.application_id,
                        payment_intent_id=result.payment_intent_id,
                        idempotency_key=result.idempotency_key,
                        method=result.method.value,
                        amount=result.amount,
                        currency=result.currency,
                        status=result.order_status,
                        provider_status=result.status,
                        voucher_reference=result.voucher_reference,
                        voucher_url=result.voucher_url,
                        voucher_expires_at=result.voucher_expires_at,
                    ))
                else:
                    await orders.transition(
                        order, order_status_for(result.status), provider_status=result.status
                    )
                await ApplicationRepository(db).update_status(
                    request.application_id,
                    application_status_for(result.status, result.method.value),
                    payment_intent_id=result.payment_intent_id,
                )
                await db.commit()
            except IntegrityError as e:
                await db.rollback()
                other = await PaymentOrderRepository(db).get_open_for_application(request.application_id)
                raise PaymentInProgressError(
                    request.application_id,
                    other.payment_intent_id if other else result.payment_intent_id,
                ) from e

    async def _create_intent(
        self,
        request: PaymentRequest,
        method: PaymentMethod,
        operation: OperationClass,
        params: dict[str, Any],
    ) -> tuple[Any, str, float]:
        self._validate_request(request, method)
        await self._screen(request, method)
        self.metrics.record_attempt(method.value)

        idempotency_key = payment_idempotency_key(method, request.application_id, request.customer_id)
        await self._guard_open_order(request.application_id, idempotency_key)

        amount = Decimal(str(request.amount))
        params = {
            "amount": to_minor_units(amount),
            "currency": (request.currency or self.currency).lower(),
            "customer": request.customer_id,
            "description": TextSanitizer.sanitize(request.description) or self.description,
            "metadata": {
                "application_id": str(request.application_id),
                "user_id": str(request.user_id),
                "payment_method": method.value,
            },
            **params,
        }

        started = time.monotonic()
        try:
            intent = await self._call(
                operation, stripe.PaymentIntent.create, idempotency_key=idempotency_key, **params
            )
        except stripe.StripeError as e:
            mapped = map_provider_error(e)
            self.metrics.record_failure(method.value, getattr(mapped, "provider_code", None) or type(e).__name__)
            logger.error(
                "Payment intent creation failed",
                extra_data={
                    "application_id": request.application_id,
                    "method": method.value,
                    "code": getattr(e, "code", None),
                    "type": type(e).__name__,
                },
            )
            raise mapped from e
        except TransientInfraError as e:
            self.metrics.record_failure(method.value, e.error_code.value)
            raise

        return intent, idempotency_key, started

    async def create_payment_intent_for_card(self, request: PaymentRequest) -> PaymentIntentResult:
        """
        Create (or replay) the card payment intent for an application.

        The client confirms it with the returned client secret.

        Raises:
            ValidationException, SecurityRejection, RateLimitExceededError,
            PaymentInProgressError, ProviderError, TransientInfraError
        """
        intent, idempotency_key, started = await self._create_intent(
            request,
            PaymentMethod.CARD,
            OperationClass.CARD_PAYMENT,
            {"automatic_payment_methods": {"enabled": True}},
        )
        result = PaymentIntentResult.from_intent(intent, PaymentMethod.CARD, idempotency_key)
        await self._record_order(request, result)
        if result.status == "succeeded" and self._rate_limiter is not None:
            await self._rate_limiter.reset(request.application_id, request.customer_id)

        latency_ms = (time.monotonic() - started) * 1000
        self.metrics.record_success(PaymentMethod.CARD.value, latency_ms)
        logger.info(
            "Card payment intent created",
            extra_data={
                "application_id": request.application_id,
                "payment_intent_id": result.payment_intent_id,
                "status": result.status,
                "client_secret": mask_secret(result.client_secret),
                "duration_ms": round(latency_ms, 1),
            },
        )
        return result

    async def process_oxxo_payment(self, request: PaymentRequest) -> PaymentIntentResult:
        """
        Create and confirm an OXXO cash voucher for an application.

        Raises:
            ProviderError: the provider returned no voucher reference
            (plus everything create_payment_intent_for_card raises)
        """
        intent, idempotency_key, started = await self._create_intent(
            request,
            PaymentMethod.CASH_VOUCHER,
            OperationClass.CASH_VOUCHER_PAYMENT,
            {
                "payment_method_types": ["oxxo"],
                "payment_method_data": {
                    "type": "oxxo",
                    "billing_details": {
                        "name": TextSanitizer.sanitize(request.customer_name),
                        "email": EmailValidator.normalize(request.email),
                    },
                },
                "payment_method_options": {"oxxo": {"expires_after_days": self.oxxo_expiration_days}},
                "confirm": True,
            },
        )
        result = PaymentIntentResult.from_intent(intent, PaymentMethod.CASH_VOUCHER, idempotency_key)

        next_action = intent.get("next_action") or {}
        details = next_action.get("oxxo_display_details") or {}
        if not details.get("number"):
            self.metrics.record_failure(PaymentMethod.CASH_VOUCHER.value, "missing_voucher_details")
            logger.error(
                "OXXO intent returned without voucher details",
                extra_data={
                    "application_id": request.application_id,
                    "payment_intent_id": result.payment_intent_id,
                    "next_action": next_action.get("type"),
                },
            )
            raise ProviderError(GENERIC_USER_MESSAGE, provider_code="missing_voucher_details")

        result.voucher_reference = details["number"]
        result.voucher_url = details.get("hosted_voucher_url")
        expires_after = details.get("expires_after")
        result.voucher_expires_at = (
            datetime.fromtimestamp(expires_after, tz=timezone.utc)
            if expires_after
            else None
        )
        await self._record_order(request, result)

        latency_ms = (time.monotonic() - started) * 1000
        self.metrics.record_success(PaymentMethod.CASH_VOUCHER.value, latency_ms)
        logger.info(
            "OXXO voucher created",
            extra_data={
                "application_id": request.application_id,
                "payment_intent_id": result.payment_intent_id,
                "expires_at": result.voucher_expires_at,
                "duration_ms": round(latency_ms, 1),
            },
        )
        return result

    # ------------------------------------------------------------------
    # Pass-throughs
    # ------------------------------------------------------------------

    async def _pass_through(
        self,
        fn: Callable[..., Any],
        payment_intent_id: str,
        operation: OperationClass,
        **params: Any,
    ) -> Any:
        try:
            return await self._call(operation, fn, payment_intent_id, **params)
        except stripe.StripeError as e:
            raise map_provider_error(e) from e

    @log_async_operation("stripe.retrieve_payment_intent")
    async def retrieve_payment_intent(
        self,
        payment_intent_id: str,
        operation: OperationClass = OperationClass.CARD_PAYMENT,
    ) -> Any:
        return await self._pass_through(stripe.PaymentIntent.retrieve, payment_intent_id, operation)

    @log_async_operation("stripe.confirm_payment_intent")
    async def confirm_payment_intent(
        self,
        payment_intent_id: str,
        operation: OperationClass = OperationClass.CARD_PAYMENT,
    ) -> Any:
        return await self._pass_through(stripe.PaymentIntent.confirm, payment_intent_id, operation)

    @log_async_operation("stripe.capture_payment_intent")
    async def capture_payment_intent(
        self,
        payment_intent_id: str,
        operation: OperationClass = OperationClass.CARD_PAYMENT,
    ) -> Any:
        return await self._pass_through(stripe.PaymentIntent.capture, payment_intent_id, operation)

    # ------------------------------------------------------------------
    # Webhooks
    # ------------------------------------------------------------------

    def construct_webhook_event(self, raw_payload: bytes, signature_header: str | None) -> Any:
        """
        Verify and parse a webhook delivery.

        Raises:
            WebhookSecretMissingError: no signing secret configured (fail closed)
            WebhookSignatureError: missing or invalid signature, or bad payload
        """
        if not self._webhook_secret:
            logger.critical("Webhook rejected: STRIPE_WEBHOOK_SECRET is not configured")
            raise WebhookSecretMissingError()
        if not signature_header:
            raise WebhookSignatureError("missing_signature")

        try:
            return stripe.Webhook.construct_event(
                payload=raw_payload,
                sig_header=signature_header,
                secret=self._webhook_secret,
            )
        except stripe.SignatureVerificationError as e:
            logger.warning("Webhook signature verification failed", extra_data={"error": str(e)})
            raise WebhookSignatureError("invalid_signature") from e
        except ValueError as e:
            logger.warning("Webhook payload could not be parsed", extra_data={"error": str(e)})
            raise WebhookSignatureError("invalid_payload") from e
