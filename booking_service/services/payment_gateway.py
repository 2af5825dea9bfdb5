"""
Stripe Payment Gateway Adapter

Thin wrapper around the Stripe SDK that:
- Creates and confirms PaymentIntents (amounts in minor units)
- Issues refunds against a captured charge
- Retrieves card summaries and saved card payment methods
- Verifies webhook signatures before any payload is trusted

Only this module talks to Stripe. Everything it returns is a plain dataclass
so the rest of the service (and the tests) never touch Stripe objects.
"""

import json
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Any

import stripe

from ..config import settings

logger = logging.getLogger(__name__)


@dataclass
class GatewayIntent:
    """Snapshot of a PaymentIntent as seen by the gateway"""
    id: str
    status: str
    client_secret: Optional[str] = None
    latest_charge: Optional[str] = None
    payment_method: Optional[str] = None
    amount: Optional[int] = None
    currency: Optional[str] = None
    last_error_message: Optional[str] = None
    metadata: Dict[str, str] = field(default_factory=dict)

    @property
    def succeeded(self) -> bool:
        return self.status == "succeeded"

    @property
    def requires_action(self) -> bool:
        return self.status in ("requires_action", "requires_confirmation", "processing")


@dataclass
class GatewayRefund:
    id: str
    status: str
    amount: int


@dataclass
class CardSummary:
    id: str
    type: str = "card"
    last4: Optional[str] = None
    brand: Optional[str] = None
    exp_month: Optional[int] = None
    exp_year: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "last4": self.last4,
            "brand": self.brand,
            "exp_month": self.exp_month,
            "exp_year": self.exp_year,
        }


class GatewayError(Exception):
    """The gateway rejected the request (card declined, invalid request, ...)."""

    def __init__(self, message: str, code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.code = code


class GatewayConnectionError(GatewayError):
    """The request outcome is unknown (network failure or timeout)."""


class GatewaySignatureError(GatewayError):
    """Webhook signature did not verify."""


def _get(obj, key: str, default=None):
    """Read a field from a Stripe object or a plain dict."""
    if obj is None:
        return default
    if isinstance(obj, dict):
        return obj.get(key, default)
    return getattr(obj, key, default)


def _as_dict(obj) -> Dict[str, Any]:
    if obj is None:
        return {}
    if isinstance(obj, dict):
        return dict(obj)
    if hasattr(obj, "to_dict"):
        return obj.to_dict()
    return {}


class StripeGateway:
    """
    Stripe implementation of the payment gateway contract.

    The API key is passed per request instead of via the module-global
    ``stripe.api_key`` so gateways for different accounts can coexist.

    The HTTP transport is not per instance. The SDK keeps its client (and
    with it the timeout) and ``max_network_retries`` at module level, so
    constructing a gateway reconfigures them for the whole process and the
    most recently built gateway's transport settings apply to all.
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        webhook_secret: Optional[str] = None,
        timeout_seconds: Optional[int] = None,
        max_network_retries: Optional[int] = None,
        return_url: Optional[str] = None,
        webhook_tolerance: Optional[int] = None
    ):
        self.api_key = api_key if api_key is not None else settings.stripe_secret_key
        self.webhook_secret = webhook_secret if webhook_secret is not None else settings.stripe_webhook_secret
        self.webhook_tolerance = webhook_tolerance or settings.stripe_webhook_tolerance_seconds
        self.return_url = return_url or f"{settings.frontend_url.rstrip('/')}/booking/confirmation"

        timeout = timeout_seconds or settings.stripe_timeout_seconds
        stripe.default_http_client = stripe.RequestsClient(timeout=timeout)
        stripe.max_network_retries = (
            max_network_retries if max_network_retries is not None else settings.stripe_max_network_retries
        )

    # ================================
    # Error translation
    # ================================

    def _translate(self, exc: Exception, action: str) -> GatewayError:
        if isinstance(exc, stripe.APIConnectionError):
            logger.error(f"Stripe connection failure during {action}: {exc}")
            return GatewayConnectionError(f"Payment gateway unreachable during {action}", "connection_error")
        if isinstance(exc, stripe.CardError):
            message = exc.user_message or str(exc)
            logger.warning(f"Stripe card error during {action}: {message}")
            return GatewayError(message, exc.code or "card_error")
        if isinstance(exc, stripe.StripeError):
            message = exc.user_message or str(exc)
            logger.error(f"Stripe error during {action}: {message}")
            return GatewayError(message, exc.code or "stripe_error")
        return GatewayError(str(exc))

    @staticmethod
    def _to_intent(intent) -> GatewayIntent:
        last_error = _get(intent, "last_payment_error")
        latest_charge = _get(intent, "latest_charge")
        if latest_charge is not None and not isinstance(latest_charge, str):
            latest_charge = _get(latest_charge, "id")
        payment_method = _get(intent, "payment_method")
        if payment_method is not None and not isinstance(payment_method, str):
            payment_method = _get(payment_method, "id")
        return GatewayIntent(
            id=_get(intent, "id"),
            status=_get(intent, "status"),
            client_secret=_get(intent, "client_secret"),
            latest_charge=latest_charge,
            payment_method=payment_method,
            amount=_get(intent, "amount"),
            currency=_get(intent, "currency"),
            last_error_message=_get(last_error, "message"),
            metadata={k: str(v) for k, v in _as_dict(_get(intent, "metadata")).items()},
        )

    @staticmethod
    def _to_card(method) -> CardSummary:
        card = _get(method, "card")
        return CardSummary(
            id=_get(method, "id"),
            type=_get(method, "type", "card"),
            last4=_get(card, "last4"),
            brand=_get(card, "brand"),
            exp_month=_get(card, "exp_month"),
            exp_year=_get(card, "exp_year"),
        )

    # ================================
    # Payment intents
    # ================================

    def create_and_confirm_intent(
        self,
        amount_minor: int,
        currency: str,
        payment_method_id: str,
        description: str,
        metadata: Dict[str, str],
        idempotency_key: str
    ) -> GatewayIntent:
        """Create a PaymentIntent and confirm it immediately."""
        try:
            intent = stripe.PaymentIntent.create(
                api_key=self.api_key,
                idempotency_key=idempotency_key,
                amount=amount_minor,
                currency=currency.lower(),
                payment_method=payment_method_id,
                description=description,
                metadata=metadata,
                confirmation_method="automatic",
                confirm=True,
                return_url=self.return_url,
            )
        except stripe.StripeError as e:
            raise self._translate(e, "capture") from e
        return self._to_intent(intent)

    def create_intent(
        self,
        amount_minor: int,
        currency: str,
        customer_id: Optional[str] = None,
        description: Optional[str] = None
    ) -> GatewayIntent:
        """Create an unconfirmed PaymentIntent for client-side confirmation."""
        params = {
            "amount": amount_minor,
            "currency": currency.lower(),
            "confirmation_method": "manual",
            "confirm": False,
        }
        if customer_id:
            params["customer"] = customer_id
        if description:
            params["description"] = description
        try:
            intent = stripe.PaymentIntent.create(api_key=self.api_key, **params)
        except stripe.StripeError as e:
            raise self._translate(e, "intent creation") from e
        return self._to_intent(intent)

    def retrieve_intent(self, intent_id: str) -> GatewayIntent:
        try:
            intent = stripe.PaymentIntent.retrieve(intent_id, api_key=self.api_key)
        except stripe.StripeError as e:
            raise self._translate(e, "intent lookup") from e
        return self._to_intent(intent)

    def find_intent_for_payment(self, payment_id: str) -> Optional[GatewayIntent]:
        """Find the intent created for a local payment id via its metadata."""
        try:
            result = stripe.PaymentIntent.search(
                api_key=self.api_key,
                query=f"metadata['paymentId']:'{payment_id}'",
                limit=1,
            )
        except stripe.StripeError as e:
            raise self._translate(e, "intent search") from e
        data = list(_get(result, "data") or [])
        return self._to_intent(data[0]) if data else None

    # ================================
    # Cards
    # ================================

    def retrieve_card(self, payment_method_id: str) -> Optional[CardSummary]:
        try:
            method = stripe.PaymentMethod.retrieve(payment_method_id, api_key=self.api_key)
        except stripe.StripeError as e:
            raise self._translate(e, "payment method lookup") from e
        if not _get(method, "card"):
            return None
        return self._to_card(method)

    def list_card_methods(self, customer_id: str) -> List[CardSummary]:
        try:
            methods = stripe.PaymentMethod.list(api_key=self.api_key, customer=customer_id, type="card")
        except stripe.StripeError as e:
            raise self._translate(e, "payment method listing") from e
        return [self._to_card(method) for method in _get(methods, "data") or []]

    # ================================
    # Refunds
    # ================================

    def refund(
        self,
        charge_id: str,
        amount_minor: int,
        idempotency_key: str,
        metadata: Optional[Dict[str, str]] = None
    ) -> GatewayRefund:
        try:
            refund = stripe.Refund.create(
                api_key=self.api_key,
                idempotency_key=idempotency_key,
                charge=charge_id,
                amount=amount_minor,
                reason="requested_by_customer",
                metadata=metadata or {},
            )
        except stripe.StripeError as e:
            raise self._translate(e, "refund") from e
        return GatewayRefund(id=_get(refund, "id"), status=_get(refund, "status"), amount=_get(refund, "amount"))

    # ================================
    # Webhooks
    # ================================

    def verify_webhook(self, payload: bytes, signature_header: Optional[str]) -> Dict[str, Any]:
        """
        Verify a webhook signature and return the decoded event payload.

        Raises GatewaySignatureError when the secret is missing, the header
        is missing, or the signature/timestamp do not verify.
        """
        if not self.webhook_secret:
            raise GatewaySignatureError("Stripe webhook secret is not configured", "not_configured")
        if not signature_header:
            raise GatewaySignatureError("Missing Stripe-Signature header", "missing_signature")
        try:
            body = payload.decode("utf-8")
            stripe.WebhookSignature.verify_header(
                body, signature_header, self.webhook_secret, self.webhook_tolerance
            )
        except stripe.SignatureVerificationError as e:
            raise GatewaySignatureError(f"Invalid Stripe signature: {e}", "invalid_signature") from e
        except UnicodeDecodeError as e:
            raise GatewaySignatureError("Webhook body is not valid UTF-8", "invalid_payload") from e

        try:
            return json.loads(body)
        except json.JSONDecodeError as e:
            raise GatewaySignatureError("Webhook body is not valid JSON", "invalid_payload") from e
