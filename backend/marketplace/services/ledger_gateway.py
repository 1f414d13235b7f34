"""Escrow payments against a Stripe-style processor.

Funds are held with a manual-capture PaymentIntent routed to the provider's
connected account, then captured on completion or released/refunded. This
module never touches booking state; the state machine decides what to do with
each result.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Callable, Dict, Optional, Protocol

import httpx

from ..core.config import settings
from ..utils.errors import (
    AuthExpired,
    InvalidPaymentState,
    NotFound,
    PAYMENT_FAILED_MESSAGE,
    PaymentGatewayError,
    ValidationError,
)
from ..utils.retry import retry_on_auth

logger = logging.getLogger(__name__)

REFUND_REASONS = frozenset({"duplicate", "fraudulent", "requested_by_customer"})
DEFAULT_REFUND_REASON = "requested_by_customer"
# Intents in these states have not moved funds yet and are released by cancelling.
CANCELLABLE_STATUSES = frozenset(
    {"requires_payment_method", "requires_confirmation", "requires_action", "requires_capture"}
)


def to_minor_units(amount: Any) -> int:
    """Convert a major-unit amount (150.005) to integer cents, rounding half up."""
    return int((Decimal(str(amount)) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def from_minor_units(value: int) -> Decimal:
    return (Decimal(int(value)) / 100).quantize(Decimal("0.01"))


def platform_fee(amount: Any, rate: Optional[Decimal] = None) -> Decimal:
    rate = settings.PLATFORM_FEE_RATE if rate is None else Decimal(str(rate))
    return (Decimal(str(amount)) * rate).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)


def sanitize_reason(reason: Optional[str]) -> str:
    value = (reason or "").strip().lower()
    return value if value in REFUND_REASONS else DEFAULT_REFUND_REASON


def amount_refunded(intent: Dict[str, Any]) -> int:
    """Minor units already refunded on a captured intent, read from its expanded charge."""
    charge = intent.get("latest_charge")
    if isinstance(charge, dict):
        return int(charge.get("amount_refunded") or 0)
    return int(intent.get("amount_refunded") or 0)


@dataclass
class PaymentAuthorization:
    payment_intent_id: str
    client_secret: Optional[str]
    status: str
    amount: int  # minor units
    currency: str
    destination_account_id: Optional[str] = None
    application_fee_amount: Optional[int] = None
    booking_id: Optional[int] = None


@dataclass
class CaptureResult:
    payment_intent_id: str
    status: str
    amount_received: int  # minor units


@dataclass
class RefundResult:
    payment_intent_id: str
    status: str  # "canceled" (hold released) or "refunded"
    refunded_amount: int  # minor units
    refund_id: Optional[str] = None


class LedgerGateway(Protocol):
    def authorize(
        self,
        booking_id: int,
        amount: Decimal,
        currency: str,
        destination_account_id: str,
        fee_amount: Optional[Decimal] = None,
        *,
        metadata: Optional[Dict[str, Any]] = None,
        idempotency_key: Optional[str] = None,
    ) -> PaymentAuthorization: ...

    def capture(
        self, payment_intent_id: str, *, booking_id: Optional[int] = None, idempotency_key: Optional[str] = None
    ) -> CaptureResult: ...

    def cancel_or_refund(
        self,
        payment_intent_id: str,
        reason: Optional[str] = None,
        *,
        booking_id: Optional[int] = None,
        idempotency_key: Optional[str] = None,
    ) -> RefundResult: ...

    def retrieve(self, payment_intent_id: str) -> Dict[str, Any]: ...


class StripeLedgerGateway:
    """Ledger over the Stripe REST API (form-encoded, bearer secret key).

    ``http`` may be an injected ``httpx.Client`` (tests use a MockTransport);
    otherwise a short-lived client is opened per call. ``key_loader`` lets the
    gateway pick up a rotated secret key when the processor answers 401.
    """

    def __init__(
        self,
        secret_key: Optional[str] = None,
        api_base: Optional[str] = None,
        timeout: Optional[float] = None,
        http: Optional[httpx.Client] = None,
        key_loader: Optional[Callable[[], Optional[str]]] = None,
    ) -> None:
        self.secret_key = settings.STRIPE_SECRET_KEY if secret_key is None else secret_key
        self.api_base = (api_base or settings.STRIPE_API_BASE).rstrip("/")
        self.timeout = settings.STRIPE_TIMEOUT_SECONDS if timeout is None else timeout
        self._http = http
        self._key_loader = key_loader

    def refresh_credentials(self) -> bool:
        if self._key_loader is None:
            return False
        new_key = (self._key_loader() or "").strip()
        if not new_key or new_key == self.secret_key:
            return False
        self.secret_key = new_key
        logger.info("ledger_credentials_refreshed")
        return True

    # ── transport ────────────────────────────────────────────────────────

    def _send(self, method: str, url: str, data: Optional[Dict[str, Any]], headers: Dict[str, str]) -> httpx.Response:
        if self._http is not None:
            return self._http.request(method, url, data=data, headers=headers)
        with httpx.Client(timeout=self.timeout) as client:
            return client.request(method, url, data=data, headers=headers)

    def _request(
        self,
        method: str,
        path: str,
        data: Optional[Dict[str, Any]] = None,
        *,
        idempotency_key: Optional[str] = None,
        booking_id: Optional[int] = None,
    ) -> Dict[str, Any]:
        if not self.secret_key:
            raise PaymentGatewayError("Payment processor is not configured.", booking_id=booking_id)
        headers = {"Authorization": f"Bearer {self.secret_key}"}
        if idempotency_key:
            headers["Idempotency-Key"] = idempotency_key
        try:
            r = self._send(method, f"{self.api_base}{path}", data, headers)
        except httpx.HTTPError as exc:
            logger.error("ledger_transport_error path=%s booking=%s err=%s", path, booking_id, exc)
            raise PaymentGatewayError(PAYMENT_FAILED_MESSAGE, booking_id=booking_id) from exc

        if r.status_code < 400:
            try:
                return r.json()
            except ValueError as exc:
                raise PaymentGatewayError(PAYMENT_FAILED_MESSAGE, booking_id=booking_id) from exc

        err: Dict[str, Any] = {}
        try:
            err = (r.json() or {}).get("error") or {}
        except ValueError:
            pass
        logger.warning(
            "ledger_http_error path=%s status=%s code=%s booking=%s",
            path,
            r.status_code,
            err.get("code"),
            booking_id,
        )
        if r.status_code == 401:
            raise AuthExpired("Payment processor rejected our credentials.", booking_id=booking_id)
        if r.status_code == 404:
            raise NotFound("Payment not found.", booking_id=booking_id)
        if err.get("code") == "payment_intent_unexpected_state":
            raise InvalidPaymentState(
                err.get("message") or "Payment is not in a state that allows this.", booking_id=booking_id
            )
        raise PaymentGatewayError(PAYMENT_FAILED_MESSAGE, booking_id=booking_id)

    # ── operations ───────────────────────────────────────────────────────

    @retry_on_auth()
    def authorize(
        self,
        booking_id: int,
        amount: Decimal,
        currency: str,
        destination_account_id: str,
        fee_amount: Optional[Decimal] = None,
        *,
        metadata: Optional[Dict[str, Any]] = None,
        idempotency_key: Optional[str] = None,
    ) -> PaymentAuthorization:
        """Place a manual-capture hold for ``amount`` (major units) on behalf of the provider."""
        amount_minor = to_minor_units(amount)
        if amount_minor <= 0:
            raise ValidationError(
                "Amount must be positive.", booking_id=booking_id, field_errors={"amount": "not_positive"}
            )
        if not destination_account_id:
            raise ValidationError(
                "Service provider has no connected payout account.",
                booking_id=booking_id,
                field_errors={"service_provider_id": "no_payout_account"},
            )
        fee_minor = to_minor_units(platform_fee(amount) if fee_amount is None else fee_amount)
        if fee_minor < 0 or fee_minor > amount_minor:
            raise ValidationError(
                "Application fee must be between zero and the amount.",
                booking_id=booking_id,
                field_errors={"application_fee_amount": "out_of_range"},
            )
        currency = (currency or settings.DEFAULT_CURRENCY).lower()
        data: Dict[str, Any] = {
            "amount": amount_minor,
            "currency": currency,
            "capture_method": "manual",
            "automatic_payment_methods[enabled]": "true",
            "transfer_data[destination]": destination_account_id,
            "application_fee_amount": fee_minor,
            "description": f"Payment for booking {booking_id}",
            "metadata[booking_id]": str(booking_id),
        }
        for key, value in (metadata or {}).items():
            if value is not None:
                data[f"metadata[{key}]"] = str(value)
        intent = self._request(
            "POST",
            "/v1/payment_intents",
            data,
            idempotency_key=idempotency_key or str(uuid.uuid4()),
            booking_id=booking_id,
        )
        logger.info(
            "ledger_authorized booking=%s intent=%s amount=%s currency=%s",
            booking_id,
            intent.get("id"),
            amount_minor,
            currency,
        )
        return PaymentAuthorization(
            payment_intent_id=intent["id"],
            client_secret=intent.get("client_secret"),
            status=intent.get("status") or "",
            amount=int(intent.get("amount", amount_minor)),
            currency=intent.get("currency", currency),
            destination_account_id=destination_account_id,
            application_fee_amount=fee_minor,
            booking_id=booking_id,
        )

    @retry_on_auth()
    def retrieve(self, payment_intent_id: str) -> Dict[str, Any]:
        return self._request("GET", f"/v1/payment_intents/{payment_intent_id}")

    @retry_on_auth()
    def capture(
        self, payment_intent_id: str, *, booking_id: Optional[int] = None, idempotency_key: Optional[str] = None
    ) -> CaptureResult:
        intent = self._request("GET", f"/v1/payment_intents/{payment_intent_id}", booking_id=booking_id)
        if intent.get("status") != "requires_capture":
            raise InvalidPaymentState(
                f"Payment cannot be captured from status {intent.get('status')}.", booking_id=booking_id
            )
        data: Dict[str, Any] = {}
        if booking_id is not None:
            data["metadata[booking_id]"] = str(booking_id)
        captured = self._request(
            "POST",
            f"/v1/payment_intents/{payment_intent_id}/capture",
            data,
            idempotency_key=idempotency_key or str(uuid.uuid4()),
            booking_id=booking_id,
        )
        logger.info("ledger_captured booking=%s intent=%s", booking_id, payment_intent_id)
        return CaptureResult(
            payment_intent_id=payment_intent_id,
            status=captured.get("status") or "",
            amount_received=int(captured.get("amount_received") or 0),
        )

    @retry_on_auth()
    def cancel_or_refund(
        self,
        payment_intent_id: str,
        reason: Optional[str] = None,
        *,
        booking_id: Optional[int] = None,
        idempotency_key: Optional[str] = None,
    ) -> RefundResult:
        """Release an uncaptured hold, or refund whatever a captured payment has not yet refunded."""
        intent = self._request(
            "GET", f"/v1/payment_intents/{payment_intent_id}?expand[]=latest_charge", booking_id=booking_id
        )
        status = intent.get("status")
        reason = sanitize_reason(reason)
        key = idempotency_key or str(uuid.uuid4())
        metadata = {"metadata[booking_id]": str(booking_id)} if booking_id is not None else {}

        if status in CANCELLABLE_STATUSES:
            self._request(
                "POST",
                f"/v1/payment_intents/{payment_intent_id}/cancel",
                {"cancellation_reason": reason},
                idempotency_key=key,
                booking_id=booking_id,
            )
            logger.info("ledger_hold_released booking=%s intent=%s", booking_id, payment_intent_id)
            return RefundResult(
                payment_intent_id=payment_intent_id,
                status="canceled",
                refunded_amount=0,
                refund_id=f"canceled_{payment_intent_id}",
            )
        if status == "succeeded":
            received = int(intent.get("amount_received") or intent.get("amount") or 0)
            already_refunded = amount_refunded(intent)
            if already_refunded >= received:
                logger.info("ledger_refund_already_settled booking=%s intent=%s", booking_id, payment_intent_id)
                return RefundResult(
                    payment_intent_id=payment_intent_id,
                    status="refunded",
                    refunded_amount=already_refunded,
                )
            refund = self._request(
                "POST",
                "/v1/refunds",
                {
                    "payment_intent": payment_intent_id,
                    "amount": received - already_refunded,
                    "reason": reason,
                    **metadata,
                },
                idempotency_key=key,
                booking_id=booking_id,
            )
            logger.info(
                "ledger_refunded booking=%s intent=%s refund=%s", booking_id, payment_intent_id, refund.get("id")
            )
            return RefundResult(
                payment_intent_id=payment_intent_id,
                status="refunded",
                refunded_amount=int(refund.get("amount") or 0),
                refund_id=refund.get("id"),
            )
        raise InvalidPaymentState(
            f"Payment cannot be refunded from status {status}.", booking_id=booking_id
        )
