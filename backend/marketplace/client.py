"""HTTP client for presentation layers and scripts.

Wraps the bookings API with httpx. Every call goes through the shared
bounded auth retry: on a 401 the client rotates its credential once via
``/auth/refresh`` and repeats the request; a second 401 surfaces
``AuthExpired``.
"""

from __future__ import annotations

import logging
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional

import httpx

from .realtime.events import BookingEvent
from .realtime.reconcile import ViewerBookings
from .utils.errors import (
    AccessDenied,
    AuthExpired,
    AuthRequired,
    BookingError,
    InvalidPaymentState,
    InvalidTransition,
    NotFound,
    PaymentGatewayError,
    StaleState,
    ValidationError,
)
from .utils.json import loads
from .utils.retry import retry_on_auth

logger = logging.getLogger(__name__)

_ERRORS_BY_CODE = {
    cls.code: cls
    for cls in (
        InvalidTransition,
        StaleState,
        NotFound,
        ValidationError,
        AccessDenied,
        AuthRequired,
        AuthExpired,
        PaymentGatewayError,
        InvalidPaymentState,
    )
}


def _json_amount(value: Any) -> Any:
    return str(value) if isinstance(value, Decimal) else value


class MarketplaceClient:
    def __init__(
        self,
        base_url: str = "http://localhost:8000",
        access_token: Optional[str] = None,
        refresh_token: Optional[str] = None,
        http: Optional[httpx.Client] = None,
        api_prefix: str = "/api/v1",
        on_tokens: Optional[Callable[[str, Optional[str]], None]] = None,
    ) -> None:
        self._http = http or httpx.Client(base_url=base_url, timeout=10.0)
        self.access_token = access_token
        self.refresh_token = refresh_token
        self.api_prefix = api_prefix.rstrip("/")
        self._on_tokens = on_tokens

    def close(self) -> None:
        self._http.close()

    # ── credentials ──────────────────────────────────────────────────────

    def login(self, email: str, password: str) -> Dict[str, Any]:
        r = self._http.post("/auth/login", data={"username": email, "password": password})
        data = self._handle(r)
        self._store_tokens(data)
        return data

    def refresh_credentials(self) -> bool:
        """Rotate tokens with the refresh token. Returns False when that is not possible."""
        if not self.refresh_token:
            return False
        r = self._http.post("/auth/refresh", json={"refresh_token": self.refresh_token})
        if r.status_code != 200:
            logger.info("client_refresh_rejected status=%s", r.status_code)
            return False
        self._store_tokens(r.json())
        return True

    def _store_tokens(self, data: Dict[str, Any]) -> None:
        self.access_token = data.get("access_token") or self.access_token
        self.refresh_token = data.get("refresh_token") or self.refresh_token
        if self._on_tokens is not None:
            self._on_tokens(self.access_token, self.refresh_token)

    # ── transport ────────────────────────────────────────────────────────

    def _headers(self) -> Dict[str, str]:
        if not self.access_token:
            return {}
        return {"Authorization": f"Bearer {self.access_token}"}

    def _handle(self, r: httpx.Response) -> Any:
        if r.status_code < 400:
            return r.json() if r.content else None
        detail: Any = None
        try:
            detail = r.json().get("detail")
        except ValueError:
            pass
        info = detail if isinstance(detail, dict) else {"message": str(detail or r.text)}
        message = info.get("message") or f"HTTP {r.status_code}"
        kwargs = {
            "booking_id": info.get("booking_id"),
            "attempted": info.get("attempted"),
            "field_errors": info.get("field_errors") if isinstance(info.get("field_errors"), dict) else None,
        }
        if r.status_code == 401:
            raise AuthRequired(message, **kwargs)
        error_cls = _ERRORS_BY_CODE.get(info.get("code"))
        if error_cls is None:
            error_cls = {404: NotFound, 403: AccessDenied, 409: StaleState, 422: ValidationError}.get(
                r.status_code, BookingError
            )
        raise error_cls(message, **kwargs)

    @retry_on_auth()
    def request(self, method: str, path: str, **kwargs: Any) -> Any:
        r = self._http.request(method, f"{self.api_prefix}{path}", headers=self._headers(), **kwargs)
        return self._handle(r)

    # ── bookings ─────────────────────────────────────────────────────────

    def create_booking(
        self,
        service_provider_id: int,
        service_id: str,
        hourly_rate: Any,
        estimated_hours: Any,
        **extra: Any,
    ) -> Dict[str, Any]:
        body = {
            "service_provider_id": service_provider_id,
            "service_id": str(service_id),
            "hourly_rate": _json_amount(hourly_rate),
            "estimated_hours": _json_amount(estimated_hours),
            **{k: _json_amount(v) for k, v in extra.items()},
        }
        return self.request("POST", "/bookings", json=body)

    def get_booking(self, booking_id: int) -> Dict[str, Any]:
        return self.request("GET", f"/bookings/{booking_id}")

    def list_client_bookings(self) -> List[Dict[str, Any]]:
        return self.request("GET", "/bookings/me/client")

    def list_provider_bookings(self) -> List[Dict[str, Any]]:
        return self.request("GET", "/bookings/me/provider")

    def transition(
        self,
        booking_id: int,
        target_status: str,
        payload: Optional[Dict[str, Any]] = None,
        reason: Optional[str] = None,
    ) -> Dict[str, Any]:
        body: Dict[str, Any] = {"target_status": target_status}
        if payload is not None:
            body["payload"] = {k: _json_amount(v) for k, v in payload.items()}
        if reason is not None:
            body["reason"] = reason
        return self.request("POST", f"/bookings/{booking_id}/transitions", json=body)

    def open_conversation(self, booking_id: int) -> Dict[str, Any]:
        return self.request("POST", f"/bookings/{booking_id}/conversation")

    def is_reviewable(self, booking_id: int) -> bool:
        return bool(self.request("GET", f"/bookings/{booking_id}/reviewable")["reviewable"])

    def submit_review(self, booking_id: int, rating: int, comment: Optional[str] = None) -> Dict[str, Any]:
        return self.request("POST", f"/bookings/{booking_id}/reviews", json={"rating": rating, "comment": comment})

    # ── payments ─────────────────────────────────────────────────────────

    def authorize_payment(
        self,
        booking_id: int,
        total_amount: Any,
        service_provider_id: int,
        currency: Optional[str] = None,
        application_fee_amount: Any = None,
    ) -> Dict[str, Any]:
        body: Dict[str, Any] = {
            "booking_id": booking_id,
            "total_amount": _json_amount(total_amount),
            "service_provider_id": service_provider_id,
        }
        if currency is not None:
            body["currency"] = currency
        if application_fee_amount is not None:
            body["application_fee_amount"] = _json_amount(application_fee_amount)
        return self.request("POST", "/payments/authorize", json=body)

    def capture_payment(self, payment_intent_id: str) -> Dict[str, Any]:
        return self.request("POST", "/payments/capture", json={"payment_intent_id": payment_intent_id})

    def refund_payment(self, payment_intent_id: str, reason: Optional[str] = None) -> Dict[str, Any]:
        body: Dict[str, Any] = {"payment_intent_id": payment_intent_id}
        if reason is not None:
            body["reason"] = reason
        return self.request("POST", "/payments/refund", json=body)

    # ── realtime ─────────────────────────────────────────────────────────

    def bookings_ws_path(self) -> str:
        """Path for the live bookings socket, authenticated with the current access token."""
        return f"{self.api_prefix}/ws/bookings?token={self.access_token or ''}"

    def booking_views(self, viewer_id: Optional[int] = None) -> ViewerBookings:
        """Load the viewer's client and provider lists into a reconcilable view."""
        if viewer_id is None:
            viewer_id = int(self.me()["id"])
        view = ViewerBookings(viewer_id)
        seen: Dict[int, Dict[str, Any]] = {}
        for booking in self.list_client_bookings() + self.list_provider_bookings():
            seen[booking["id"]] = booking
        view.load(seen.values())
        return view

    @staticmethod
    def apply_frame(view: ViewerBookings, frame: Any) -> bool:
        """Fold one socket frame into ``view``. Returns True when the view changed.

        A ``bookings.snapshot`` frame replaces the view; ``booking.<event>``
        frames are reconciled by booking id. Anything else is ignored.
        """
        envelope = loads(frame) if isinstance(frame, (str, bytes)) else frame
        if not isinstance(envelope, dict):
            return False
        if envelope.get("type") == "bookings.snapshot":
            view.load((envelope.get("payload") or {}).get("bookings") or [])
            return True
        if not str(envelope.get("type") or "").startswith("booking."):
            return False
        event = BookingEvent.from_envelope(envelope)
        if event is None:
            logger.warning("client_frame_ignored type=%s", envelope.get("type"))
            return False
        return view.apply(event)
