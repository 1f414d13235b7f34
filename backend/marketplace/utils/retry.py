"""Bounded retry-after-credential-refresh.

Every store, gateway, and API-client call that can fail with an expired
credential goes through :func:`retry_on_auth`: the call is attempted, and on
``AuthRequired``/``AuthExpired`` the credential is refreshed once and the call
repeated. A second auth failure, or a failed refresh, surfaces ``AuthExpired``.
"""

from __future__ import annotations

import functools
import logging
from typing import Callable, Optional, TypeVar

from .errors import AuthExpired, AuthRequired

logger = logging.getLogger(__name__)

T = TypeVar("T")


def call_with_auth_retry(
    fn: Callable[[], T],
    refresh: Optional[Callable[[], bool]],
    *,
    retries: int = 1,
    label: str = "call",
) -> T:
    attempt = 0
    while True:
        try:
            return fn()
        except AuthRequired as exc:
            if refresh is None or attempt >= retries:
                raise AuthExpired(
                    "Your session has expired. Please log in again.",
                    booking_id=exc.booking_id,
                    attempted=exc.attempted,
                ) from exc
            attempt += 1
            logger.info("auth_refresh label=%s attempt=%d", label, attempt)
            if not refresh():
                logger.warning("auth_refresh_failed label=%s", label)
                raise AuthExpired(
                    "Your session has expired. Please log in again.",
                    booking_id=exc.booking_id,
                    attempted=exc.attempted,
                ) from exc


def retry_on_auth(refresh_attr: str = "refresh_credentials", retries: int = 1):
    """Method decorator: retry once after ``self.<refresh_attr>()`` on auth failure.

    The refresh callable returns True when a new credential was obtained.
    """

    def decorator(method: Callable[..., T]) -> Callable[..., T]:
        @functools.wraps(method)
        def wrapper(self, *args, **kwargs) -> T:
            refresh = getattr(self, refresh_attr, None)
            return call_with_auth_retry(
                lambda: method(self, *args, **kwargs),
                refresh,
                retries=retries,
                label=method.__qualname__,
            )

        return wrapper

    return decorator
