"""Outbound webhook dispatcher: one signed HTTP POST per call, never retries."""
from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timezone

import structlog
from aiohttp import ClientError, ClientSession, ClientTimeout, web

from webhook_service.core.exceptions import (
    ConfigurationError,
    DeliveryError,
    PermanentDeliveryError,
    TransientDeliveryError,
)
from webhook_service.signing import IDEMPOTENCY_HEADER, sign
from webhook_service.settings import settings

logger = structlog.get_logger(__name__)

_WEBHOOK_SESSION_KEY = "webhook_http_session"


def is_retryable_status(status: int) -> bool:
    return status == 429 or status >= 500


@dataclass(frozen=True)
class DeliveryOutcome:
    """Result of a single POST. Exactly one of ``http_status`` / ``error`` is set on failure."""

    success: bool
    http_status: int | None = None
    error: str | None = None
    response_excerpt: str | None = None
    sent_at: datetime | None = None

    @property
    def retryable(self) -> bool:
        if self.success:
            return False
        if self.http_status is None:
            # timeout or network failure
            return True
        return is_retryable_status(self.http_status)

    def to_error(self) -> DeliveryError | None:
        if self.success:
            return None
        message = self.error or f"HTTP {self.http_status}"
        error_cls = TransientDeliveryError if self.retryable else PermanentDeliveryError
        return error_cls(message, status=self.http_status)

    @property
    def summary(self) -> str:
        if self.success:
            return f"HTTP {self.http_status}"
        return self.error or f"HTTP {self.http_status}"


class DeliveryDispatcher:
    """Signs and POSTs one webhook body; classifies the outcome."""

    def __init__(
        self,
        session: ClientSession,
        *,
        user_agent: str,
        default_timeout: float,
        timeout_ceiling: float,
        hard_timeout: float,
        response_excerpt_chars: int = 1000,
    ):
        self._session = session
        self._user_agent = user_agent
        self._default_timeout = default_timeout
        self._timeout_ceiling = timeout_ceiling
        self._hard_timeout = hard_timeout
        self._excerpt_chars = response_excerpt_chars

    def effective_timeout(self, requested: float | None) -> float:
        """Tenant override clamped to the ceiling."""
        if requested is None or requested <= 0:
            return self._default_timeout
        return min(requested, self._timeout_ceiling)

    async def deliver(
        self,
        url: str,
        body: bytes | str,
        secret: str | None,
        *,
        timeout: float | None = None,
        idempotency_key: str | None = None,
    ) -> DeliveryOutcome:
        """POST ``body`` to ``url``.

        Raises :class:`ConfigurationError` before any network I/O if the
        secret is empty. Every other failure is returned as an outcome.
        """
        if not secret:
            raise ConfigurationError("webhook subscription has no secret")
        signed = sign(secret, body)
        headers = {
            "Content-Type": "application/json",
            "User-Agent": self._user_agent,
            **signed.headers(),
        }
        if idempotency_key:
            headers[IDEMPOTENCY_HEADER] = idempotency_key

        request_timeout = self.effective_timeout(timeout)
        sent_at = datetime.now(timezone.utc)
        try:
            status, text = await asyncio.wait_for(
                self._post(url, signed.body, headers, request_timeout),
                timeout=self._hard_timeout,
            )
        except asyncio.TimeoutError:
            return DeliveryOutcome(success=False, error=f"timeout after {request_timeout:g}s", sent_at=sent_at)
        except ClientError as exc:
            return DeliveryOutcome(
                success=False,
                error=f"network error: {type(exc).__name__}: {exc}"[:500],
                sent_at=sent_at,
            )

        excerpt = text[: self._excerpt_chars] if text else None
        return DeliveryOutcome(
            success=200 <= status < 300,
            http_status=status,
            response_excerpt=excerpt,
            sent_at=sent_at,
        )

    async def _post(
        self, url: str, body: bytes, headers: dict[str, str], timeout: float
    ) -> tuple[int, str]:
        async with self._session.post(
            url,
            data=body,
            headers=headers,
            timeout=ClientTimeout(total=timeout),
            allow_redirects=False,
        ) as resp:
            text = await resp.text(errors="replace")
            return resp.status, text


def build_dispatcher(session: ClientSession) -> DeliveryDispatcher:
    return DeliveryDispatcher(
        session,
        user_agent=settings.webhook_user_agent,
        default_timeout=settings.webhook_default_timeout_seconds,
        timeout_ceiling=settings.webhook_timeout_ceiling_seconds,
        hard_timeout=settings.webhook_hard_timeout_seconds,
        response_excerpt_chars=settings.webhook_response_excerpt_chars,
    )


async def start_webhook_session(app: web.Application) -> None:
    timeout = ClientTimeout(total=settings.webhook_hard_timeout_seconds)
    app[_WEBHOOK_SESSION_KEY] = ClientSession(timeout=timeout)


async def stop_webhook_session(app: web.Application) -> None:
    session = app.get(_WEBHOOK_SESSION_KEY)
    if session is not None:
        await session.close()


def get_webhook_session(app: web.Application) -> ClientSession:
    session = app.get(_WEBHOOK_SESSION_KEY)
    if session is None:
        raise RuntimeError("Webhook HTTP session not started")
    return session
