# bangbuy/services/email.py
"""
Email dispatch for the BangBuy messaging core.

Providers turn an EmailMessage into a provider message id or raise a
DispatchError subclass. EmailService wraps a provider with a deadline and
converts every outcome into an EmailDispatchResult, so nothing thrown by a
provider escapes to the notification pipelines.

Failure classification:
- Provider rejected recipient/content/credentials (HTTP 400/401/403/422) -> permanent
- Everything else, including timeouts and network errors -> transient
"""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeout
from dataclasses import dataclass
import logging
import re
import time
from typing import Any, Dict, List, Optional

import resend
import ulid

from ..core.config import settings
from ..core.exceptions import (
    DispatchError,
    PermanentDispatchError,
    ServiceException,
    TransientDispatchError,
)
from ..monitoring.prometheus_metrics import prometheus_metrics
from .base import BaseService

logger = logging.getLogger(__name__)

PERMANENT_PROVIDER_CODES = {"400", "401", "403", "422"}
PERMANENT_PROVIDER_ERROR_TYPES = {
    "validation_error",
    "missing_required_field",
    "invalid_from_address",
    "invalid_to_address",
    "invalid_api_key",
    "restricted_api_key",
    "missing_api_key",
}

_dispatch_executor = ThreadPoolExecutor(max_workers=4, thread_name_prefix="email-dispatch")


@dataclass
class EmailMessage:
    to: str
    subject: str
    html: str
    text: str
    category: str
    dedupe_key: Optional[str] = None
    user_id: Optional[str] = None


@dataclass
class EmailDispatchResult:
    success: bool
    message_id: Optional[str] = None
    error: Optional[str] = None
    provider_code: Optional[str] = None
    retryable: bool = False

    @classmethod
    def failed(cls, error: DispatchError) -> "EmailDispatchResult":
        return cls(
            success=False,
            error=error.message,
            provider_code=error.provider_code,
            retryable=error.retryable,
        )


def html_to_text(html_content: str) -> str:
    """Convert HTML content to plain text for better deliverability."""
    text = re.sub(r"<[^>]+>", "", html_content)
    text = re.sub(r"\s+", " ", text)
    return text.strip()


def classify_provider_error(exc: Exception) -> DispatchError:
    """Map a provider exception onto the transient/permanent taxonomy."""
    code = getattr(exc, "code", None)
    error_type = getattr(exc, "error_type", None)
    message = str(getattr(exc, "message", None) or exc) or type(exc).__name__
    code_str = str(code) if code is not None else None
    if code_str in PERMANENT_PROVIDER_CODES or error_type in PERMANENT_PROVIDER_ERROR_TYPES:
        return PermanentDispatchError(message, provider_code=code_str)
    return TransientDispatchError(message, provider_code=code_str)


class EmailProvider:
    """Interface for email providers."""

    name = "base"

    def send(self, message: EmailMessage) -> str:
        """
        Deliver one message.

        Returns:
            Provider message id

        Raises:
            TransientDispatchError / PermanentDispatchError
        """
        raise NotImplementedError


class ResendEmailProvider(EmailProvider):
    """Sends through the Resend API, passing the dedupe key as the idempotency key."""

    name = "resend"

    def __init__(self, api_key: str, from_email: str) -> None:
        if not api_key:
            raise ServiceException("Resend API key not configured")
        resend.api_key = api_key
        self.from_email = from_email

    def send(self, message: EmailMessage) -> str:
        params: Dict[str, Any] = {
            "from": self.from_email,
            "to": [message.to],
            "subject": message.subject,
            "html": message.html,
            "text": message.text or html_to_text(message.html),
            "tags": [{"name": "category", "value": message.category}],
        }
        options: Dict[str, Any] = {}
        if message.dedupe_key:
            params["headers"] = {"X-Entity-Ref-ID": message.dedupe_key}
            options["idempotency_key"] = message.dedupe_key

        try:
            if options:
                response = resend.Emails.send(params, options)
            else:
                response = resend.Emails.send(params)
        except Exception as exc:
            raise classify_provider_error(exc) from exc

        message_id = response.get("id") if isinstance(response, dict) else getattr(response, "id", None)
        if not message_id:
            raise TransientDispatchError("Resend response did not include a message id")
        return str(message_id)


class ConsoleEmailProvider(EmailProvider):
    """Logs emails instead of sending them (development and tests)."""

    name = "console"

    def __init__(self) -> None:
        self.sent: List[EmailMessage] = []

    def send(self, message: EmailMessage) -> str:
        self.sent.append(message)
        logger.info(
            f"[EMAIL] (console) to={message.to} subject={message.subject!r}",
            extra={"category": message.category, "dedupe_key": message.dedupe_key},
        )
        return f"console-{ulid.ULID()}"


def build_email_provider() -> EmailProvider:
    """Create the provider selected by settings.email_provider."""
    if settings.email_provider == "resend":
        return ResendEmailProvider(settings.get_resend_api_key() or "", settings.email_from)
    return ConsoleEmailProvider()


class EmailService:
    """
    Dispatches EmailMessages through a provider under a deadline.

    ``send`` never raises: every failure comes back as an unsuccessful
    EmailDispatchResult with ``retryable`` set for transient failures.
    """

    def __init__(
        self,
        provider: Optional[EmailProvider] = None,
        timeout_seconds: Optional[float] = None,
    ) -> None:
        self.provider = provider or build_email_provider()
        self.timeout_seconds = (
            timeout_seconds if timeout_seconds is not None else settings.email_dispatch_timeout_seconds
        )
        self.logger = logging.getLogger(self.__class__.__name__)

    @BaseService.measure_operation("send_email")
    def send(self, message: EmailMessage) -> EmailDispatchResult:
        start = time.monotonic()
        future = _dispatch_executor.submit(self.provider.send, message)
        try:
            message_id = future.result(timeout=self.timeout_seconds)
        except FutureTimeout:
            future.cancel()
            result = EmailDispatchResult.failed(
                TransientDispatchError(f"Email dispatch timed out after {self.timeout_seconds}s")
            )
        except DispatchError as exc:
            result = EmailDispatchResult.failed(exc)
        except Exception as exc:
            result = EmailDispatchResult.failed(
                TransientDispatchError(str(exc) or type(exc).__name__)
            )
        else:
            result = EmailDispatchResult(success=True, message_id=message_id)
        finally:
            prometheus_metrics.observe_notification_dispatch(
                message.category, time.monotonic() - start
            )

        if result.success:
            self.logger.info(
                f"[EMAIL] Sent {message.category} to {message.to}",
                extra={"dedupe_key": message.dedupe_key, "message_id": result.message_id},
            )
        else:
            self.logger.warning(
                f"[EMAIL] Failed {message.category} to {message.to}: {result.error}",
                extra={
                    "dedupe_key": message.dedupe_key,
                    "retryable": result.retryable,
                    "provider_code": result.provider_code,
                },
            )
        return result
