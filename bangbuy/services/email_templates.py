# bangbuy/services/email_templates.py
"""
Email template rendering for notification emails.

Provides Jinja2 rendering of the HTML bodies under ``bangbuy/templates/email``
plus the plain-text and subject lines that go with them.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
import logging
from pathlib import Path
from typing import Any, Dict, Optional

from jinja2 import Environment, FileSystemLoader, TemplateError, select_autoescape

from ..core.config import settings
from ..core.constants import BRAND_NAME, EMAIL_SNIPPET_LENGTH
from ..core.exceptions import ServiceException

logger = logging.getLogger(__name__)

TEMPLATE_DIR = Path(__file__).parent.parent / "templates"


@dataclass
class RenderedEmail:
    subject: str
    html: str
    text: str


def truncate_snippet(content: str, limit: int = EMAIL_SNIPPET_LENGTH) -> str:
    """Shorten message content for an email preview ("..." counts toward the limit)."""
    content = content.strip()
    if len(content) <= limit:
        return content
    return content[: limit - 3] + "..."


def conversation_url(conversation_id: str) -> str:
    return f"{settings.site_url}/chat?conversation={conversation_id}"


def settings_url() -> str:
    return f"{settings.site_url}/settings"


class EmailTemplateRenderer:
    """Renders notification emails with a shared Jinja2 environment."""

    def __init__(self, template_dir: Optional[Path] = None) -> None:
        self.env = Environment(
            loader=FileSystemLoader(str(template_dir or TEMPLATE_DIR)),
            autoescape=select_autoescape(["html"]),
            trim_blocks=True,
            lstrip_blocks=True,
        )

    def _common_context(self) -> Dict[str, Any]:
        return {
            "brand_name": BRAND_NAME,
            "current_year": datetime.now(timezone.utc).year,
            "site_url": settings.site_url,
            "settings_url": settings_url(),
        }

    def render(self, template_name: str, subject: str, **context: Any) -> str:
        """
        Raises:
            ServiceException: Template missing or broken (code TEMPLATE_RENDER_FAILED)
        """
        try:
            template = self.env.get_template(template_name)
            return template.render(subject=subject, **{**self._common_context(), **context})
        except TemplateError as e:
            logger.error(f"[EMAIL] Failed to render {template_name}: {e}")
            raise ServiceException(
                f"Could not render email template {template_name}",
                code="TEMPLATE_RENDER_FAILED",
                details={"template": template_name},
            ) from e

    def new_message(
        self,
        recipient_name: str,
        sender_name: str,
        content: str,
        conversation_id: str,
    ) -> RenderedEmail:
        """First message in a new conversation."""
        snippet = truncate_snippet(content)
        url = conversation_url(conversation_id)
        subject = f"{sender_name} sent you a message on {BRAND_NAME}"
        html = self.render(
            "email/new_message.html",
            subject,
            recipient_name=recipient_name,
            sender_name=sender_name,
            snippet=snippet,
            conversation_url=url,
        )
        text = (
            f"Hi {recipient_name},\n\n"
            f"{sender_name} started a conversation with you:\n\n"
            f"\"{snippet}\"\n\n"
            f"Reply: {url}\n"
        )
        return RenderedEmail(subject=subject, html=html, text=text)

    def unread_reminder(
        self,
        recipient_name: str,
        sender_name: str,
        content: str,
        conversation_id: str,
        waiting_hours: int,
    ) -> RenderedEmail:
        """Reminder for a message left unread past the user's threshold."""
        snippet = truncate_snippet(content)
        url = conversation_url(conversation_id)
        subject = f"[Reminder] {sender_name} is waiting for your reply on {BRAND_NAME}"
        html = self.render(
            "email/unread_reminder.html",
            subject,
            recipient_name=recipient_name,
            sender_name=sender_name,
            snippet=snippet,
            conversation_url=url,
            waiting_hours=waiting_hours,
        )
        text = (
            f"Hi {recipient_name},\n\n"
            f"{sender_name} is still waiting for your reply:\n\n"
            f"\"{snippet}\"\n\n"
            f"Open the conversation: {url}\n"
        )
        return RenderedEmail(subject=subject, html=html, text=text)

    def new_reply(
        self,
        recipient_name: str,
        sender_name: str,
        content: str,
        conversation_id: str,
    ) -> RenderedEmail:
        snippet = truncate_snippet(content)
        url = conversation_url(conversation_id)
        subject = f"New message from {sender_name} on {BRAND_NAME}"
        html = self.render(
            "email/new_reply.html",
            subject,
            recipient_name=recipient_name,
            sender_name=sender_name,
            snippet=snippet,
            conversation_url=url,
        )
        text = f"Hi {recipient_name},\n\n{sender_name} wrote:\n\n\"{snippet}\"\n\nReply: {url}\n"
        return RenderedEmail(subject=subject, html=html, text=text)

    def offer(
        self,
        action: str,
        recipient_name: str,
        actor_name: str,
        wish_title: str,
        action_url: str,
        price: Optional[str] = None,
        currency: Optional[str] = None,
        note: Optional[str] = None,
    ) -> RenderedEmail:
        """Offer lifecycle email; ``action`` is offer_created, offer_accepted or offer_rejected."""
        subjects = {
            "offer_created": f"New offer on \"{wish_title}\"",
            "offer_accepted": f"Your offer on \"{wish_title}\" was accepted",
            "offer_rejected": f"Your offer on \"{wish_title}\" was not accepted",
        }
        subject = subjects[action]
        html = self.render(
            f"email/{action}.html",
            subject,
            recipient_name=recipient_name,
            actor_name=actor_name,
            wish_title=wish_title,
            action_url=action_url,
            price=price,
            currency=currency or "",
            note=truncate_snippet(note) if note else None,
        )
        lines = [f"Hi {recipient_name},", "", subject + "."]
        if price:
            lines.append(f"Price: {price} {currency or ''}".rstrip())
        lines.extend(["", f"Details: {action_url}"])
        return RenderedEmail(subject=subject, html=html, text="\n".join(lines) + "\n")

    def test_notification(self) -> RenderedEmail:
        sent_at = datetime.now(timezone.utc).isoformat()
        subject = f"[TEST] {BRAND_NAME} notification check"
        html = self.render("email/test.html", subject, sent_at=sent_at)
        text = f"This is a test notification from {BRAND_NAME}.\nSent at {sent_at}.\n"
        return RenderedEmail(subject=subject, html=html, text=text)
