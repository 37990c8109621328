# bangbuy/api/dependencies/services.py
"""
Service layer dependencies for dependency injection.

Process-wide collaborators (broadcaster, typing presence, email service) are
created in the application lifespan and read from ``app.state``. Services
that need a database session are built per request.
"""

import logging

from fastapi import Depends, HTTPException, Request, status
from sqlalchemy.orm import Session

from ...services.action_email_service import ActionEmailService
from ...services.conversation_service import ConversationService
from ...services.email import EmailService
from ...services.first_message_notification_service import FirstMessageNotificationService
from ...services.message_email_service import MessageEmailService
from ...services.message_service import MessageService
from ...services.messaging.broadcaster import RealtimeBroadcaster
from ...services.notification_preference_service import NotificationPreferenceService
from ...services.typing_presence import TypingPresence
from .database import get_db

logger = logging.getLogger(__name__)


def get_broadcaster(request: Request) -> RealtimeBroadcaster:
    broadcaster = getattr(request.app.state, "broadcaster", None)
    if broadcaster is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Realtime broadcaster is not running",
        )
    return broadcaster


def get_typing_presence(request: Request) -> TypingPresence:
    presence = getattr(request.app.state, "typing_presence", None)
    if presence is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Typing presence is not running",
        )
    return presence


def get_email_service(request: Request) -> EmailService:
    """Get the shared EmailService, creating it on first use."""
    email_service = getattr(request.app.state, "email_service", None)
    if email_service is None:
        email_service = EmailService()
        request.app.state.email_service = email_service
    return email_service


def get_conversation_service(
    db: Session = Depends(get_db),
    broadcaster: RealtimeBroadcaster = Depends(get_broadcaster),
) -> ConversationService:
    return ConversationService(db, broadcaster=broadcaster)


def get_message_service(
    db: Session = Depends(get_db),
    broadcaster: RealtimeBroadcaster = Depends(get_broadcaster),
) -> MessageService:
    return MessageService(db, broadcaster=broadcaster)


def get_notification_preference_service(
    db: Session = Depends(get_db),
) -> NotificationPreferenceService:
    return NotificationPreferenceService(db)


def get_action_email_service(
    db: Session = Depends(get_db),
    email_service: EmailService = Depends(get_email_service),
) -> ActionEmailService:
    return ActionEmailService(db, email_service=email_service)


def get_first_message_notification_service(
    db: Session = Depends(get_db),
    email_service: EmailService = Depends(get_email_service),
) -> FirstMessageNotificationService:
    return FirstMessageNotificationService(db, email_service=email_service)


def get_message_email_service(
    db: Session = Depends(get_db),
    email_service: EmailService = Depends(get_email_service),
) -> MessageEmailService:
    return MessageEmailService(db, email_service=email_service)
