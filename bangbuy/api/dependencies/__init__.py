"""
FastAPI dependencies: caller identity, database session and service factories.
"""

from .auth import get_current_user_id, verify_cron_secret
from .database import get_db
from .services import (
    get_action_email_service,
    get_broadcaster,
    get_conversation_service,
    get_email_service,
    get_first_message_notification_service,
    get_message_service,
    get_notification_preference_service,
    get_typing_presence,
)

__all__ = [
    "get_action_email_service",
    "get_broadcaster",
    "get_conversation_service",
    "get_current_user_id",
    "get_db",
    "get_email_service",
    "get_first_message_notification_service",
    "get_message_service",
    "get_notification_preference_service",
    "get_typing_presence",
    "verify_cron_secret",
]
