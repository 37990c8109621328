"""
Service layer for the BangBuy messaging core.

Services hold the business logic and own transaction boundaries; routes and
tasks call services, services call repositories.
"""

from .base import BaseService
from .conversation_service import ConversationService
from .message_service import MessageService

__all__ = ["BaseService", "ConversationService", "MessageService"]
