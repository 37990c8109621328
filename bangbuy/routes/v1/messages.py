# bangbuy/routes/v1/messages.py
"""
Message routes - API v1

Mounted under /api/v1/conversations next to the conversation routes.

Endpoints:
    GET /{conversation_id}/messages     -> History page, oldest first
    POST /{conversation_id}/messages    -> Send a message
"""

from datetime import datetime
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query, status

from ...api.dependencies.auth import get_current_user_id
from ...api.dependencies.services import get_message_service
from ...core.constants import DEFAULT_QUERY_LIMIT, MAX_QUERY_LIMIT
from ...core.exceptions import DomainException
from ...schemas.message import MessageResponse, MessagesResponse, SendMessageRequest
from ...services.message_service import MessageService
from .errors import handle_domain_exception

logger = logging.getLogger(__name__)

router = APIRouter(tags=["messages-v1"])


@router.get("/{conversation_id}/messages", response_model=MessagesResponse)
def list_messages(
    conversation_id: str,
    limit: int = Query(DEFAULT_QUERY_LIMIT, ge=1, le=MAX_QUERY_LIMIT),
    before: Optional[datetime] = Query(None, description="Return messages older than this"),
    user_id: str = Depends(get_current_user_id),
    service: MessageService = Depends(get_message_service),
) -> MessagesResponse:
    try:
        messages = service.list_messages(conversation_id, user_id, limit=limit, before=before)
    except DomainException as e:
        handle_domain_exception(e)
    return MessagesResponse(
        messages=[MessageResponse.model_validate(m) for m in messages],
        has_more=len(messages) == limit,
    )


@router.post(
    "/{conversation_id}/messages",
    response_model=MessageResponse,
    status_code=status.HTTP_201_CREATED,
)
def send_message(
    conversation_id: str,
    request: SendMessageRequest,
    user_id: str = Depends(get_current_user_id),
    service: MessageService = Depends(get_message_service),
) -> MessageResponse:
    """
    Send a message.

    The first message of a conversation is stored as FIRST_MESSAGE and later
    picked up by the first-message email batch. ``client_id`` is echoed back so
    the client can reconcile its optimistic entry.
    """
    try:
        message = service.send(conversation_id, user_id, request.content, client_id=request.client_id)
    except DomainException as e:
        handle_domain_exception(e)
    return MessageResponse.model_validate(message)
