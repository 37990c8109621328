# bangbuy/routes/v1/conversations.py
"""
Conversations routes - API v1

Versioned conversation endpoints under /api/v1/conversations.
All business logic delegated to ConversationService and TypingPresence.

Endpoints:
    GET /                               -> List caller's conversations (inbox)
    POST /                              -> Get or create the conversation with another user
    GET /unread-count                   -> Total unread across all conversations
    GET /{conversation_id}              -> Conversation details
    POST /{conversation_id}/read        -> Advance the caller's read cursor
    POST /{conversation_id}/hide        -> Hide from the caller's inbox
    GET /{conversation_id}/unread-count -> Unread count for one conversation
    GET /{conversation_id}/typing       -> Users currently typing
    POST /{conversation_id}/typing      -> Set or clear the caller's typing signal
    GET /{conversation_id}/stream       -> Server-Sent Events for the conversation
"""

import asyncio
from datetime import datetime
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query, status
from sse_starlette.sse import EventSourceResponse

from ...api.dependencies.auth import get_current_user_id
from ...api.dependencies.services import (
    get_broadcaster,
    get_conversation_service,
    get_typing_presence,
)
from ...core.config import settings
from ...core.constants import DEFAULT_QUERY_LIMIT, MAX_QUERY_LIMIT
from ...core.exceptions import DomainException
from ...models.conversation import Conversation
from ...schemas.conversation import (
    ConversationListItem,
    ConversationListResponse,
    ConversationResponse,
    CreateConversationRequest,
    CreateConversationResponse,
    MarkReadResponse,
    TypingRequest,
    TypingResponse,
    UnreadCountResponse,
)
from ...services.conversation_service import ConversationService
from ...services.messaging.broadcaster import RealtimeBroadcaster
from ...services.messaging.sse_stream import create_conversation_stream
from ...services.typing_presence import TypingPresence
from .errors import handle_domain_exception

logger = logging.getLogger(__name__)

# V1 router - no prefix here, will be added when mounting in main.py
router = APIRouter(tags=["conversations-v1"])


def _conversation_view(conversation: Conversation, user_id: str) -> ConversationResponse:
    return ConversationResponse(
        id=conversation.id,
        other_user_id=conversation.get_other_user_id(user_id),
        source_type=conversation.source_type,
        source_id=conversation.source_id,
        source_title=conversation.source_title,
        last_message_at=conversation.last_message_at,
        last_read_at=conversation.last_read_at_for(user_id),
        hidden_at=conversation.hidden_at_for(user_id),
        created_at=conversation.created_at,
    )


# =============================================================================
# Static routes first (before dynamic routes with path parameters)
# =============================================================================


@router.get("", response_model=ConversationListResponse)
def list_conversations(
    limit: int = Query(DEFAULT_QUERY_LIMIT, ge=1, le=MAX_QUERY_LIMIT),
    cursor: Optional[datetime] = Query(None, description="Activity timestamp from next_cursor"),
    include_hidden: bool = Query(False),
    user_id: str = Depends(get_current_user_id),
    service: ConversationService = Depends(get_conversation_service),
) -> ConversationListResponse:
    """List the caller's conversations, most recent activity first."""
    try:
        summaries = service.list_for_user(
            user_id, limit=limit, cursor=cursor, include_hidden=include_hidden
        )
    except DomainException as e:
        handle_domain_exception(e)

    next_cursor = None
    if len(summaries) == limit:
        last = summaries[-1]
        next_cursor = last.last_message_at or last.created_at
    return ConversationListResponse(
        conversations=[ConversationListItem.model_validate(s) for s in summaries],
        next_cursor=next_cursor,
    )


@router.post(
    "",
    response_model=CreateConversationResponse,
    status_code=status.HTTP_200_OK,
)
def create_conversation(
    request: CreateConversationRequest,
    user_id: str = Depends(get_current_user_id),
    service: ConversationService = Depends(get_conversation_service),
) -> CreateConversationResponse:
    """Get the conversation with another user, creating it on first contact."""
    try:
        conversation, created = service.get_or_create(
            user_id,
            request.other_user_id,
            source_type=request.source_type,
            source_id=request.source_id,
            source_title=request.source_title,
        )
    except DomainException as e:
        handle_domain_exception(e)
    return CreateConversationResponse(
        conversation=_conversation_view(conversation, user_id), created=created
    )


@router.get("/unread-count", response_model=UnreadCountResponse)
def get_total_unread_count(
    user_id: str = Depends(get_current_user_id),
    service: ConversationService = Depends(get_conversation_service),
) -> UnreadCountResponse:
    return UnreadCountResponse(unread_count=service.total_unread_count(user_id))


# =============================================================================
# Per-conversation routes
# =============================================================================


@router.get("/{conversation_id}", response_model=ConversationResponse)
def get_conversation(
    conversation_id: str,
    user_id: str = Depends(get_current_user_id),
    service: ConversationService = Depends(get_conversation_service),
) -> ConversationResponse:
    try:
        conversation = service.get_conversation(conversation_id, user_id)
    except DomainException as e:
        handle_domain_exception(e)
    return _conversation_view(conversation, user_id)


@router.post("/{conversation_id}/read", response_model=MarkReadResponse)
def mark_conversation_read(
    conversation_id: str,
    user_id: str = Depends(get_current_user_id),
    service: ConversationService = Depends(get_conversation_service),
) -> MarkReadResponse:
    """Mark everything up to now as read. The cursor never moves backwards."""
    try:
        result = service.mark_read(conversation_id, user_id)
    except DomainException as e:
        handle_domain_exception(e)
    return MarkReadResponse(
        conversation_id=conversation_id,
        moved=result.moved,
        last_read_at=result.last_read_at,
        unread_count=result.unread_count,
    )


@router.post("/{conversation_id}/hide", response_model=ConversationResponse)
def hide_conversation(
    conversation_id: str,
    user_id: str = Depends(get_current_user_id),
    service: ConversationService = Depends(get_conversation_service),
) -> ConversationResponse:
    try:
        conversation = service.hide(conversation_id, user_id)
    except DomainException as e:
        handle_domain_exception(e)
    return _conversation_view(conversation, user_id)


@router.get("/{conversation_id}/unread-count", response_model=UnreadCountResponse)
def get_unread_count(
    conversation_id: str,
    user_id: str = Depends(get_current_user_id),
    service: ConversationService = Depends(get_conversation_service),
) -> UnreadCountResponse:
    try:
        count = service.unread_count(conversation_id, user_id)
    except DomainException as e:
        handle_domain_exception(e)
    return UnreadCountResponse(unread_count=count, conversation_id=conversation_id)


@router.get("/{conversation_id}/typing", response_model=TypingResponse)
def get_typing_users(
    conversation_id: str,
    user_id: str = Depends(get_current_user_id),
    service: ConversationService = Depends(get_conversation_service),
    presence: TypingPresence = Depends(get_typing_presence),
) -> TypingResponse:
    try:
        service.get_conversation(conversation_id, user_id)
    except DomainException as e:
        handle_domain_exception(e)
    return TypingResponse(
        conversation_id=conversation_id,
        typing_user_ids=presence.typing_users(conversation_id),
    )


@router.post("/{conversation_id}/typing", response_model=TypingResponse)
def set_typing(
    conversation_id: str,
    request: TypingRequest,
    user_id: str = Depends(get_current_user_id),
    service: ConversationService = Depends(get_conversation_service),
    presence: TypingPresence = Depends(get_typing_presence),
) -> TypingResponse:
    """Signal that the caller started or stopped typing. Signals expire on their own."""
    try:
        service.get_conversation(conversation_id, user_id)
    except DomainException as e:
        handle_domain_exception(e)
    presence.set_typing(conversation_id, user_id, request.is_typing)
    return TypingResponse(
        conversation_id=conversation_id,
        typing_user_ids=presence.typing_users(conversation_id),
    )


@router.get("/{conversation_id}/stream")
async def stream_conversation(
    conversation_id: str,
    user_id: str = Depends(get_current_user_id),
    service: ConversationService = Depends(get_conversation_service),
    broadcaster: RealtimeBroadcaster = Depends(get_broadcaster),
) -> EventSourceResponse:
    """
    SSE endpoint for one conversation's realtime events.

    Emits ``connected`` first, then INSERT / READ / TYPING_START / TYPING_STOP
    events as they are published, and a heartbeat while idle. Events are not
    replayed: a client that reconnects re-fetches history and unread counts.
    """
    try:
        await asyncio.to_thread(service.get_conversation, conversation_id, user_id)
    except DomainException as e:
        handle_domain_exception(e)

    logger.info(
        "[SSE] Connection opened",
        extra={"conversation_id": conversation_id, "user_id": user_id},
    )
    return EventSourceResponse(
        create_conversation_stream(
            broadcaster,
            conversation_id,
            user_id,
            heartbeat_interval=settings.sse_heartbeat_interval,
        ),
        headers={
            "Cache-Control": "no-cache, no-store, must-revalidate",
            "X-Accel-Buffering": "no",
            "Connection": "keep-alive",
        },
    )
