# bangbuy/schemas/conversation.py
"""
Pydantic schemas for conversation API.

Provides request/response models for the per-user-pair conversation endpoints.
"""

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field


class CreateConversationRequest(BaseModel):
    """Start (or reopen) a conversation with another user."""

    other_user_id: str = Field(..., min_length=1, max_length=26)
    source_type: Optional[str] = Field(default=None, description="request or trip")
    source_id: Optional[str] = Field(default=None, max_length=64)
    source_title: Optional[str] = Field(default=None, max_length=200)


class ConversationResponse(BaseModel):
    """A conversation seen from the caller's side."""

    id: str
    other_user_id: str
    source_type: Optional[str] = None
    source_id: Optional[str] = None
    source_title: Optional[str] = None
    last_message_at: Optional[datetime] = None
    last_read_at: Optional[datetime] = None
    hidden_at: Optional[datetime] = None
    created_at: datetime


class CreateConversationResponse(BaseModel):
    conversation: ConversationResponse
    created: bool


class LastMessage(BaseModel):
    """Preview of the last message in a conversation."""

    id: str
    content: str
    sender_id: str
    created_at: datetime
    is_from_me: bool

    model_config = ConfigDict(from_attributes=True)


class ConversationListItem(BaseModel):
    id: str
    other_user_id: str
    unread_count: int
    last_message: Optional[LastMessage] = None
    last_message_at: Optional[datetime] = None
    created_at: datetime
    source_type: Optional[str] = None
    source_id: Optional[str] = None
    source_title: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)


class ConversationListResponse(BaseModel):
    conversations: List[ConversationListItem]
    next_cursor: Optional[datetime] = Field(
        default=None,
        description="Pass as ?cursor= to fetch the next page; null on the last page",
    )


class MarkReadResponse(BaseModel):
    conversation_id: str
    moved: bool
    last_read_at: Optional[datetime] = None
    unread_count: int


class UnreadCountResponse(BaseModel):
    unread_count: int
    conversation_id: Optional[str] = None


class TypingRequest(BaseModel):
    is_typing: bool = True


class TypingResponse(BaseModel):
    conversation_id: str
    typing_user_ids: List[str]
