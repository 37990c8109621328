# bangbuy/schemas/message.py
"""Pydantic schemas for sending and reading messages."""

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field


class SendMessageRequest(BaseModel):
    content: str = Field(..., description="Message text; trimmed, 1..1000 characters")
    client_id: Optional[str] = Field(
        default=None,
        max_length=64,
        description="Caller correlation id, echoed back on the message and its INSERT event",
    )


class MessageResponse(BaseModel):
    id: str
    conversation_id: str
    sender_id: str
    content: str
    message_type: str
    client_id: Optional[str] = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class MessagesResponse(BaseModel):
    messages: List[MessageResponse]
    has_more: bool
