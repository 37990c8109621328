# bangbuy/schemas/notifications.py
"""Pydantic schemas for notification settings, offer emails and the cron trigger."""

from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


class NotificationSettingsResponse(BaseModel):
    notify_msg_new_thread_email: bool
    notify_msg_unread_reminder_email: bool
    notify_msg_every_message_email: bool
    notify_msg_unread_hours: int
    notify_offer_created_email: bool
    notify_offer_result_email: bool

    model_config = ConfigDict(from_attributes=True)


class NotificationSettingsUpdate(BaseModel):
    """Partial update; omitted fields keep their value. Unread hours are clamped to 1..72."""

    notify_msg_new_thread_email: Optional[bool] = None
    notify_msg_unread_reminder_email: Optional[bool] = None
    notify_msg_every_message_email: Optional[bool] = None
    notify_msg_unread_hours: Optional[int] = None
    notify_offer_created_email: Optional[bool] = None
    notify_offer_result_email: Optional[bool] = None


class OfferNotificationRequest(BaseModel):
    action: Literal["offer_created", "offer_accepted", "offer_rejected"]
    offer_id: str = Field(..., min_length=1)
    buyer_id: str = Field(..., min_length=1)
    shopper_id: str = Field(..., min_length=1)
    wish_id: Optional[str] = None
    wish_title: Optional[str] = Field(default=None, max_length=200)
    price: Optional[str] = None
    currency: Optional[str] = Field(default=None, max_length=8)
    note: Optional[str] = None
    conversation_id: Optional[str] = None


class ActionEmailResponse(BaseModel):
    status: str
    reason: Optional[str] = None
    provider_message_id: Optional[str] = None
    dedupe_key: Optional[str] = None


class CandidateOutcomeResponse(BaseModel):
    message_id: str
    conversation_id: str
    status: str
    reason: Optional[str] = None
    provider_message_id: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)


class ForceTestResult(BaseModel):
    success: bool
    to: str
    message_id: Optional[str] = None
    error: Optional[str] = None


class FirstMessageBatchResponse(BaseModel):
    mode: Literal["batch", "test"] = "batch"
    enabled: bool = True
    candidates: int = 0
    sent: int = 0
    skipped: int = 0
    errors: int = 0
    details: List[CandidateOutcomeResponse] = Field(default_factory=list)
    test_result: Optional[ForceTestResult] = None


class MessageEmailOutcomeResponse(CandidateOutcomeResponse):
    recipient_id: str


class MessageEmailBatchResponse(BaseModel):
    enabled: bool = True
    candidates: int = 0
    sent: int = 0
    skipped: int = 0
    errors: int = 0
    details: List[MessageEmailOutcomeResponse] = Field(default_factory=list)
