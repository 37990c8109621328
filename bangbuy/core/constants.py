"""Application-wide constants for the BangBuy messaging core."""

from __future__ import annotations

BRAND_NAME = "BangBuy"

# Text constraints
MAX_MESSAGE_LENGTH = 1000
PREVIEW_LENGTH = 100
EMAIL_SNIPPET_LENGTH = 80

# Query limits
DEFAULT_QUERY_LIMIT = 50
MAX_QUERY_LIMIT = 200

# Conversation sources (what a conversation is "about")
SOURCE_TYPE_REQUEST = "request"
SOURCE_TYPE_TRIP = "trip"
SOURCE_TYPES = (SOURCE_TYPE_REQUEST, SOURCE_TYPE_TRIP)

# Notification preference bounds
MIN_UNREAD_REMINDER_HOURS = 1
MAX_UNREAD_REMINDER_HOURS = 72
DEFAULT_UNREAD_REMINDER_HOURS = 12

# A conversation is reminded about at most once per cooldown window
UNREAD_REMINDER_COOLDOWN_HOURS = 24
