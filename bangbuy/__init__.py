"""BangBuy messaging core: conversations, messages, realtime events and notification emails."""

__version__ = "0.1.0"
