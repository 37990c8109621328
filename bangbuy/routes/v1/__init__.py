"""
Version 1 API routes.

Mounted under /api/v1 by ``bangbuy.main``.
"""

from . import conversations, messages, notifications

__all__ = ["conversations", "messages", "notifications"]
