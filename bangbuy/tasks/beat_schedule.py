# bangbuy/tasks/beat_schedule.py
"""
Celery Beat schedule configuration.

The first-message and every-message batches run every minute, unread
reminders every 15 minutes. Overlapping runs are safe: the conversation claim
and the dedupe records keep every email at most once.
"""

from typing import Any, Dict

from celery.schedules import crontab


def get_beat_schedule() -> Dict[str, Dict[str, Any]]:
    return {
        "first-message-email-batch": {
            "task": "notifications.first_message_batch",
            "schedule": crontab(minute="*"),
            "options": {"queue": "notifications", "expires": 55},
        },
        "every-message-email-batch": {
            "task": "notifications.every_message_batch",
            "schedule": crontab(minute="*"),
            "options": {"queue": "notifications", "expires": 55},
        },
        "unread-reminder-email-batch": {
            "task": "notifications.unread_reminder_batch",
            "schedule": crontab(minute="*/15"),
            "options": {"queue": "notifications", "expires": 14 * 60},
        },
    }
