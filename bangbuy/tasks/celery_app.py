# bangbuy/tasks/celery_app.py
"""
Celery application configuration for the BangBuy messaging core.

This module sets up the Celery app with Redis as the broker,
configures task serialization and timezone, and installs the beat schedule.
"""

import logging
import os
from typing import Any

from celery import Celery
from celery.signals import setup_logging

from ..core.config import settings


def create_celery_app() -> Celery:
    """
    Create and configure the Celery application.

    Returns:
        Celery: Configured Celery application instance
    """
    # Priority: CELERY_BROKER_URL -> REDIS_URL -> settings.redis_url -> default
    broker_url = (
        os.getenv("CELERY_BROKER_URL")
        or os.getenv("REDIS_URL")
        or settings.redis_url
        or "redis://localhost:6379/0"
    )

    celery_app = Celery("bangbuy", broker=broker_url)

    celery_app.conf.update(
        {
            "task_serializer": "json",
            "accept_content": ["json"],
            "result_serializer": "json",
            "timezone": "UTC",
            "enable_utc": True,
            "task_ignore_result": True,
            "worker_prefetch_multiplier": 1,
            "task_soft_time_limit": 240,
            "task_time_limit": 300,
            "task_acks_late": True,
            "task_reject_on_worker_lost": True,
            "worker_hijack_root_logger": False,
            "broker_transport_options": {"visibility_timeout": 3600},
            "task_always_eager": settings.is_testing,
        }
    )

    celery_app.conf.imports = ("bangbuy.tasks.notification_tasks",)
    celery_app.conf.task_routes = {"notifications.*": {"queue": "notifications"}}

    from .beat_schedule import get_beat_schedule

    celery_app.conf.beat_schedule = get_beat_schedule()

    return celery_app


@setup_logging.connect  # type: ignore[misc]
def config_loggers(*args: Any, **kwargs: Any) -> None:
    """Configure logging to integrate with the application's logging setup."""
    logging.basicConfig(
        level=logging.INFO, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )


celery_app = create_celery_app()
