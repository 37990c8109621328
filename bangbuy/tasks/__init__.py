"""Background tasks (Celery)."""
