# backend/mentr/tasks/celery_app.py
"""
Celery application configuration for the Mentr settlement engine.

Redis is the broker. Results are not stored: every settlement job writes its
outcome to the database, and the scheduler keeps per-job run state.
"""

import logging
from typing import Any, Type, cast

from celery import Celery, Task
from celery.signals import setup_logging

from mentr.core.config import settings


def create_celery_app() -> Celery:
    """
    Create and configure the Celery application.

    Returns:
        Celery: Configured Celery application instance
    """
    broker_url = settings.broker_url
    # Ensure Redis URL includes database number
    if not any(broker_url.endswith(f"/{i}") for i in range(16)):
        broker_url = f"{broker_url}/0"

    celery_app = Celery("mentr", broker=broker_url)

    celery_app.conf.update(
        {
            # Task settings
            "task_serializer": "json",
            "accept_content": ["json"],
            "result_serializer": "json",
            "timezone": "UTC",
            "enable_utc": True,
            "task_ignore_result": True,
            # Worker settings
            "worker_prefetch_multiplier": 1,
            "worker_max_tasks_per_child": 1000,
            # Task execution settings
            "task_soft_time_limit": 600,
            "task_time_limit": 900,
            "task_acks_late": True,
            "task_reject_on_worker_lost": True,
            # Error handling
            "task_default_retry_delay": 60,
            "task_max_retries": 3,
            "beat_schedule_filename": "celerybeat-schedule",
            "worker_hijack_root_logger": False,
            "worker_redirect_stdouts": True,
            "worker_redirect_stdouts_level": "INFO",
            "broker_transport_options": {
                "visibility_timeout": 3600,
                "polling_interval": 10.0,
            },
        }
    )

    celery_app.conf.imports = ("mentr.tasks.settlement_tasks",)
    if settings.environment == "production":
        celery_app.conf.task_routes = {
            "mentr.tasks.settlement_tasks.*": {"queue": "payments"},
        }

    from mentr.tasks.beat_schedule import get_beat_schedule

    celery_app.conf.beat_schedule = get_beat_schedule(settings.environment)

    return celery_app


# Disable Celery's default logging configuration
@setup_logging.connect  # type: ignore[misc]
def config_loggers(*args: Any, **kwargs: Any) -> None:
    """Configure logging to integrate with the application's logging setup."""
    logging.basicConfig(
        level=logging.INFO, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )


celery_app = create_celery_app()


class BaseTask(Task):  # type: ignore[misc]
    """Base task that logs failures and retries with their task context."""

    def on_failure(self, exc: Exception, task_id: str, args: Any, kwargs: Any, einfo: Any) -> None:
        logger = logging.getLogger(__name__)
        logger.error(
            f"Task {self.name}[{task_id}] failed with exception: {exc}",
            exc_info=True,
            extra={
                "task_id": task_id,
                "task_name": self.name,
                "task_args": str(args),
                "task_kwargs": str(kwargs),
            },
        )
        super().on_failure(exc, task_id, args, kwargs, einfo)

    def on_retry(self, exc: Exception, task_id: str, args: Any, kwargs: Any, einfo: Any) -> None:
        logger = logging.getLogger(__name__)
        logger.warning(
            f"Task {self.name}[{task_id}] retry {self.request.retries} due to: {exc}",
            extra={
                "task_id": task_id,
                "task_name": self.name,
                "retry_count": self.request.retries,
            },
        )
        super().on_retry(exc, task_id, args, kwargs, einfo)


celery_app.Task = cast(Type[Task], BaseTask)
