"""
Background jobs (Celery).

Usage:
    celery -A app.saaskit.jobs worker --loglevel=info
"""
from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from celery import Celery
from dotenv import load_dotenv

from app.saaskit.config import load_config
from app.saaskit.mailer import send_email, welcome_follow_up_message

if TYPE_CHECKING:
    from flask import Flask
    from app.saaskit.models import User

logger = logging.getLogger(__name__)

USER_REGISTERED_EVENT = "user/registered"
WELCOME_FOLLOW_UP_DELAY = 24 * 60 * 60  # seconds


def create_celery_app() -> Celery:
    load_dotenv()
    config = load_config()
    redis_url = config["REDIS_URL"] or "redis://localhost:6379/0"
    app = Celery("saaskit", broker=redis_url, backend=redis_url)
    app.conf.update(
        task_serializer="json",
        accept_content=["json"],
        result_serializer="json",
        task_acks_late=True,
        task_default_queue="saaskit",
    )
    logger.info("Celery app created with broker: %s", redis_url.split("@")[-1])
    return app


celery_app = create_celery_app()


@celery_app.task(name="saaskit.send_welcome_follow_up_email", bind=True, max_retries=3, default_retry_delay=300)
def send_welcome_follow_up_email(self, user_id: int, email: str, name: str, language: str = "fr") -> dict:
    config = load_config()
    subject, body = welcome_follow_up_message(name, config["APP_URL"], language)
    ok, detail = send_email(config, email, subject, body)
    if not ok:
        logger.warning("Welcome follow-up to user_id=%s failed: %s", user_id, detail)
        raise self.retry(exc=RuntimeError(detail))
    return {"success": True, "user_id": user_id, "email_sent": True}


def schedule_welcome_follow_up(app: "Flask", user: "User", language: str = "fr") -> bool:
    """Queue the welcome follow-up for the `user/registered` event; never raises."""
    if not app.config.get("BACKGROUND_JOBS_ENABLED"):
        app.logger.info("Background jobs disabled; skipping %s follow-up for user_id=%s", USER_REGISTERED_EVENT, user.id)
        return False
    try:
        send_welcome_follow_up_email.apply_async(
            kwargs={"user_id": user.id, "email": user.email, "name": user.display_name, "language": language},
            countdown=WELCOME_FOLLOW_UP_DELAY,
        )
    except Exception:
        app.logger.exception("Could not enqueue welcome follow-up for user_id=%s", user.id)
        return False
    return True
