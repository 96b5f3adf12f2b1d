"""Celery tasks for push token maintenance.

Nothing here is scheduled by the service itself; run the sweep from cron,
celery-beat or ``celery call`` as the deployment prefers.
"""

import logging

from src.celery_app import app as celery_app
from src.config import get_settings
from src.database import SessionLocal
from src.services.token_registry import TokenRegistry

logger = logging.getLogger(__name__)


@celery_app.task
def cleanup_inactive_tokens(days_inactive: int | None = None) -> dict:
    """Deactivate push tokens that have not been used recently.

    Args:
        days_inactive: Inactivity threshold in days; defaults to TOKEN_CLEANUP_DAYS (30)

    Returns:
        dict with the number of tokens deactivated
    """
    if days_inactive is None:
        days_inactive = get_settings().token_cleanup_days

    db = SessionLocal()
    try:
        logger.info(f"Cleaning up tokens inactive for {days_inactive} days")
        count = TokenRegistry(db).cleanup_inactive(days_inactive)
        return {"success": True, "days_inactive": days_inactive, "deactivated_count": count}
    finally:
        db.close()
