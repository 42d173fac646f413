from celery import Celery
from celery.schedules import crontab
from celery.utils.log import get_task_logger

from . import config, notify
from .database import SessionLocal

logger = get_task_logger(__name__)

celery_app = Celery("printqueue", broker=config.CELERY_BROKER_URL)
celery_app.conf.task_always_eager = (
    config.CELERY_BROKER_URL == "memory://" or config.testing()
)
celery_app.conf.timezone = "UTC"


@celery_app.task
def deliver_order_notification(message: dict):
    try:
        return notify.deliver_order_message(message)
    except Exception:
        logger.exception("Failed to send notification for order %s", message.get("order_code"))
        return False


def enqueue_order_notification(message: dict):
    if celery_app.conf.task_always_eager:
        deliver_order_notification(message)
    else:
        deliver_order_notification.delay(message)


celery_app.conf.beat_schedule = {
    "file-retention-sweep": {
        "task": "printqueue.tasks.sweep_expired_files",
        "schedule": crontab(hour=2, minute=0),
    },
}


@celery_app.task(name="printqueue.tasks.sweep_expired_files")
def sweep_expired_files():
    from .services import attachments

    db = SessionLocal()
    try:
        summary = attachments.sweep_expired_files(db)
        logger.info("Retention sweep removed %s files", summary["deletedFilesCount"])
        return summary
    finally:
        db.close()
