import logging
import smtplib
from email.message import EmailMessage
from typing import Any

from sqlalchemy import event
from sqlalchemy.orm import Session

from . import config, models

logger = logging.getLogger(__name__)

EMAIL_OUTBOX: list[tuple[str, str, str]] = []

_PENDING_KEY = "pending_order_notifications"

_SUBJECTS = {
    models.OrderStatus.SUBMITTED: "Print Request Received - {project}",
    models.OrderStatus.APPROVED: "Print Request Approved - {project}",
    models.OrderStatus.STARTED: "Printing Started - {project}",
    models.OrderStatus.FINISHED: "Print Complete - {project}",
    models.OrderStatus.FAILED: "Print Issue - {project}",
    models.OrderStatus.CANCELLED: "Print Request Cancelled - {project}",
}

_PREFERENCE_KEYS = {
    models.OrderStatus.APPROVED: "order_approved",
    models.OrderStatus.STARTED: "order_started",
    models.OrderStatus.FINISHED: "order_completed",
    models.OrderStatus.FAILED: "order_failed",
    models.OrderStatus.CANCELLED: "order_cancelled",
}


def send_email(to_email: str, subject: str, message: str):
    if config.testing():
        EMAIL_OUTBOX.append((to_email, subject, message))
        return
    server = config.SMTP_SERVER
    if not server:
        return
    msg = EmailMessage()
    msg["Subject"] = subject
    msg["From"] = config.EMAIL_FROM
    msg["To"] = to_email
    msg.set_content(message)
    with smtplib.SMTP(server) as s:
        s.send_message(msg)


def wants_notification(preferences: dict | None, status: str) -> bool:
    key = _PREFERENCE_KEYS.get(status)
    if key is None:
        return status == models.OrderStatus.SUBMITTED
    return bool((preferences or {}).get(key, True))


def render_order_message(message: dict[str, Any]) -> tuple[str, str]:
    status = message["status"]
    project = message["project_name"]
    subject = _SUBJECTS.get(status, "Print Request Update - {project}").format(project=project)
    lines = [
        f"Hi {message.get('display_name') or 'there'},",
        "",
        f"Your print request {message['order_code']} ({project}) is now {status}.",
    ]
    if message.get("previous_status"):
        lines.append(f"Previous status: {message['previous_status']}.")
    if message.get("reason"):
        lines.append(f"Reason: {message['reason']}")
    lines += ["", f"Track your request at {config.SITE_URL}/dashboard"]
    return subject, "\n".join(lines)


def deliver_order_message(message: dict[str, Any]) -> bool:
    """Send one order notification; returns False when skipped."""

    if not message.get("email"):
        return False
    if not wants_notification(message.get("preferences"), message["status"]):
        logger.info(
            "Notification skipped for %s - preference disabled for %s",
            message["email"],
            message["status"],
        )
        return False
    subject, body = render_order_message(message)
    send_email(message["email"], subject, body)
    return True


def notify_order_event(
    db: Session,
    order: models.Order,
    status: str,
    *,
    previous_status: str | None = None,
    reason: str | None = None,
) -> None:
    """Queue a notification that is sent only once ``db`` commits."""

    user = order.user or db.get(models.User, order.user_id)
    if user is None:
        return
    db.info.setdefault(_PENDING_KEY, []).append(
        {
            "email": user.email,
            "display_name": user.display_name,
            "preferences": dict(user.notification_preferences or {}),
            "order_code": order.order_id,
            "project_name": order.project_name,
            "status": status,
            "previous_status": previous_status,
            "reason": reason,
        }
    )


@event.listens_for(Session, "after_commit")
def _dispatch_pending(session: Session) -> None:
    pending = session.info.pop(_PENDING_KEY, [])
    if not pending:
        return
    from .tasks import enqueue_order_notification

    for message in pending:
        try:
            enqueue_order_notification(message)
        except Exception:
            logger.exception("Failed to dispatch notification for %s", message.get("order_code"))


@event.listens_for(Session, "after_transaction_end")
def _discard_uncommitted(session: Session, transaction) -> None:
    if transaction.parent is None:
        session.info.pop(_PENDING_KEY, None)
