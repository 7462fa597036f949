from __future__ import annotations

import logging
import smtplib
from email.message import EmailMessage

from crm_triggers.core.celery_app import celery_app
from crm_triggers.core.config import get_settings


logger = logging.getLogger("crm_triggers.notifications")


def build_email(sender: str, recipient: str, subject: str, body: str) -> EmailMessage:
    message = EmailMessage()
    message["From"] = sender
    message["To"] = recipient
    message["Subject"] = subject
    message.set_content(body)
    return message


@celery_app.task(name="crm_triggers.tasks.send_notification_email")
def send_notification_email(recipient: str, subject: str, body: str) -> None:
    settings = get_settings()
    message = build_email(settings.notification_sender, recipient, subject, body)
    with smtplib.SMTP(settings.smtp_host, settings.smtp_port, timeout=30) as client:
        client.send_message(message)
    logger.info("notification.delivered", extra={"recipient": recipient})
