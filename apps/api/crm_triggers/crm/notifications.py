from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass
from typing import Protocol

from crm_triggers.core.config import get_settings
from crm_triggers.metrics import observe_notification_failure
from crm_triggers.triggers.errors import BestEffortError


logger = logging.getLogger("crm_triggers.notifications")


@dataclass(frozen=True)
class Notification:
    recipient: str
    subject: str
    body: str


class Notifier(Protocol):
    backend: str

    def send(self, recipient: str, subject: str, body: str) -> None: ...


class LogNotifier:
    backend = "log"

    def send(self, recipient: str, subject: str, body: str) -> None:
        logger.info("notification.sent", extra={"recipient": recipient, "subject": subject})


class CeleryNotifier:
    """Hands the message to a Celery worker; delivery happens out of band."""

    backend = "celery"

    def send(self, recipient: str, subject: str, body: str) -> None:
        from crm_triggers.tasks import send_notification_email

        try:
            send_notification_email.delay(recipient, subject, body)
        except Exception as exc:
            raise BestEffortError(f"could not enqueue notification for {recipient}: {exc}") from exc


def get_notifier() -> Notifier:
    backend = get_settings().notification_backend.lower()
    if backend == "celery":
        return CeleryNotifier()
    return LogNotifier()


def group_by_recipient(notifications: Iterable[Notification]) -> list[Notification]:
    """Merge notifications so each distinct recipient receives one message."""
    merged: dict[str, list[Notification]] = {}
    for notification in notifications:
        if not notification.recipient:
            continue
        merged.setdefault(notification.recipient.strip().lower(), []).append(notification)

    grouped: list[Notification] = []
    for items in merged.values():
        if len(items) == 1:
            grouped.append(items[0])
            continue
        grouped.append(
            Notification(
                recipient=items[0].recipient,
                subject=f"{items[0].subject} (+{len(items) - 1} more)",
                body="\n\n".join(item.body for item in items),
            )
        )
    return grouped


def notify_best_effort(notifier: Notifier, notifications: Iterable[Notification]) -> int:
    """Send one message per distinct recipient; failures are logged, never raised.

    Returns the number of messages handed to the notifier successfully.
    """
    sent = 0
    for notification in group_by_recipient(notifications):
        try:
            notifier.send(notification.recipient, notification.subject, notification.body)
        except Exception as exc:
            observe_notification_failure(getattr(notifier, "backend", type(notifier).__name__))
            logger.exception(
                "notification.failed",
                extra={"recipient": notification.recipient, "error": str(exc)},
            )
            continue
        sent += 1
    return sent
