"""Notification dispatcher, delivery adapters, digests and worker."""

from .adapters import DeliveryResult, ResendEmailAdapter, UnconfiguredSmsAdapter
from .digest import DigestResult, run_digest_job
from .dispatcher import NotificationDispatcher, NotificationList, NotificationRequest
from .templates import render_notification_content, render_template
from .worker import NotificationWorker

__all__ = [
    "DeliveryResult",
    "DigestResult",
    "NotificationDispatcher",
    "NotificationList",
    "NotificationRequest",
    "NotificationWorker",
    "ResendEmailAdapter",
    "UnconfiguredSmsAdapter",
    "render_notification_content",
    "render_template",
    "run_digest_job",
]
