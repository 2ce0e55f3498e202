"""Email and in-app notifications."""

from .email import EmailAttachment, EmailClient, EmailError, EmailMessage, get_email_client
from .service import NotificationData, NotificationService, NotificationType

__all__ = [
    "EmailAttachment",
    "EmailClient",
    "EmailError",
    "EmailMessage",
    "NotificationData",
    "NotificationService",
    "NotificationType",
    "get_email_client",
]
