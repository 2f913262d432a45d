"""Outbound communications."""

from simdesk.platform.communications.email_service import EmailMessage, EmailResponse, EmailService

__all__ = ["EmailMessage", "EmailResponse", "EmailService"]
