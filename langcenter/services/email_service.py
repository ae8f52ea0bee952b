from __future__ import annotations
import html
import logging
import smtplib
from email.message import EmailMessage
from typing import Optional

from langcenter.config import settings

log = logging.getLogger(__name__)

FOOTER = "<p>Best regards,<br>Language Teaching Center Team</p>"

class EmailService:
    @staticmethod
    def is_email(value: Optional[str]) -> bool:
        if not value:
            return False
        return "@" in value and "." in value

    @staticmethod
    def render(title: str, recipient_name: str, message: str) -> str:
        return (
            f"<h2>{html.escape(title)}</h2>"
            f"<p>Dear {html.escape(recipient_name or 'User')},</p>"
            f"<p>{html.escape(message)}</p>"
            f"{FOOTER}"
        )

    @staticmethod
    def send(to: str, subject: str, body: str) -> bool:
        if not settings.smtp_enabled or not EmailService.is_email(to):
            return False
        msg = EmailMessage()
        msg["From"] = settings.smtp_from or settings.smtp_user
        msg["To"] = to
        msg["Subject"] = subject
        msg.set_content("This message requires an HTML capable mail client.")
        msg.add_alternative(body, subtype="html")

        try:
            if settings.smtp_port == 465:
                with smtplib.SMTP_SSL(settings.smtp_host, settings.smtp_port) as s:
                    if settings.smtp_user and settings.smtp_password:
                        s.login(settings.smtp_user, settings.smtp_password)
                    s.send_message(msg)
            else:
                with smtplib.SMTP(settings.smtp_host, settings.smtp_port) as s:
                    s.starttls()
                    if settings.smtp_user and settings.smtp_password:
                        s.login(settings.smtp_user, settings.smtp_password)
                    s.send_message(msg)
            log.info("email.sent to=%s subject=%s", to, subject)
            return True
        except (smtplib.SMTPException, OSError) as e:
            log.error(f"Failed to send email to {to}: {e}")
            return False
