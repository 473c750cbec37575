"""Email sending service — SMTP transport for operator alerts."""

import logging
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional

import aiosmtplib

from eventrelay.config import Settings, get_settings

logger = logging.getLogger(__name__)


async def send_email_smtp(
    to_email: str,
    subject: str,
    text_body: str,
    html_body: str = "",
    from_name: str = "",
    from_email: str = "",
    settings: Optional[Settings] = None,
) -> bool:
    """Send a single email via SMTP."""
    settings = settings or get_settings()

    msg = MIMEMultipart("alternative")
    msg["Subject"] = subject
    msg["From"] = f"{from_name or settings.smtp_from_name} <{from_email or settings.smtp_from_email}>"
    msg["To"] = to_email

    msg.attach(MIMEText(text_body, "plain", "utf-8"))
    if html_body:
        msg.attach(MIMEText(html_body, "html", "utf-8"))

    try:
        await aiosmtplib.send(
            msg,
            hostname=settings.smtp_host,
            port=settings.smtp_port,
            username=settings.smtp_user or None,
            password=settings.smtp_password or None,
            start_tls=settings.smtp_use_tls,
        )
        logger.info(f"Email sent to {to_email}")
        return True
    except (aiosmtplib.SMTPException, OSError) as e:
        logger.error(f"Failed to send email to {to_email}: {e}")
        return False
