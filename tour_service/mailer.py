"""Outgoing e-mail over SMTP."""

import asyncio
import smtplib
from email.message import EmailMessage

from .config import settings
from .logger import logger


class MailDeliveryError(Exception):
    """Raised when the SMTP server could not accept a message."""


def _build_message(to: str, subject: str, body: str) -> EmailMessage:
    message = EmailMessage()
    message["Subject"] = subject
    message["From"] = settings.EMAIL_FROM
    message["To"] = to
    message.set_content(body)
    return message


def _deliver(message: EmailMessage) -> None:
    with smtplib.SMTP(settings.EMAIL_HOST, settings.EMAIL_PORT, timeout=settings.EMAIL_TIMEOUT) as server:
        if settings.EMAIL_USE_TLS:
            server.starttls()
        if settings.EMAIL_USERNAME:
            server.login(settings.EMAIL_USERNAME, settings.EMAIL_PASSWORD or "")
        server.send_message(message)


async def send_email(to: str, subject: str, body: str) -> None:
    """Send a plain-text message. Raises MailDeliveryError on failure.

    Without EMAIL_HOST only the recipient and subject are logged (development);
    in production that raises MailDeliveryError instead.
    """
    message = _build_message(to, subject, body)
    if not settings.EMAIL_HOST:
        if settings.is_production:
            logger.error(f"Cannot send email to {to}: EMAIL_HOST is not configured")
            raise MailDeliveryError("EMAIL_HOST is not configured")
        logger.info(f"Email delivery disabled, skipped message to {to}: {subject}")
        return

    try:
        await asyncio.to_thread(_deliver, message)
    except (smtplib.SMTPException, OSError) as e:
        logger.error(f"Failed to send email to {to}: {str(e)}")
        raise MailDeliveryError(str(e)) from e
    logger.info(f"Email sent to {to}: {subject}")


async def send_password_reset(to: str, reset_url: str) -> None:
    body = (
        f"Forgot your password? Submit a PATCH request with your new password and "
        f"confirmPassword to: {reset_url}.\n"
        f"If you didn't forget your password, please ignore this email!"
    )
    await send_email(
        to,
        f"Your password reset token (valid for {settings.PASSWORD_RESET_EXPIRES_MINUTES} min)",
        body,
    )
