from __future__ import annotations

import smtplib
from email.message import EmailMessage
from email.utils import make_msgid

from herald.core.logging import get_logger
from herald.core.settings import Settings, get_settings

logger = get_logger("notifications.emailer")


class EmailNotConfiguredError(RuntimeError):
    pass


class EmailSendError(RuntimeError):
    pass


class EmailRejectedError(EmailSendError):
    """The relay refused the recipient; resending the same message will not help."""


def _domain_of(address: str) -> str:
    value = address.strip().lower()
    if "@" not in value:
        return "unknown"
    return value.rsplit("@", maxsplit=1)[-1] or "unknown"


def build_message(
    *,
    sender: str,
    to: str,
    subject: str,
    html: str,
    text: str,
    unsubscribe_url: str | None = None,
) -> EmailMessage:
    sender_domain = _domain_of(sender)
    message = EmailMessage()
    message["From"] = sender
    message["To"] = to
    message["Subject"] = subject
    message["Message-ID"] = make_msgid(domain=None if sender_domain == "unknown" else sender_domain)
    if unsubscribe_url:
        message["List-Unsubscribe"] = f"<{unsubscribe_url}>"
    message.set_content(text)
    message.add_alternative(html, subtype="html")
    return message


def _deliver(settings: Settings, host: str, message: EmailMessage) -> None:
    smtp_cls = smtplib.SMTP_SSL if settings.SMTP_USE_SSL else smtplib.SMTP
    with smtp_cls(host=host, port=settings.SMTP_PORT, timeout=10) as server:
        if settings.SMTP_USE_TLS and not settings.SMTP_USE_SSL:
            server.starttls()
        username = (settings.SMTP_USERNAME or "").strip()
        if username and settings.SMTP_PASSWORD:
            server.login(username, settings.SMTP_PASSWORD)
        server.send_message(message)


def send_email(
    *,
    to: str,
    subject: str,
    html: str,
    text: str,
    unsubscribe_url: str | None = None,
    request_id: str | None = None,
) -> str:
    """Send one message over SMTP and return its Message-ID."""
    settings = get_settings()
    host = (settings.SMTP_HOST or "").strip()
    sender = (settings.EMAIL_FROM or "").strip()
    if not host or not sender:
        raise EmailNotConfiguredError("SMTP transport is not configured.")

    message = build_message(
        sender=sender,
        to=to,
        subject=subject,
        html=html,
        text=text,
        unsubscribe_url=unsubscribe_url,
    )
    log_extra = {"component": "worker", "request_id": request_id, "recipient_domain": _domain_of(to)}

    try:
        _deliver(settings, host, message)
    except smtplib.SMTPRecipientsRefused as exc:
        logger.warning("notifications.email_rejected", extra=log_extra)
        raise EmailRejectedError("Mail relay refused the recipient.") from exc
    except (OSError, smtplib.SMTPException) as exc:
        logger.warning("notifications.email_send_failed", extra=log_extra)
        raise EmailSendError("Failed to send notification email.") from exc

    logger.info("notifications.email_sent", extra=log_extra)
    return str(message["Message-ID"])
