"""
Outbound mail for provisioned user credentials.
"""
import smtplib
from email.message import EmailMessage
from html import escape
from typing import Optional

from ..config import settings


class MailNotConfigured(RuntimeError):
    pass


def _send(msg: EmailMessage) -> None:
    if not settings.enable_email:
        raise MailNotConfigured("Email delivery is disabled")
    if not (settings.smtp_host and settings.mail_from):
        raise MailNotConfigured("SMTP is not configured")
    with smtplib.SMTP(settings.smtp_host, settings.smtp_port, timeout=30) as s:
        if settings.smtp_tls:
            s.starttls()
        if settings.smtp_username and settings.smtp_password:
            s.login(settings.smtp_username, settings.smtp_password)
        s.send_message(msg)


def send_new_user_credentials(
    to: str,
    username: str,
    temp_password: str,
    role: str,
    unit_label: Optional[str] = None,
) -> None:
    """Mail a freshly provisioned account its temporary password. Raises on failure."""
    rows = [("Username", username), ("Temporary password", temp_password), ("Role", role)]
    if unit_label:
        rows.append(("Unit", unit_label))

    msg = EmailMessage()
    msg["Subject"] = f"Your access credentials for {settings.app_name}"
    msg["From"] = settings.mail_from or ""
    msg["To"] = to
    text_rows = "\n".join(f"{label}: {value}" for label, value in rows)
    msg.set_content(
        "Your account has been created.\n\n"
        f"{text_rows}\n\n"
        "You will be asked to change the password at first login. "
        "Do not share these credentials."
    )
    html_rows = "".join(
        f"<tr><td><b>{escape(label)}</b></td><td>{escape(str(value))}</td></tr>" for label, value in rows
    )
    msg.add_alternative(
        "<p>Your account has been created.</p>"
        f"<table cellpadding=\"6\">{html_rows}</table>"
        "<p>You will be asked to change the password at first login. Do not share these credentials.</p>",
        subtype="html",
    )
    _send(msg)
