# boothpay/infrastructure/notifications/mailer.py

import logging
import smtplib
from dataclasses import dataclass
from datetime import datetime
from email.message import EmailMessage
from pathlib import Path
from typing import Protocol

from jinja2 import Environment, FileSystemLoader, select_autoescape

from boothpay.config import Settings
from boothpay.domain.fees import channel_label

logger = logging.getLogger(__name__)

TEMPLATES_DIR = Path(__file__).resolve().parents[2] / "templates"


@dataclass(frozen=True)
class PaidNotice:
    order_id: str
    booking_id: str
    amount: int
    paid_at: datetime
    email: str | None = None
    rep_name: str | None = None
    channel: str | None = None
    event_title: str | None = None
    event_location: str | None = None


class Notifier(Protocol):
    def booth_paid(self, notice: PaidNotice) -> None:
        ...


class LoggingNotifier:
    """Used when SMTP is not configured."""

    def booth_paid(self, notice: PaidNotice) -> None:
        logger.info(
            "Booth paid: order=%s amount=%s email=%s (SMTP not configured, no mail sent)",
            notice.order_id,
            notice.amount,
            notice.email,
        )


class SmtpInvoiceNotifier:
    """Sends the paid invoice to the booking's contact address."""

    def __init__(
        self,
        host: str,
        port: int = 587,
        user: str = "",
        password: str = "",
        mail_from: str = "",
        support_email: str = "",
        timeout: float = 10.0,
    ):
        self.host = host
        self.port = port
        self.user = user
        self.password = password
        self.mail_from = mail_from or user or "no-reply@localhost"
        self.support_email = support_email or self.mail_from
        self.timeout = timeout
        self.env = Environment(
            loader=FileSystemLoader(str(TEMPLATES_DIR)),
            autoescape=select_autoescape(["html"]),
        )

    def render(self, notice: PaidNotice) -> EmailMessage:
        html = self.env.get_template("booth_invoice.html").render(
            notice=notice,
            channel_label=channel_label(notice.channel),
            support_email=self.support_email,
        )
        message = EmailMessage()
        message["Subject"] = f"Booth payment received - {notice.order_id}"
        message["From"] = self.mail_from
        message["To"] = notice.email
        message.set_content(
            f"Order {notice.order_id} is PAID.\n"
            f"Amount: Rp {notice.amount}\n"
            f"Paid at: {notice.paid_at.isoformat()}\n"
        )
        message.add_alternative(html, subtype="html")
        return message

    def booth_paid(self, notice: PaidNotice) -> None:
        if not notice.email:
            logger.info("No contact e-mail for order %s; invoice skipped", notice.order_id)
            return

        message = self.render(notice)

        # 465 is implicit TLS, anything else upgrades with STARTTLS.
        if self.port == 465:
            smtp = smtplib.SMTP_SSL(self.host, self.port, timeout=self.timeout)
        else:
            smtp = smtplib.SMTP(self.host, self.port, timeout=self.timeout)

        with smtp:
            if self.port != 465:
                smtp.starttls()
            if self.user:
                smtp.login(self.user, self.password)
            smtp.send_message(message)

        logger.info("Invoice sent for order %s to %s", notice.order_id, notice.email)


def build_notifier(settings: Settings) -> Notifier:
    if not settings.smtp_host:
        logger.warning("SMTP not configured. Paid invoices will NOT be e-mailed.")
        return LoggingNotifier()
    return SmtpInvoiceNotifier(
        host=settings.smtp_host,
        port=settings.smtp_port,
        user=settings.smtp_user,
        password=settings.smtp_password,
        mail_from=settings.mail_from,
        support_email=settings.support_email,
    )
