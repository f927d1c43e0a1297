"""
Email delivery of daily reports.

The HTML body is rendered from ``templates/daily_report.html``; the PDF
travels as an attachment. SMTP runs in a worker thread.
"""
from __future__ import annotations

import asyncio
import logging
import smtplib
import ssl
from dataclasses import dataclass, field
from email.mime.application import MIMEApplication
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from pathlib import Path
from typing import TYPE_CHECKING

from jinja2 import Environment, FileSystemLoader, select_autoescape

from medcenter.config import Settings
from medcenter.models import Report

if TYPE_CHECKING:
    from medcenter.services.reports import DayData

_log = logging.getLogger("medcenter.delivery")

tpl_dir = Path(__file__).resolve().parent.parent / "templates"
env = Environment(
    loader=FileSystemLoader(str(tpl_dir)),
    autoescape=select_autoescape(["html", "xml"]),
)


@dataclass
class DeliveryReceipt:
    delivered: bool
    recipients: list[str] = field(default_factory=list)
    detail: str = ""


class EmailDelivery:
    def __init__(self, settings: Settings, environment: Environment | None = None) -> None:
        self.settings = settings
        self.env = environment or env

    def render_body(self, report: Report, day: DayData) -> str:
        template = self.env.get_template("daily_report.html")
        return template.render(
            center_name=self.settings.CENTER_NAME,
            currency=self.settings.CURRENCY_SYMBOL,
            report=report,
            day=day,
        )

    def build_message(
        self,
        report: Report,
        day: DayData,
        recipients: list[str],
        attachment: bytes | None = None,
        filename: str | None = None,
    ) -> MIMEMultipart:
        sender = self.settings.SMTP_FROM or self.settings.SMTP_USER
        msg = MIMEMultipart("mixed")
        msg["Subject"] = f"{self.settings.CENTER_NAME} - Daily report {report.date.isoformat()}"
        msg["From"] = sender
        msg["To"] = ", ".join(recipients)
        msg.attach(MIMEText(self.render_body(report, day), "html", "utf-8"))
        if attachment:
            part = MIMEApplication(attachment, _subtype="pdf")
            part.add_header(
                "Content-Disposition",
                "attachment",
                filename=filename or f"report_{report.date.isoformat()}.pdf",
            )
            msg.attach(part)
        return msg

    def _send_sync(self, msg: MIMEMultipart, recipients: list[str]) -> None:
        host, port = self.settings.SMTP_HOST, self.settings.SMTP_PORT
        context = ssl.create_default_context()
        if port == 465:
            server = smtplib.SMTP_SSL(host, port, context=context, timeout=30)
        else:
            server = smtplib.SMTP(host, port, timeout=30)
            server.starttls(context=context)
        try:
            server.login(self.settings.SMTP_USER, self.settings.SMTP_PASSWORD)
            server.sendmail(msg["From"], recipients, msg.as_string())
        finally:
            server.quit()

    async def send(
        self,
        report: Report,
        day: DayData,
        recipients: list[str],
        attachment: bytes | None = None,
        filename: str | None = None,
    ) -> DeliveryReceipt:
        recipients = [r for r in recipients if r]
        if not recipients:
            return DeliveryReceipt(False, [], "no recipients")
        if not self.settings.smtp_configured:
            _log.warning("SMTP not configured; report %s not emailed", report.id)
            return DeliveryReceipt(False, recipients, "smtp not configured")

        msg = self.build_message(report, day, recipients, attachment, filename)
        try:
            await asyncio.to_thread(self._send_sync, msg, recipients)
        except (smtplib.SMTPException, OSError) as exc:
            _log.error("report %s email to %s failed: %s", report.id, recipients, exc)
            return DeliveryReceipt(False, recipients, str(exc))

        _log.info("report %s emailed to %s", report.id, recipients)
        return DeliveryReceipt(True, recipients, "sent")
