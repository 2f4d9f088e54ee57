from __future__ import annotations
import logging
import os
import smtplib
import ssl
from decimal import Decimal
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Any, Dict, Optional

from jinja2 import Environment, FileSystemLoader, select_autoescape

from namesync.config import Settings

log = logging.getLogger(__name__)

template_dir = os.path.join(os.path.dirname(__file__), "templates")
jinja_env = Environment(loader=FileSystemLoader(template_dir), autoescape=select_autoescape(["html"]))

WEI_PER_ETH = Decimal(10) ** 18


def format_eth(wei: Any) -> str:
    if wei in (None, ""):
        return "0"
    eth = Decimal(int(str(wei))) / WEI_PER_ETH
    s = f"{eth.normalize():f}"
    return s


def render(template_name: str, context: Dict[str, Any]) -> str:
    return jinja_env.get_template(template_name).render(**context)


class EmailSender:
    def __init__(self, settings: Settings):
        self.s = settings

    @property
    def enabled(self) -> bool:
        return bool(self.s.EMAIL_ENABLED and self.s.SMTP_HOST)

    def send(self, to_address: str, subject: str, html_body: str, text_body: Optional[str] = None) -> str:
        """Returns "sent", or "dry-run" when SMTP is not configured. SMTP errors propagate."""
        if not self.enabled:
            log.info("email disabled, would send to %s: %s", to_address, subject)
            return "dry-run"

        msg = MIMEMultipart("alternative")
        msg["From"] = f"{self.s.EMAIL_FROM_NAME} <{self.s.EMAIL_FROM}>"
        msg["To"] = to_address
        msg["Subject"] = subject
        if text_body:
            msg.attach(MIMEText(text_body, "plain"))
        msg.attach(MIMEText(html_body, "html"))

        with smtplib.SMTP(self.s.SMTP_HOST, self.s.SMTP_PORT, timeout=30) as server:
            server.ehlo()
            if self.s.SMTP_USE_TLS:
                server.starttls(context=ssl.create_default_context())
                server.ehlo()
            if self.s.SMTP_USERNAME:
                server.login(self.s.SMTP_USERNAME, self.s.SMTP_PASSWORD)
            server.sendmail(self.s.EMAIL_FROM, [to_address], msg.as_string())

        log.info("email sent to %s: %s", to_address, subject)
        return "sent"
