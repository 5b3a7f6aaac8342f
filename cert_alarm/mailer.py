"""
Email notifications for Cert Alarm.
"""

import asyncio
import smtplib
import ssl
from datetime import datetime
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import List, Optional, Sequence

from jinja2 import DictLoader, Environment, select_autoescape

from cert_alarm.config import SmtpConfig
from cert_alarm.logger import get_logger
from cert_alarm.models import CertificateRecord, SweepResult

URGENT_DAYS = 7
WARNING_DAYS = 15

_BASE_STYLE = "font-family: Arial, sans-serif; max-width: 640px; margin: 0 auto;"
_CELL = "border: 1px solid #ddd; padding: 10px; text-align: left;"

TEMPLATES = {
    "alert.html": """
<div style="{{ base_style }}">
  <h2 style="color: #d32f2f;">SSL certificate expiry alert</h2>
  <p>The following certificates expire within {{ warning_days }} days:</p>
  <table style="width: 100%; border-collapse: collapse;">
    <thead>
      <tr style="background-color: #f5f5f5;">
        <th style="{{ cell }}">Domain</th>
        <th style="{{ cell }}">Expires</th>
        <th style="{{ cell }}">Days left</th>
        <th style="{{ cell }}">Severity</th>
      </tr>
    </thead>
    <tbody>
    {% for cert in certificates %}
      <tr>
        <td style="{{ cell }}">{{ cert.domain }}</td>
        <td style="{{ cell }}">{{ cert.valid_to.strftime('%Y-%m-%d %H:%M UTC') if cert.valid_to else 'unknown' }}</td>
        <td style="{{ cell }} color: {{ colors[severity(cert.days_until_expiry)] }}; font-weight: bold;">{{ cert.days_until_expiry }}</td>
        <td style="{{ cell }} color: {{ colors[severity(cert.days_until_expiry)] }};">{{ severity(cert.days_until_expiry) }}</td>
      </tr>
    {% endfor %}
    </tbody>
  </table>
  <p>Renew these certificates and redeploy them before they expire.</p>
  <p style="color: #666; font-size: 12px;">Sent by Cert Alarm at {{ sent_at }}</p>
</div>
""",
    "daily_report.html": """
<div style="{{ base_style }}">
  <h2 style="color: #1976d2;">Daily certificate report</h2>
  <p>
    Checked {{ sweep.total }} domains at {{ sweep.sweep_time.strftime('%Y-%m-%d %H:%M UTC') }}:
    {{ sweep.healthy }} healthy, {{ sweep.expiring }} expiring within {{ sweep.warning_days }} days,
    {{ sweep.failed }} failed.
  </p>
  <table style="width: 100%; border-collapse: collapse;">
    <thead>
      <tr style="background-color: #f5f5f5;">
        <th style="{{ cell }}">Domain</th>
        <th style="{{ cell }}">Status</th>
        <th style="{{ cell }}">Days left</th>
        <th style="{{ cell }}">Issuer</th>
      </tr>
    </thead>
    <tbody>
    {% for cert in records %}
      <tr>
        <td style="{{ cell }}">{{ cert.domain }}</td>
        {% if cert.is_success %}
        <td style="{{ cell }}">{{ 'expiring' if cert.is_expiring(sweep.warning_days) else 'ok' }}</td>
        <td style="{{ cell }}">{{ cert.days_until_expiry }}</td>
        <td style="{{ cell }}">{{ cert.issuer }}</td>
        {% else %}
        <td style="{{ cell }} color: #d32f2f;">error</td>
        <td style="{{ cell }}" colspan="2">{{ cert.error_message }}</td>
        {% endif %}
      </tr>
    {% endfor %}
    </tbody>
  </table>
  <p style="color: #666; font-size: 12px;">Sent by Cert Alarm at {{ sent_at }}</p>
</div>
""",
    "test.html": """
<div style="{{ base_style }}">
  <h2>Email configuration works</h2>
  <p>If you received this message, Cert Alarm can deliver certificate notifications.</p>
  <p style="color: #666; font-size: 12px;">Sent at {{ sent_at }}</p>
</div>
""",
}

SEVERITY_COLORS = {"urgent": "#d32f2f", "warning": "#f57c00", "notice": "#ff9800"}


def severity(days_until_expiry: Optional[int]) -> str:
    """Alert severity bucket for a remaining-days count."""
    if days_until_expiry is None or days_until_expiry <= URGENT_DAYS:
        return "urgent"
    if days_until_expiry <= WARNING_DAYS:
        return "warning"
    return "notice"


def _valid_recipients(recipients: Optional[Sequence[str]]) -> List[str]:
    return [email.strip() for email in recipients or [] if email and email.strip()]


class EmailService:
    """
    Render notifications with Jinja2 and deliver them over SMTP.

    Every public method returns True on delivery and False otherwise; failures
    are logged and never raised to the caller.
    """

    def __init__(self, smtp: SmtpConfig):
        self.smtp = smtp
        self.logger = get_logger("mailer")
        self.env = Environment(
            loader=DictLoader(TEMPLATES),
            autoescape=select_autoescape(["html"]),
        )
        self.env.globals.update(
            base_style=_BASE_STYLE, cell=_CELL, colors=SEVERITY_COLORS, severity=severity
        )

    def update_config(self, smtp: SmtpConfig) -> None:
        self.smtp = smtp

    def render(self, template_name: str, **context) -> str:
        sent_at = datetime.now().strftime("%Y-%m-%d %H:%M:%S")
        return self.env.get_template(template_name).render(sent_at=sent_at, **context)

    async def send_alert(
        self,
        expiring: Sequence[CertificateRecord],
        recipients: Sequence[str],
        warning_days: int,
    ) -> bool:
        """Send the expiry alert for the given records."""
        if not expiring:
            self.logger.debug("No expiring certificates, alert not sent")
            return False
        ordered = sorted(expiring, key=lambda r: r.days_until_expiry or 0)
        html = self.render("alert.html", certificates=ordered, warning_days=warning_days)
        subject = f"SSL certificate expiry alert - {datetime.now().strftime('%Y-%m-%d')}"
        return await self._send(subject, html, recipients, "alert")

    async def send_daily_report(self, recipients: Sequence[str], sweep: SweepResult) -> bool:
        """Send the daily summary for a sweep."""
        records = sorted(
            sweep.records,
            key=lambda r: (r.is_success, r.days_until_expiry if r.is_success else 0),
        )
        html = self.render("daily_report.html", sweep=sweep, records=records)
        subject = (
            f"Daily certificate report - {sweep.total} domains, "
            f"{sweep.expiring} expiring, {sweep.failed} failed"
        )
        return await self._send(subject, html, recipients, "daily report")

    async def send_test_email(self, recipients: Sequence[str]) -> bool:
        html = self.render("test.html")
        return await self._send("Cert Alarm - test email", html, recipients, "test email")

    async def verify_connection(self) -> bool:
        """Connect and authenticate against the SMTP server without sending."""
        loop = asyncio.get_running_loop()
        try:
            await loop.run_in_executor(None, self._verify)
            self.logger.info(f"SMTP connection to {self.smtp.host}:{self.smtp.port} verified")
            return True
        except (smtplib.SMTPException, OSError) as e:
            self.logger.error(f"SMTP connection verification failed: {e}")
            return False

    async def _send(
        self, subject: str, html: str, recipients: Sequence[str], label: str
    ) -> bool:
        valid = _valid_recipients(recipients)
        if not valid:
            self.logger.warning(f"No valid recipients, {label} not sent")
            return False

        message = MIMEMultipart("alternative")
        message["Subject"] = subject
        message["From"] = self.smtp.sender or ""
        message["To"] = ", ".join(valid)
        message.attach(MIMEText(html, "html", "utf-8"))

        loop = asyncio.get_running_loop()
        try:
            await loop.run_in_executor(None, self._deliver, message, valid)
        except (smtplib.SMTPException, OSError) as e:
            self.logger.error(f"Failed to send {label}: {e}")
            return False

        self.logger.info(f"Sent {label} to {len(valid)} recipients")
        return True

    def _open(self) -> smtplib.SMTP:
        context = ssl.create_default_context()
        if self.smtp.use_implicit_tls:
            server: smtplib.SMTP = smtplib.SMTP_SSL(
                self.smtp.host, self.smtp.port, timeout=self.smtp.timeout, context=context
            )
        else:
            server = smtplib.SMTP(self.smtp.host, self.smtp.port, timeout=self.smtp.timeout)

        try:
            if not self.smtp.use_implicit_tls:
                server.ehlo()
                if self.smtp.require_tls or server.has_extn("starttls"):
                    server.starttls(context=context)
                    server.ehlo()

            if self.smtp.username:
                server.login(self.smtp.username, self.smtp.password or "")
        except BaseException:
            server.close()
            raise
        return server

    def _deliver(self, message: MIMEMultipart, recipients: List[str]) -> None:
        server = self._open()
        try:
            server.send_message(message, from_addr=self.smtp.sender, to_addrs=recipients)
        finally:
            server.quit()

    def _verify(self) -> None:
        server = self._open()
        try:
            server.noop()
        finally:
            server.quit()
