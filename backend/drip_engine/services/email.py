import asyncio
import json
import logging
import smtplib
import socket
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from email.utils import make_msgid
from html import escape
from typing import Optional

from drip_engine import config
from drip_engine.services.channels import ChannelAdapter, SendResult, is_valid_email

logger = logging.getLogger(__name__)


def convert_text_to_html(plain_text: str) -> str:
    """Convert a plain text email body to HTML, preserving line breaks."""
    if not plain_text:
        return ""
    return escape(plain_text).replace('\n', '<br>')


class SmtpEmailAdapter(ChannelAdapter):
    """Sends HTML email over SMTP with STARTTLS."""

    channel = "email"

    def __init__(self, host: str = None, port: int = None, username: str = None, password: str = None,
                 from_name: str = None, from_address: str = None, timeout: float = None):
        self.host = host or config.SMTP_HOST
        self.port = port or config.SMTP_PORT
        self.username = username or config.SMTP_USERNAME
        self.password = password or config.SMTP_PASSWORD
        self.from_name = from_name or config.EMAIL_FROM_NAME
        self.from_address = from_address or config.EMAIL_FROM_ADDRESS or self.username
        self.timeout = timeout or config.DRIP_SEND_TIMEOUT_SECONDS

    def validate(self, address: str) -> bool:
        return is_valid_email(address)

    def build_message(self, address: str, content: str, correlation_id: str, subject: Optional[str]) -> MIMEMultipart:
        html_body = f"""
    <!DOCTYPE html>
    <html lang="en">
    <head><meta charset="UTF-8"><title>{escape(subject or '')}</title></head>
    <body>
        <div style="max-width: 600px; margin: 0 auto; font-family: -apple-system, 'Segoe UI', Roboto, sans-serif; line-height: 1.6; color: #333;">
            {convert_text_to_html(content)}
        </div>
    </body>
    </html>
    """
        domain = self.from_address.split("@")[-1] if "@" in self.from_address else None
        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject or "Message from " + self.from_name
        msg["From"] = f"{self.from_name} <{self.from_address}>"
        msg["To"] = address
        msg["Reply-To"] = self.from_address
        msg["Message-ID"] = make_msgid(idstring=correlation_id, domain=domain)
        msg["X-Correlation-Id"] = correlation_id
        # SendGrid copies unique_args onto every event it reports for this message
        msg["X-SMTPAPI"] = json.dumps({"unique_args": {"correlation_id": correlation_id}})
        msg["List-Unsubscribe"] = f"<mailto:{self.from_address}?subject=unsubscribe>"
        msg["Precedence"] = "bulk"
        msg.attach(MIMEText(content, "plain"))
        msg.attach(MIMEText(html_body, "html"))
        return msg

    def _deliver(self, msg: MIMEMultipart):
        with smtplib.SMTP(self.host, self.port, timeout=self.timeout) as server:
            server.starttls()
            server.login(self.username, self.password)
            server.send_message(msg)

    async def send(self, address: str, content: str, correlation_id: str,
                   subject: Optional[str] = None) -> SendResult:
        if not self.username or not self.password:
            logger.error("[EMAIL] Missing SMTP credentials")
            return SendResult.failure("Missing SMTP credentials", retryable=False)

        msg = self.build_message(address, content, correlation_id, subject)
        logger.info(f"[EMAIL] Sending message {correlation_id} to {address}")
        try:
            await asyncio.to_thread(self._deliver, msg)
        except smtplib.SMTPAuthenticationError as e:
            logger.error(f"[EMAIL] SMTP authentication failed: {e}")
            return SendResult.failure(f"SMTP authentication failed: {e}", retryable=False)
        except smtplib.SMTPRecipientsRefused as e:
            logger.error(f"[EMAIL] SMTP recipients refused for message {correlation_id}: {e}")
            return SendResult.failure(f"Recipient refused: {e}", retryable=False)
        except smtplib.SMTPResponseException as e:
            # 4xx replies are temporary, 5xx are permanent
            retryable = 400 <= e.smtp_code < 500
            logger.warning(f"[EMAIL] SMTP error {e.smtp_code} for message {correlation_id}: {e.smtp_error}")
            return SendResult.failure(f"SMTP error {e.smtp_code}: {e.smtp_error}", retryable=retryable)
        except smtplib.SMTPException as e:
            logger.error(f"[EMAIL] SMTP exception for message {correlation_id}: {e}")
            return SendResult.failure(f"SMTP exception: {e}", retryable=True)
        except (socket.timeout, OSError) as e:
            logger.warning(f"[EMAIL] SMTP connection problem for message {correlation_id}: {e}")
            return SendResult.failure(f"SMTP connection error: {e}", retryable=True)

        logger.info(f"[EMAIL] Message {correlation_id} sent to {address}")
        return SendResult.success(msg["Message-ID"].strip("<>"))
