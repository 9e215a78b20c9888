"""
Email Provider Service
Adapter pattern for sending emails (dev logging vs Resend API)
"""
import logging
from abc import ABC, abstractmethod
from typing import Optional, List
from dataclasses import dataclass, field

import httpx

logger = logging.getLogger(__name__)

RESEND_API_URL = "https://api.resend.com/emails"


@dataclass
class EmailMessage:
    """Email message structure"""
    to: str
    subject: str
    html_body: str
    text_body: Optional[str] = None
    from_address: Optional[str] = None
    reply_to: Optional[str] = None
    cc: List[str] = field(default_factory=list)
    bcc: List[str] = field(default_factory=list)
    attachments: List[dict] = field(default_factory=list)  # [{filename, content(base64)}]


class EmailProvider(ABC):
    """
    Abstract email provider interface

    Implementations:
    - DevEmailProvider: Logs emails to console (development)
    - ResendEmailProvider: Sends via the Resend HTTP API
    """

    @abstractmethod
    def send(self, message: EmailMessage) -> bool:
        """
        Send an email

        Returns:
            True if sent successfully, False otherwise
        """
        pass

    @abstractmethod
    def is_available(self) -> bool:
        pass


class DevEmailProvider(EmailProvider):
    """Development email provider - logs emails instead of sending"""

    def send(self, message: EmailMessage) -> bool:
        logger.info("=" * 60)
        logger.info("📧 EMAIL (DEV MODE - NOT ACTUALLY SENT)")
        logger.info("=" * 60)
        logger.info(f"To: {message.to}")
        logger.info(f"From: {message.from_address or 'noreply@truckcommand.app'}")
        logger.info(f"Subject: {message.subject}")
        if message.attachments:
            logger.info(f"Attachments: {', '.join(a.get('filename', '?') for a in message.attachments)}")
        logger.info("-" * 60)
        logger.info(f"Text Body:\n{message.text_body or message.html_body}")
        logger.info("=" * 60)
        return True

    def is_available(self) -> bool:
        return True


class ResendEmailProvider(EmailProvider):
    """Resend email provider for production"""

    def __init__(self, api_key: str, from_address: str):
        self.api_key = api_key
        self.from_address = from_address

    def send(self, message: EmailMessage) -> bool:
        payload = {
            "from": message.from_address or self.from_address,
            "to": [message.to],
            "subject": message.subject,
            "html": message.html_body,
        }
        if message.text_body:
            payload["text"] = message.text_body
        if message.reply_to:
            payload["reply_to"] = message.reply_to
        if message.cc:
            payload["cc"] = message.cc
        if message.bcc:
            payload["bcc"] = message.bcc
        if message.attachments:
            payload["attachments"] = message.attachments

        try:
            response = httpx.post(
                RESEND_API_URL,
                json=payload,
                headers={"Authorization": f"Bearer {self.api_key}"},
                timeout=10,
            )
            response.raise_for_status()
            logger.info(f"✓ Email sent to {message.to}: {message.subject}")
            return True
        except httpx.HTTPError as e:
            logger.error(f"Failed to send email to {message.to}: {e}", exc_info=True)
            return False

    def is_available(self) -> bool:
        return bool(self.api_key and self.from_address)


# Singleton instance
_email_provider: Optional[EmailProvider] = None


def get_email_provider() -> EmailProvider:
    """
    Get or create email provider singleton

    Returns ResendEmailProvider when RESEND_API_KEY is set, DevEmailProvider otherwise
    """
    global _email_provider

    if _email_provider is None:
        from ..config import config

        if config.RESEND_API_KEY:
            logger.info("✓ Email provider: Resend")
            logger.info(f"  From address: {config.EMAIL_FROM}")
            _email_provider = ResendEmailProvider(config.RESEND_API_KEY, config.EMAIL_FROM)
        else:
            logger.info("📧 Email provider: DevEmailProvider (logs to console only - expected in development)")
            logger.info("  Set RESEND_API_KEY to enable email sending")
            _email_provider = DevEmailProvider()

    return _email_provider
