"""
SMS Provider Service
Same adapter shape as the email provider: dev logging vs Twilio REST API
"""
import logging
from abc import ABC, abstractmethod
from typing import Optional

import httpx

logger = logging.getLogger(__name__)

TWILIO_API_URL = "https://api.twilio.com/2010-04-01/Accounts/{sid}/Messages.json"


class SmsProvider(ABC):
    """Abstract SMS provider interface"""

    @abstractmethod
    def send(self, to: str, body: str) -> bool:
        pass

    @abstractmethod
    def is_available(self) -> bool:
        pass


class DevSmsProvider(SmsProvider):
    """Logs text messages instead of sending"""

    def send(self, to: str, body: str) -> bool:
        logger.info(f"📱 SMS (DEV MODE - NOT ACTUALLY SENT) to {to}: {body}")
        return True

    def is_available(self) -> bool:
        return True


class TwilioSmsProvider(SmsProvider):
    """Twilio SMS provider"""

    def __init__(self, account_sid: str, auth_token: str, from_number: str):
        self.account_sid = account_sid
        self.auth_token = auth_token
        self.from_number = from_number

    def send(self, to: str, body: str) -> bool:
        try:
            response = httpx.post(
                TWILIO_API_URL.format(sid=self.account_sid),
                data={"To": to, "From": self.from_number, "Body": body[:1600]},
                auth=(self.account_sid, self.auth_token),
                timeout=10,
            )
            response.raise_for_status()
            logger.info(f"✓ SMS sent to {to}")
            return True
        except httpx.HTTPError as e:
            logger.error(f"Failed to send SMS to {to}: {e}", exc_info=True)
            return False

    def is_available(self) -> bool:
        return bool(self.account_sid and self.auth_token and self.from_number)


_sms_provider: Optional[SmsProvider] = None


def get_sms_provider() -> SmsProvider:
    """Get or create SMS provider singleton"""
    global _sms_provider

    if _sms_provider is None:
        from ..config import config

        if config.TWILIO_ACCOUNT_SID and config.TWILIO_AUTH_TOKEN and config.TWILIO_PHONE_NUMBER:
            logger.info("✓ SMS provider: Twilio")
            _sms_provider = TwilioSmsProvider(
                config.TWILIO_ACCOUNT_SID,
                config.TWILIO_AUTH_TOKEN,
                config.TWILIO_PHONE_NUMBER,
            )
        else:
            logger.info("📱 SMS provider: DevSmsProvider (logs to console only)")
            _sms_provider = DevSmsProvider()

    return _sms_provider
