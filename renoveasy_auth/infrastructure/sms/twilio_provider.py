import logging
from typing import Optional

from requests.exceptions import RequestException
from twilio.base.exceptions import TwilioException, TwilioRestException
from twilio.http.http_client import TwilioHttpClient
from twilio.rest import Client

from ...application.ports.sms_provider import SmsProvider
from ...core.phone import mask
from ...exceptions import SmsDeliveryError
from .base import is_e164, verification_message

logger = logging.getLogger(__name__)


class TwilioSmsProvider(SmsProvider):
    name = "twilio"

    def __init__(self, account_sid: str, auth_token: str, from_number: str, expiry_minutes: int = 10,
                 timeout: int = 10, client: Optional[Client] = None):
        if client is None:
            if not account_sid or not auth_token:
                raise RuntimeError("Twilio credentials not configured")
            client = Client(account_sid, auth_token, http_client=TwilioHttpClient(timeout=timeout))
        if not from_number:
            raise RuntimeError("TWILIO_PHONE_NUMBER not configured")
        self.client = client
        self.from_number = from_number
        self.expiry_minutes = expiry_minutes

    def send_verification_code(self, phone: str, code: str) -> str:
        try:
            message = self.client.messages.create(
                to=phone,
                from_=self.from_number,
                body=verification_message(code, self.expiry_minutes),
            )
        except TwilioRestException as e:
            logger.error(f"Twilio rejected SMS to {mask(phone)}: {e.code} {e.msg}")
            raise SmsDeliveryError(f"twilio error {e.code}") from e
        except TwilioException as e:
            logger.error(f"Twilio SMS to {mask(phone)} failed: {e}")
            raise SmsDeliveryError("twilio unavailable") from e
        except RequestException as e:
            logger.error(f"Twilio transport error sending to {mask(phone)}: {e!r}")
            raise SmsDeliveryError("twilio transport error") from e
        logger.info(f"Twilio SMS sent to {mask(phone)} sid={message.sid}")
        return message.sid

    def is_valid_phone_number(self, phone: str) -> bool:
        return is_e164(phone)
