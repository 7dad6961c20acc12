import logging
from typing import Any, Optional

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from ...application.ports.sms_provider import SmsProvider
from ...core.phone import mask
from ...exceptions import SmsDeliveryError
from .base import is_e164, verification_message

logger = logging.getLogger(__name__)


class AwsSnsSmsProvider(SmsProvider):
    name = "aws-sns"

    def __init__(self, region: str, access_key_id: str = "", secret_access_key: str = "",
                 sender_id: Optional[str] = None, expiry_minutes: int = 10, timeout: int = 10,
                 client: Optional[Any] = None):
        if client is None:
            config = Config(connect_timeout=timeout, read_timeout=timeout, retries={"max_attempts": 1})
            # Local: uses access key from .env
            # Production: uses the IAM role of the instance
            if access_key_id and secret_access_key:
                client = boto3.client(
                    "sns",
                    region_name=region,
                    aws_access_key_id=access_key_id,
                    aws_secret_access_key=secret_access_key,
                    config=config,
                )
            else:
                client = boto3.client("sns", region_name=region, config=config)
        self.client = client
        self.sender_id = sender_id
        self.expiry_minutes = expiry_minutes

    def send_verification_code(self, phone: str, code: str) -> str:
        attributes = {
            "AWS.SNS.SMS.SMSType": {"DataType": "String", "StringValue": "Transactional"},
        }
        if self.sender_id:
            attributes["AWS.SNS.SMS.SenderID"] = {"DataType": "String", "StringValue": self.sender_id}
        try:
            response = self.client.publish(
                PhoneNumber=phone,
                Message=verification_message(code, self.expiry_minutes),
                MessageAttributes=attributes,
            )
        except (ClientError, BotoCoreError) as e:
            logger.error(f"SNS publish to {mask(phone)} failed: {e}")
            raise SmsDeliveryError("sns publish failed") from e
        message_id = response["MessageId"]
        logger.info(f"SNS SMS sent to {mask(phone)} id={message_id}")
        return message_id

    def is_valid_phone_number(self, phone: str) -> bool:
        return is_e164(phone)
