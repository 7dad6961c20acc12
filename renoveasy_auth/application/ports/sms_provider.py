from typing import Protocol


class SmsProvider(Protocol):
    name: str

    def send_verification_code(self, phone: str, code: str) -> str:
        """Send the code and return the provider's message id; raises SmsDeliveryError."""
        ...

    def is_valid_phone_number(self, phone: str) -> bool:
        ...
