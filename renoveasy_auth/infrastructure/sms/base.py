import re

E164 = re.compile(r"^\+[1-9]\d{7,14}$")


def verification_message(code: str, expiry_minutes: int) -> str:
    return f"Your RenovEasy verification code is: {code}. This code will expire in {expiry_minutes} minutes."


def is_e164(phone: str) -> bool:
    return bool(E164.match(phone or ""))
