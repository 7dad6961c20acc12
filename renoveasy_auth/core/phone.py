import re
from dataclasses import dataclass

from ..exceptions import AuthError, ErrorCode

_SEPARATORS = re.compile(r"[\s\-\.\(\)]")
_COUNTRY = re.compile(r"^\d{1,3}$")


@dataclass(frozen=True)
class Phone:
    e164: str
    country_code: str

    @property
    def masked(self) -> str:
        return mask(self.e164)

    def __str__(self) -> str:
        return self.e164

    def __repr__(self) -> str:
        return f"Phone({self.masked})"


def mask(e164: str) -> str:
    """Keep the leading '+' and the last 4 digits, star everything else."""
    digits = e164[1:] if e164.startswith("+") else e164
    keep = 4 if len(digits) > 4 else max(len(digits) - 1, 0)
    starred = "*" * (len(digits) - keep) + digits[len(digits) - keep:]
    return ("+" if e164.startswith("+") else "") + starred


def normalize_country(country: str) -> str:
    cc = (country or "").strip().lstrip("+")
    if not _COUNTRY.match(cc) or cc.startswith("0"):
        raise AuthError(ErrorCode.INVALID_COUNTRY_CODE)
    return cc


def _national_digits(phone: str, cc: str) -> str:
    raw = _SEPARATORS.sub("", (phone or "").strip())
    if raw.startswith("+"):
        rest = raw[1:]
        if not rest.isdigit() or not rest.startswith(cc):
            raise AuthError(ErrorCode.INVALID_PHONE_FORMAT)
        national = rest[len(cc):]
    elif raw.startswith("00") and raw[2:].startswith(cc):
        # international dialling prefix
        national = raw[2 + len(cc):]
    else:
        national = raw
    # trunk prefix
    national = national.lstrip("0")
    if not national.isdigit():
        raise AuthError(ErrorCode.INVALID_PHONE_FORMAT)
    return national


def _validate(cc: str, national: str) -> None:
    if cc == "86":
        ok = len(national) == 11 and national[0] == "1" and national[1] in "3456789"
    elif cc == "61":
        ok = len(national) == 9 and national[0] == "4"
    else:
        ok = 10 <= len(cc) + len(national) <= 15
    if not ok:
        raise AuthError(ErrorCode.INVALID_PHONE_FORMAT)


def normalize(phone: str, country: str) -> Phone:
    """Canonicalize `phone` to E.164 under `country`. Idempotent on its own output."""
    cc = normalize_country(country)
    national = _national_digits(phone, cc)
    _validate(cc, national)
    return Phone(e164=f"+{cc}{national}", country_code=cc)


class PhoneNormalizer:
    def normalize(self, phone: str, country: str) -> Phone:
        return normalize(phone, country)

    def mask(self, e164: str) -> str:
        return mask(e164)
