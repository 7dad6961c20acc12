# renoveasy_auth/schemas/auth/auth.py
from pydantic import BaseModel, Field, field_validator
from typing import Optional
from datetime import datetime


class SendCodeRequest(BaseModel):
    phone: str = Field(..., min_length=1, max_length=32, description="Phone number, national or +E.164")
    country_code: str = Field(..., min_length=1, max_length=4, description="Country calling code, e.g. 86 or +61")

    @field_validator('phone', 'country_code')
    @classmethod
    def strip_value(cls, v: str) -> str:
        return v.strip()


class SendCodeData(BaseModel):
    message: str
    phone: str
    expires_at: datetime
    resend_after_s: int
    next_resend_at: datetime


class VerifyCodeRequest(BaseModel):
    phone: str = Field(..., min_length=1, max_length=32)
    country_code: str = Field(..., min_length=1, max_length=4)
    code: str = Field(..., description="6-digit verification code")

    @field_validator('code')
    @classmethod
    def strip_code(cls, v: str) -> str:
        # length and digits are checked by the service so the error carries its code
        return v.strip()


class TokenData(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str = "Bearer"
    expires_in: int


class LoginData(TokenData):
    user_id: str
    user_type: Optional[str] = None
    requires_type_selection: bool
    is_new_user: bool


class SelectTypeRequest(BaseModel):
    user_type: str = Field(..., description="customer or worker")


class SelectTypeData(BaseModel):
    user_type: str


class RefreshRequest(BaseModel):
    refresh_token: str = Field(..., min_length=1)


class LogoutData(BaseModel):
    revoked_sessions: int
