# Models package (re-export feature modules for stable imports)
from .users.user import User
from .auth.otp import OtpFallback
from .auth.token import RefreshToken, RevokedJti, MaintenanceLease
from .audit.audit_log import AuthAuditLog

__all__ = [
    "User",
    "OtpFallback",
    "RefreshToken",
    "RevokedJti",
    "MaintenanceLease",
    "AuthAuditLog",
]
