# renoveasy_auth/i18n.py
"""Bilingual (English | Chinese) message table for error codes.

Error values only carry a stable code plus details; the text shown to clients
is rendered here so that wording can change without touching the services.
"""
from typing import Any, Dict, Optional, Tuple

SEPARATOR = " | "

# code -> (english, chinese, http status)
ERROR_MESSAGES: Dict[str, Tuple[str, str, int]] = {
    "INVALID_PHONE_FORMAT": ("Invalid phone number format", "无效的手机号码格式", 400),
    "INVALID_COUNTRY_CODE": ("Invalid country code", "无效的国家代码", 400),
    "INVALID_CODE_LENGTH": ("Verification code must be 6 digits", "验证码必须为6位数字", 400),
    "CODE_NOT_FOUND": ("Invalid verification code", "验证码错误", 400),
    "CODE_EXPIRED": ("Verification code expired", "验证码已过期", 400),
    "CODE_MISMATCH": ("Invalid verification code", "验证码错误", 400),
    "TOO_MANY_ATTEMPTS": (
        "Maximum attempts exceeded. Please request a new code",
        "尝试次数超限，请重新获取验证码",
        429,
    ),
    "RATE_LIMIT_EXCEEDED": (
        "Too many requests. Please try again in {retry_after_s} seconds",
        "请求过于频繁，请在 {retry_after_s} 秒后重试",
        429,
    ),
    "ACCOUNT_LOCKED": (
        "Account temporarily locked until {unlock_at}",
        "账户已被临时锁定，解锁时间 {unlock_at}",
        423,
    ),
    "SUSPECTED_ABUSE": ("Suspicious activity detected", "检测到可疑活动", 403),
    "USER_NOT_FOUND": ("User not found", "用户不存在", 404),
    "USER_TYPE_ALREADY_SELECTED": ("User type already selected", "用户类型已选择", 409),
    "INVALID_USER_TYPE": ("Invalid user type", "无效的用户类型", 400),
    "TOKEN_MALFORMED": ("Invalid token format", "无效的令牌格式", 401),
    "TOKEN_EXPIRED": ("Token expired", "令牌已过期", 401),
    "TOKEN_REVOKED": ("Token revoked", "令牌已被撤销", 401),
    "TOKEN_SIGNATURE_INVALID": ("Token signature verification failed", "令牌签名验证失败", 401),
    "REFRESH_REUSE_DETECTED": (
        "Refresh token reuse detected. Please login again",
        "检测到刷新令牌重复使用，请重新登录",
        401,
    ),
    "SMS_SEND_FAILED": (
        "SMS service failure. Please try again later",
        "短信服务失败，请稍后重试",
        502,
    ),
    "STORAGE_UNAVAILABLE": (
        "Service temporarily unavailable. Please try again later",
        "服务暂时不可用，请稍后重试",
        503,
    ),
    "INTERNAL": ("Internal server error", "服务器内部错误", 500),
}

SUCCESS_MESSAGES: Dict[str, Tuple[str, str]] = {
    "CODE_SENT": ("Verification code sent", "验证码已发送"),
    "LOGIN_SUCCESS": ("Login successful", "登录成功"),
    "USER_TYPE_SELECTED": ("User type selected", "用户类型已选择"),
    "TOKEN_REFRESHED": ("Token refreshed", "令牌已刷新"),
    "LOGGED_OUT": ("Logged out", "已退出登录"),
}


def _format(template: str, params: Dict[str, Any]) -> str:
    try:
        return template.format(**params)
    except (KeyError, IndexError):
        return template


def http_status_for(code: str) -> int:
    return ERROR_MESSAGES.get(code, ERROR_MESSAGES["INTERNAL"])[2]


def render_error(code: str, params: Optional[Dict[str, Any]] = None, lang: Optional[str] = None) -> str:
    """Render an error code as `English | 中文`, or a single language when `lang` is given."""
    en, zh, _ = ERROR_MESSAGES.get(code, ERROR_MESSAGES["INTERNAL"])
    params = params or {}
    if lang and lang.lower().startswith("zh"):
        return _format(zh, params)
    if lang and lang.lower().startswith("en"):
        return _format(en, params)
    return _format(en, params) + SEPARATOR + _format(zh, params)


def render_success(key: str) -> str:
    en, zh = SUCCESS_MESSAGES[key]
    return en + SEPARATOR + zh
