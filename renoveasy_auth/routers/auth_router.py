# renoveasy_auth/routers/auth_router.py
import logging

import redis
from fastapi import APIRouter, Depends, Request
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials

from ..application.services.auth_service import AuthService, RequestContext
from ..application.services.token_service import AccessClaims
from ..exceptions import AuthError, ErrorCode, create_success_response
from ..i18n import render_success
from ..schemas import (
    SendCodeRequest, SendCodeData, VerifyCodeRequest, LoginData, SelectTypeRequest, SelectTypeData,
    RefreshRequest, TokenData, LogoutData, ApiResponse,
)
from ..utils import utcnow

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/auth", tags=["Authentication"])

# Auth scheme
bearer_scheme = HTTPBearer(auto_error=False)


def get_auth_service(request: Request) -> AuthService:
    return request.app.state.container.auth_service


def get_request_context(request: Request) -> RequestContext:
    """Extract client information for the defence layer and the audit log"""
    forwarded = request.headers.get("x-forwarded-for")
    ip = forwarded.split(",")[0].strip() if forwarded else (request.client.host if request.client else None)
    # set by the edge proxy after a successful captcha challenge
    captcha = request.headers.get("x-captcha-verified", "").lower() in ("1", "true", "yes")
    return RequestContext(
        ip=ip,
        user_agent=request.headers.get("user-agent"),
        captcha_verified=captcha,
        cancel=getattr(request.app.state, "shutdown_event", None),
    )


def get_current_claims(
    request: Request,
    credentials: HTTPAuthorizationCredentials = Depends(bearer_scheme),
) -> AccessClaims:
    if not credentials or not credentials.credentials:
        raise AuthError(ErrorCode.TOKEN_MALFORMED)
    return request.app.state.container.tokens.verify_access(credentials.credentials)


@router.post("/send-code", response_model=ApiResponse)
def send_code(
    body: SendCodeRequest,
    ctx: RequestContext = Depends(get_request_context),
    service: AuthService = Depends(get_auth_service),
):
    result = service.send_code(body.phone, body.country_code, ctx)
    data = SendCodeData(
        message=render_success("CODE_SENT"),
        phone=result.phone_masked,
        expires_at=result.expires_at,
        resend_after_s=result.resend_after_s,
        next_resend_at=result.next_resend_at,
    )
    return create_success_response(data.model_dump(mode="json"), data.message)


@router.post("/verify-code", response_model=ApiResponse)
def verify_code(
    body: VerifyCodeRequest,
    ctx: RequestContext = Depends(get_request_context),
    service: AuthService = Depends(get_auth_service),
):
    result = service.verify_code(body.phone, body.country_code, body.code, ctx)
    data = LoginData(
        access_token=result.tokens.access_token,
        refresh_token=result.tokens.refresh_token,
        expires_in=result.tokens.expires_in,
        user_id=result.user_id,
        user_type=result.user_type,
        requires_type_selection=result.requires_type_selection,
        is_new_user=result.is_new_user,
    )
    return create_success_response(data.model_dump(), render_success("LOGIN_SUCCESS"))


@router.post("/select-type", response_model=ApiResponse)
def select_type(
    body: SelectTypeRequest,
    claims: AccessClaims = Depends(get_current_claims),
    ctx: RequestContext = Depends(get_request_context),
    service: AuthService = Depends(get_auth_service),
):
    chosen = service.select_user_type(claims.sub, body.user_type, ctx)
    data = SelectTypeData(user_type=chosen.value)
    return create_success_response(data.model_dump(), render_success("USER_TYPE_SELECTED"))


@router.post("/refresh", response_model=ApiResponse)
def refresh(
    body: RefreshRequest,
    ctx: RequestContext = Depends(get_request_context),
    service: AuthService = Depends(get_auth_service),
):
    pair = service.refresh(body.refresh_token, ctx)
    data = TokenData(access_token=pair.access_token, refresh_token=pair.refresh_token, expires_in=pair.expires_in)
    return create_success_response(data.model_dump(), render_success("TOKEN_REFRESHED"))


@router.post("/logout", response_model=ApiResponse)
def logout(
    claims: AccessClaims = Depends(get_current_claims),
    ctx: RequestContext = Depends(get_request_context),
    service: AuthService = Depends(get_auth_service),
):
    revoked = service.logout(claims.sub, ctx)
    return create_success_response(LogoutData(revoked_sessions=revoked).model_dump(), render_success("LOGGED_OUT"))


@router.get("/health")
def health(request: Request):
    container = request.app.state.container
    redis_ok = None
    if container.redis is not None:
        try:
            redis_ok = bool(container.redis.ping())
        except redis.exceptions.RedisError:
            redis_ok = False
    return {
        "status": "healthy" if redis_ok in (None, True) else "degraded",
        "service": container.settings.APP_NAME,
        "version": container.settings.APP_VERSION,
        "timestamp": utcnow().isoformat(),
        "redis": redis_ok,
        "sms_provider": container.sms.name,
        "jwt_kid": container.keys.jwt_kid,
    }
