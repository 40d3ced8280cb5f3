from __future__ import annotations

from fastapi import Response

from tenantauth.config import AuthConfig
from tenantauth.service.tokens import TokenPair

ACCESS_COOKIE = "access_token"
REFRESH_COOKIE = "refresh_token"
SESSION_COOKIE = "session_id"
REFRESH_COOKIE_PATH = "/v1/auth"


def set_auth_cookies(response: Response, pair: TokenPair, config: AuthConfig) -> None:
    secure = config.is_production
    # readable by the SPA; the other two are httpOnly
    response.set_cookie(
        ACCESS_COOKIE,
        pair.access_token,
        httponly=False,
        secure=secure,
        samesite="lax",
        max_age=config.access_token_ttl_seconds,
        path="/",
    )
    response.set_cookie(
        REFRESH_COOKIE,
        pair.refresh_token,
        httponly=True,
        secure=secure,
        samesite="strict",
        max_age=config.refresh_token_ttl_seconds,
        path=REFRESH_COOKIE_PATH,
    )
    response.set_cookie(
        SESSION_COOKIE,
        pair.session_id,
        httponly=True,
        secure=secure,
        samesite="lax",
        max_age=config.refresh_token_ttl_seconds,
        path="/",
    )


def clear_auth_cookies(response: Response, config: AuthConfig) -> None:
    secure = config.is_production
    response.delete_cookie(ACCESS_COOKIE, path="/", secure=secure, samesite="lax")
    response.delete_cookie(
        REFRESH_COOKIE, path=REFRESH_COOKIE_PATH, secure=secure, httponly=True, samesite="strict"
    )
    response.delete_cookie(SESSION_COOKIE, path="/", secure=secure, httponly=True, samesite="lax")
