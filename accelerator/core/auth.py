"""
会话认证：中间件从 cookie 恢复会话，依赖项在路由中校验。
"""

from dataclasses import dataclass
from typing import Optional
from urllib.parse import urlencode

from fastapi import Request
from fastapi.concurrency import run_in_threadpool
from loguru import logger
from starlette.responses import Response

from accelerator.core.config import settings
from accelerator.core.errors import Unauthenticated
from accelerator.services.auth_provider import AuthProviderError, AuthSession, AuthUser, auth_provider


@dataclass(frozen=True)
class AuthContext:
    """每个请求一份，只读。"""

    session: Optional[AuthSession] = None

    @property
    def user(self) -> Optional[AuthUser]:
        return self.session.user if self.session else None


class LoginRedirect(Exception):
    """页面类路由未登录时抛出，由 main 中的异常处理器转成 302。"""

    def __init__(self, location: str):
        super().__init__(location)
        self.location = location


DEFAULT_REDIRECT = "/dashboard"


def safe_redirect_target(value: Optional[str]) -> str:
    """只接受站内路径：以 / 开头，第二个字符不能是斜杠或反斜杠；其余一律回到默认页。"""
    if not value or not value.startswith("/") or value[1:2] in ("/", "\\"):
        return DEFAULT_REDIRECT
    return value


def login_url(error: Optional[str] = None, redirect_to: Optional[str] = None, success: Optional[str] = None) -> str:
    params = {}
    if error:
        params["error"] = error
    if success:
        params["success"] = success
    if redirect_to:
        params["redirectTo"] = redirect_to
    return "/auth/login" + (f"?{urlencode(params)}" if params else "")


# --- cookies ---


def set_auth_cookies(response: Response, session: AuthSession) -> None:
    response.set_cookie(
        settings.ACCESS_COOKIE_NAME,
        session.access_token,
        max_age=settings.ACCESS_COOKIE_MAX_AGE,
        path="/",
        httponly=True,
        secure=settings.COOKIE_SECURE,
        samesite="lax",
    )
    response.set_cookie(
        settings.REFRESH_COOKIE_NAME,
        session.refresh_token,
        max_age=settings.REFRESH_COOKIE_MAX_AGE,
        path="/",
        httponly=True,
        secure=settings.COOKIE_SECURE,
        samesite="lax",
    )


def clear_auth_cookies(response: Response) -> None:
    for name in (settings.ACCESS_COOKIE_NAME, settings.REFRESH_COOKIE_NAME):
        response.delete_cookie(name, path="/", httponly=True, secure=settings.COOKIE_SECURE, samesite="lax")


def _sets_auth_cookie(response: Response) -> bool:
    prefix = f"{settings.ACCESS_COOKIE_NAME}="
    return any(value.startswith(prefix) for value in response.headers.getlist("set-cookie"))


# --- middleware ---


async def resolve_session(request: Request, call_next):
    """
    从 cookie 恢复会话并挂到 request.state.auth。

    查询失败按未登录处理；token 被轮换时回写 cookie，token 无效时清除 cookie。
    路由自己写了认证 cookie（登录、登出）时不覆盖。
    """
    access_token = request.cookies.get(settings.ACCESS_COOKIE_NAME)
    refresh_token = request.cookies.get(settings.REFRESH_COOKIE_NAME)

    session: Optional[AuthSession] = None
    invalid = False
    if access_token or refresh_token:
        try:
            session = await run_in_threadpool(auth_provider.set_session, access_token or "", refresh_token)
        except AuthProviderError as e:
            logger.debug("Discarding session cookies: {}", e.message)
            invalid = True
        except Exception as e:
            logger.warning("Session lookup failed: {}", e)

    request.state.auth = AuthContext(session=session)
    response = await call_next(request)

    if _sets_auth_cookie(response):
        return response
    if session and (session.access_token != access_token or session.refresh_token != refresh_token):
        set_auth_cookies(response, session)
    elif invalid:
        clear_auth_cookies(response)
    return response


# --- dependencies ---


def get_auth_context(request: Request) -> AuthContext:
    return getattr(request.state, "auth", None) or AuthContext()


async def require_auth(request: Request) -> AuthSession:
    """API 路由使用：未登录返回 401。"""
    session = get_auth_context(request).session
    if session is None:
        raise Unauthenticated("Authentication required")
    return session


async def require_page_auth(request: Request) -> AuthSession:
    """页面路由使用：未登录重定向到登录页，并带上原路径。"""
    session = get_auth_context(request).session
    if session is None:
        redirect_to = request.url.path
        if request.url.query:
            redirect_to += f"?{request.url.query}"
        raise LoginRedirect(login_url(error="Please sign in to continue", redirect_to=redirect_to))
    return session
