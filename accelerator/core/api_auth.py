"""
/api/v1 的 API Key 认证、scope / 限流检查，以及统一的响应和错误格式。
"""

import re
import time
from dataclasses import dataclass
from typing import Callable, Optional, Tuple, Union

from fastapi import HTTPException, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from fastapi.routing import APIRoute
from loguru import logger
from starlette.background import BackgroundTasks
from starlette.responses import Response

from accelerator.core.auth import require_auth
from accelerator.core.errors import STATUS_CODES, ApiError, Forbidden, RateLimited, Unauthenticated
from accelerator.services.analytics import count_recent_key_usage, track_api_usage
from accelerator.services.auth_provider import AuthUser
from accelerator.services.key_store import InvalidApiKey, key_store

AUTH_PREFIX = re.compile(r"^(Bearer|API-Key)\s+", re.IGNORECASE)


@dataclass(frozen=True)
class ApiPrincipal:
    user_id: str
    api_key_id: str
    scopes: Tuple[str, ...]
    rate_limit: int


@dataclass(frozen=True)
class ApiKeyAuth:
    principal: ApiPrincipal

    @property
    def acting_user_id(self) -> str:
        return self.principal.user_id

    @property
    def scopes(self) -> Tuple[str, ...]:
        return self.principal.scopes


@dataclass(frozen=True)
class SessionAuth:
    user: AuthUser

    @property
    def acting_user_id(self) -> str:
        return self.user.id

    @property
    def scopes(self) -> Tuple[str, ...]:
        # 登录用户对自己的资源拥有全部权限
        return ("*",)


AuthMode = Union[ApiKeyAuth, SessionAuth]


async def authenticate_api_request(request: Request) -> ApiPrincipal:
    header = request.headers.get("authorization")
    if not header:
        raise Unauthenticated("Missing Authorization header")

    token = AUTH_PREFIX.sub("", header).strip()
    if not token:
        raise Unauthenticated("Invalid Authorization header format")

    try:
        record = await run_in_threadpool(key_store.authenticate_key, token)
    except InvalidApiKey as e:
        raise Unauthenticated(str(e), code="INVALID_API_KEY")

    return ApiPrincipal(
        user_id=record["user_id"],
        api_key_id=record["id"],
        scopes=tuple(record["scopes"] or ()),
        rate_limit=record["rate_limit"],
    )


def require_scope(scopes: Tuple[str, ...], required_scope: str) -> None:
    if required_scope not in scopes and "*" not in scopes:
        raise Forbidden(f"Insufficient permissions. Required scope: {required_scope}", code="INSUFFICIENT_SCOPE")


async def check_rate_limit(principal: ApiPrincipal) -> None:
    """最近一小时内的请求数必须小于 key 的 rate_limit。"""
    used = await run_in_threadpool(count_recent_key_usage, principal.api_key_id)
    if used >= principal.rate_limit:
        raise RateLimited("Rate limit exceeded")


def require_api_key(
    scope: Optional[str] = None,
    *,
    track_usage: bool = True,
    rate_limit_check: bool = True,
) -> Callable:
    """
    生成 API Key 依赖。principal 一经解析就写入 request.state，
    即使后续 scope / 限流检查失败，ApiRoute 也会记录这次调用。
    """

    async def dependency(request: Request) -> ApiPrincipal:
        principal = await authenticate_api_request(request)
        request.state.api_principal = principal
        request.state.track_usage = track_usage
        if scope:
            require_scope(principal.scopes, scope)
        if rate_limit_check:
            await check_rate_limit(principal)
        return principal

    return dependency


def resolve_auth_mode(scope: str) -> Callable:
    """
    双模式认证：带 Authorization 头走 API Key，否则走登录会话。
    """
    api_key_dependency = require_api_key(scope)

    async def dependency(request: Request) -> AuthMode:
        if request.headers.get("authorization") is not None:
            return ApiKeyAuth(await api_key_dependency(request))
        session = await require_auth(request)
        return SessionAuth(session.user)

    return dependency


def validation_message(exc: RequestValidationError) -> str:
    parts = []
    for error in exc.errors():
        location = ".".join(str(part) for part in error.get("loc", ()) if part != "body")
        parts.append(f"{location}: {error.get('msg')}" if location else str(error.get("msg")))
    return "; ".join(parts) or "Invalid request"


def _error_response(exc: Exception) -> Tuple[Response, str]:
    if isinstance(exc, ApiError):
        return JSONResponse(exc.to_body(), status_code=exc.status_code, headers=exc.headers), exc.message
    if isinstance(exc, HTTPException):
        message = str(exc.detail)
        body = {"message": message, "code": STATUS_CODES.get(exc.status_code, "ERROR")}
        return JSONResponse(body, status_code=exc.status_code, headers=exc.headers), message
    if isinstance(exc, RequestValidationError):
        message = validation_message(exc)
        body = {"message": message, "code": "INVALID_INPUT", "details": jsonable_encoder(exc.errors())}
        return JSONResponse(body, status_code=400), message
    logger.opt(exception=exc).error("Unhandled API error")
    return JSONResponse({"message": "Internal server error", "code": "INTERNAL_ERROR"}, status_code=500), str(exc)


def _add_background(response: Response, func: Callable, **kwargs) -> None:
    tasks = BackgroundTasks()
    if response.background is not None:
        tasks.tasks.append(response.background)
    tasks.add_task(func, **kwargs)
    response.background = tasks


class ApiRoute(APIRoute):
    """
    /api/v1 路由类：错误统一渲染为 {"message", "code"}，
    响应发送后在后台记录 API Key 用量。
    """

    def get_route_handler(self) -> Callable:
        original_route_handler = super().get_route_handler()

        async def custom_route_handler(request: Request) -> Response:
            started = time.perf_counter()
            error_message: Optional[str] = None
            try:
                response = await original_route_handler(request)
            except Exception as exc:
                response, error_message = _error_response(exc)

            principal: Optional[ApiPrincipal] = getattr(request.state, "api_principal", None)
            if principal is not None and getattr(request.state, "track_usage", False):
                _add_background(
                    response,
                    track_api_usage,
                    user_id=principal.user_id,
                    api_key_id=principal.api_key_id,
                    endpoint=request.url.path,
                    method=request.method,
                    response_time=int((time.perf_counter() - started) * 1000),
                    status_code=response.status_code,
                    error_message=error_message,
                )
            return response

        return custom_route_handler
