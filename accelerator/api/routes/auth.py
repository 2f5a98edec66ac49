"""
登录、注册、OAuth 回调、登出和密码重置。

表单校验失败返回 400 表单状态（页面据此回填），成功时设置 cookie 并重定向。
"""

import re
from typing import Any, Optional
from urllib.parse import urlencode

from fastapi import APIRouter, Depends, Form, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse, RedirectResponse
from loguru import logger

from accelerator.core.auth import (
    DEFAULT_REDIRECT,
    AuthContext,
    clear_auth_cookies,
    get_auth_context,
    login_url,
    safe_redirect_target,
    set_auth_cookies,
)
from accelerator.core.config import settings
from accelerator.services.auth_provider import OAUTH_PROVIDERS, AuthProviderError, auth_provider

router = APIRouter(prefix="/auth", tags=["Auth"])

MIN_PASSWORD_LENGTH = 8
EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
UNEXPECTED_ERROR = "An unexpected error occurred"
RESET_LINK_SENT = "If an account with that email exists, we've sent you a password reset link."


def _redirect(location: str) -> RedirectResponse:
    return RedirectResponse(location, status_code=302)


def _form_error(status_code: int = 400, **state: Any) -> JSONResponse:
    return JSONResponse(state, status_code=status_code)


def _callback_url(redirect_to: Optional[str]) -> str:
    url = f"{settings.PUBLIC_APP_URL}/auth/callback"
    return f"{url}?{urlencode({'redirectTo': redirect_to})}" if redirect_to else url


# --- login ---


@router.get("/login", summary="登录页状态")
async def login_page(
    redirectTo: Optional[str] = None,
    success: Optional[str] = None,
    error: Optional[str] = None,
    message: Optional[str] = None,
    auth: AuthContext = Depends(get_auth_context),
):
    if auth.session:
        return _redirect(safe_redirect_target(redirectTo))
    return {"redirectTo": redirectTo, "success": success, "error": error, "message": message}


@router.post("/login", summary="邮箱密码登录")
async def login(
    email: Optional[str] = Form(None),
    password: Optional[str] = Form(None),
    redirectTo: Optional[str] = Form(None),
):
    if not email:
        return _form_error(email=email, error="Email is required")
    if not password:
        return _form_error(email=email, error="Password is required")

    try:
        session = await run_in_threadpool(auth_provider.sign_in_with_password, email, password)
    except AuthProviderError as e:
        return _form_error(email=email, error=e.message)

    response = _redirect(safe_redirect_target(redirectTo))
    set_auth_cookies(response, session)
    return response


async def _oauth_redirect(provider: Optional[str], redirect_to: Optional[str]):
    if not provider or provider not in OAUTH_PROVIDERS:
        return _form_error(error="Invalid OAuth provider")
    try:
        url = await run_in_threadpool(auth_provider.get_oauth_sign_in_url, provider, _callback_url(redirect_to))
    except AuthProviderError as e:
        return _form_error(error=e.message or "Failed to generate OAuth URL")
    except Exception:
        logger.exception("OAuth error")
        return _form_error(500, error=UNEXPECTED_ERROR)
    return _redirect(url)


@router.post("/login/oauth", summary="OAuth 登录")
async def login_oauth(provider: Optional[str] = Form(None), redirectTo: Optional[str] = Form(None)):
    return await _oauth_redirect(provider, redirectTo)


# --- signup ---


@router.get("/signup", summary="注册页状态")
async def signup_page(redirectTo: Optional[str] = None, auth: AuthContext = Depends(get_auth_context)):
    if auth.session:
        return _redirect(safe_redirect_target(redirectTo))
    return {"redirectTo": redirectTo}


@router.post("/signup", summary="邮箱注册")
async def signup(
    email: Optional[str] = Form(None),
    password: Optional[str] = Form(None),
    confirmPassword: Optional[str] = Form(None),
    fullName: Optional[str] = Form(None),
    redirectTo: Optional[str] = Form(None),
):
    """
    校验顺序：邮箱 -> 密码 -> 两次密码一致 -> 长度。

    不需要邮箱确认时直接建立会话并返回跳转地址，否则提示去邮箱确认。
    """
    if not email:
        return _form_error(email=email, fullName=fullName, error="Email is required")
    if not password:
        return _form_error(email=email, fullName=fullName, error="Password is required")
    if password != confirmPassword:
        return _form_error(email=email, fullName=fullName, error="Passwords do not match")
    if len(password) < MIN_PASSWORD_LENGTH:
        return _form_error(email=email, fullName=fullName, error="Password must be at least 8 characters long")

    try:
        user, session = await run_in_threadpool(
            auth_provider.sign_up,
            email,
            password,
            {"full_name": fullName or None},
            safe_redirect_target(redirectTo),
        )
    except AuthProviderError as e:
        return _form_error(email=email, fullName=fullName, error=e.message)
    except Exception:
        logger.exception("Signup error")
        return _form_error(500, email=email, fullName=fullName, error=UNEXPECTED_ERROR)

    if session is None:
        return {
            "success": True,
            "message": "Please check your email to confirm your account before signing in.",
            "email": user.email,
        }

    response = JSONResponse(
        {
            "success": True,
            "redirectTo": safe_redirect_target(redirectTo),
            "message": "Account created successfully! Redirecting...",
        }
    )
    set_auth_cookies(response, session)
    return response


@router.post("/signup/oauth", summary="OAuth 注册")
async def signup_oauth(provider: Optional[str] = Form(None), redirectTo: Optional[str] = Form(None)):
    return await _oauth_redirect(provider, redirectTo)


# --- callback / logout ---


@router.get("/callback", summary="OAuth 和邮件链接回调")
async def auth_callback(
    code: Optional[str] = None,
    error: Optional[str] = None,
    error_description: Optional[str] = None,
    redirectTo: Optional[str] = None,
):
    """
    用一次性 code 换取会话；任何失败都重定向回登录页。
    """
    if error:
        logger.warning("OAuth error: {} {}", error, error_description)
        return _redirect(login_url(error=error_description or error))
    if not code:
        return _redirect(login_url(error="No authorization code received"))

    try:
        session = await run_in_threadpool(auth_provider.exchange_code_for_session, code)
    except AuthProviderError as e:
        logger.warning("Token exchange error: {}", e.message)
        return _redirect(login_url(error="Failed to complete authentication"))
    except Exception:
        logger.exception("Callback error")
        return _redirect(login_url(error=UNEXPECTED_ERROR))

    response = _redirect(safe_redirect_target(redirectTo))
    set_auth_cookies(response, session)
    return response


@router.post("/logout", summary="登出")
async def logout(request: Request):
    access_token = request.cookies.get(settings.ACCESS_COOKIE_NAME)
    if access_token:
        try:
            await run_in_threadpool(auth_provider.sign_out, access_token)
        except Exception:
            # 会话撤销失败不影响清除 cookie
            logger.exception("Sign out failed")
    response = _redirect("/")
    clear_auth_cookies(response)
    return response


# --- password reset ---


@router.get("/reset-password", summary="密码重置页状态")
async def reset_password_page(auth: AuthContext = Depends(get_auth_context)):
    if auth.session:
        return _redirect(DEFAULT_REDIRECT)
    return {}


@router.post("/reset-password", summary="发送密码重置链接")
async def reset_password(email: Optional[str] = Form(None)):
    """
    无论邮箱是否注册，都返回同样的提示。
    """
    if not email:
        return _form_error(email=email, error="Email is required")
    if not EMAIL_PATTERN.match(email):
        return _form_error(email=email, error="Please enter a valid email address")

    try:
        await run_in_threadpool(auth_provider.reset_password_for_email, email, "/auth/reset-password/confirm")
    except AuthProviderError as e:
        return _form_error(email=email, error=e.message)
    except Exception:
        logger.exception("Password reset error")
        return _form_error(500, email=email, error=UNEXPECTED_ERROR)

    return {"success": True, "message": RESET_LINK_SENT, "email": email}


@router.get("/reset-password/confirm", summary="设置新密码页状态")
async def reset_password_confirm_page(auth: AuthContext = Depends(get_auth_context)):
    if not auth.session:
        return _redirect(login_url(error="Invalid or expired reset link"))
    return {}


@router.post("/reset-password/confirm", summary="设置新密码")
async def reset_password_confirm(
    password: Optional[str] = Form(None),
    confirmPassword: Optional[str] = Form(None),
    auth: AuthContext = Depends(get_auth_context),
):
    if not auth.session:
        return _redirect(login_url(error="Invalid or expired reset link"))

    if not password:
        return _form_error(error="Password is required")
    if len(password) < MIN_PASSWORD_LENGTH:
        return _form_error(error="Password must be at least 8 characters long")
    if password != confirmPassword:
        return _form_error(error="Passwords do not match")

    try:
        await run_in_threadpool(auth_provider.update_user_password, auth.session.user.id, password)
    except AuthProviderError as e:
        return _redirect(login_url(error=e.message))
    except Exception:
        logger.exception("Password update error")
        return _form_error(500, error=UNEXPECTED_ERROR)

    return _redirect(
        login_url(success="Password updated successfully. Please sign in with your new password.")
    )
