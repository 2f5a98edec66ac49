from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, RedirectResponse
from loguru import logger

from accelerator.api import router as api_router
from accelerator.api import web_router
from accelerator.core.api_auth import validation_message
from accelerator.core.auth import LoginRedirect, resolve_session
from accelerator.core.config import settings
from accelerator.core.logging_config import configure_logging


async def login_redirect_handler(request: Request, exc: LoginRedirect) -> RedirectResponse:
    return RedirectResponse(exc.location, status_code=302)


async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    # 请求体 / 参数校验失败统一按 400 返回
    return JSONResponse({"detail": validation_message(exc)}, status_code=400)


async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.opt(exception=exc).error("Unhandled error on {} {}", request.method, request.url.path)
    return JSONResponse({"detail": "Internal server error"}, status_code=500)


def create_app() -> FastAPI:
    """
    Build and return a FastAPI application instance.
    """
    configure_logging()

    app = FastAPI(
        title=settings.APP_TITLE,
        version=settings.APP_VERSION,
        # 权限控制已在各路由中按需配置
    )

    # 每个请求先从 cookie 恢复会话
    app.middleware("http")(resolve_session)

    app.add_exception_handler(LoginRedirect, login_redirect_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)

    app.include_router(api_router)
    app.include_router(web_router)

    logger.info("{} {} started", settings.APP_TITLE, settings.APP_VERSION)
    return app


app = create_app()
