"""统一的错误类型：每种错误对应一个 HTTP 状态码和机器可读的 code。"""

from typing import Any, Optional

from fastapi import HTTPException, status


class ApiError(HTTPException):
    """
    HTTPException 子类，额外携带 code。

    /api/v1 之外的路由按 FastAPI 默认格式渲染（{"detail": ...}），
    /api/v1 路由由 ApiRoute 渲染为 {"message": ..., "code": ...}。
    """

    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR
    default_code: str = "INTERNAL_ERROR"
    default_message: str = "Internal server error"

    def __init__(
        self,
        message: Optional[str] = None,
        code: Optional[str] = None,
        headers: Optional[dict[str, str]] = None,
        details: Any = None,
    ):
        super().__init__(
            status_code=type(self).status_code,
            detail=message or self.default_message,
            headers=headers,
        )
        self.code = code or self.default_code
        self.details = details

    @property
    def message(self) -> str:
        return str(self.detail)

    def to_body(self) -> dict[str, Any]:
        body: dict[str, Any] = {"message": self.message, "code": self.code}
        if self.details is not None:
            body["details"] = self.details
        return body


class InvalidInput(ApiError):
    status_code = status.HTTP_400_BAD_REQUEST
    default_code = "INVALID_INPUT"
    default_message = "Invalid request"


class Unauthenticated(ApiError):
    status_code = status.HTTP_401_UNAUTHORIZED
    default_code = "UNAUTHENTICATED"
    default_message = "Authentication required"


class Forbidden(ApiError):
    status_code = status.HTTP_403_FORBIDDEN
    default_code = "FORBIDDEN"
    default_message = "Forbidden"


class NotFound(ApiError):
    status_code = status.HTTP_404_NOT_FOUND
    default_code = "NOT_FOUND"
    default_message = "Resource not found"


class RateLimited(ApiError):
    status_code = status.HTTP_429_TOO_MANY_REQUESTS
    default_code = "RATE_LIMITED"
    default_message = "Rate limit exceeded"


class UpstreamFailure(ApiError):
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    default_code = "INTERNAL_ERROR"
    default_message = "Internal server error"


# HTTPException 状态码到 code 的兜底映射（用于 FastAPI 自己抛出的异常）
STATUS_CODES: dict[int, str] = {
    400: InvalidInput.default_code,
    401: Unauthenticated.default_code,
    403: Forbidden.default_code,
    404: NotFound.default_code,
    405: "METHOD_NOT_ALLOWED",
    413: "PAYLOAD_TOO_LARGE",
    422: InvalidInput.default_code,
    429: RateLimited.default_code,
}
