"""共享的依赖项和工具函数"""

from dataclasses import dataclass
from functools import lru_cache
from typing import Callable, Iterable

from fastapi import Request
from langchain_ollama import ChatOllama

from accelerator.core.config import settings
from accelerator.core.errors import InvalidInput

DEFAULT_LIMIT = 10
MAX_LIMIT = 100


@lru_cache
def get_llm() -> ChatOllama:
    """获取 LLM 实例（单例模式）"""
    return ChatOllama(
        model=settings.MODEL_NAME,
        temperature=0,
        base_url=settings.OLLAMA_BASE_URL,
    )


@dataclass(frozen=True)
class Pagination:
    limit: int
    offset: int


def _parse_int(value: str, message: str) -> int:
    try:
        return int(value)
    except ValueError:
        raise InvalidInput(message)


def parse_pagination(request: Request) -> Pagination:
    """
    解析 limit / offset / page。limit 1~100（默认 10），offset >= 0；
    没有 offset 时按 page（从 1 开始）换算。
    """
    params = request.query_params
    limit = DEFAULT_LIMIT
    offset = 0

    if params.get("limit"):
        limit = _parse_int(params["limit"], "Limit must be a number between 1 and 100")
        if not 1 <= limit <= MAX_LIMIT:
            raise InvalidInput("Limit must be a number between 1 and 100")

    if params.get("offset"):
        offset = _parse_int(params["offset"], "Offset must be a non-negative number")
        if offset < 0:
            raise InvalidInput("Offset must be a non-negative number")
    elif params.get("page"):
        page = _parse_int(params["page"], "Page must be a positive number starting from 1")
        if page < 1:
            raise InvalidInput("Page must be a positive number starting from 1")
        offset = (page - 1) * limit

    return Pagination(limit=limit, offset=offset)


def allowed_query_params(*allowed: str) -> Callable[[Request], None]:
    """生成依赖：出现未声明的查询参数时返回 400。"""
    allowed_set = set(allowed)

    def dependency(request: Request) -> None:
        validate_query_params(request.query_params.keys(), allowed_set)

    return dependency


def validate_query_params(keys: Iterable[str], allowed: set[str]) -> None:
    invalid = [key for key in keys if key not in allowed]
    if invalid:
        raise InvalidInput(f"Invalid query parameters: {', '.join(invalid)}", code="INVALID_QUERY_PARAMS")
