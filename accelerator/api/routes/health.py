"""健康检查接口：应用版本 + 各 SQLite 存储的连通性"""

import asyncio
from typing import Any, Dict

from fastapi import APIRouter
from fastapi.concurrency import run_in_threadpool
from loguru import logger

from accelerator.core.config import settings
from accelerator.schemas import UnifiedResponse
from accelerator.services.analytics import analytics_store
from accelerator.services.auth_provider import auth_provider
from accelerator.services.chat_store import chat_store
from accelerator.services.file_store import file_store
from accelerator.services.key_store import key_store
from accelerator.services.structured_outputs import structured_output_store

router = APIRouter(tags=["Health"])

STORES = {
    "auth": auth_provider,
    "chats": chat_store,
    "files": file_store,
    "api_keys": key_store,
    "structured_outputs": structured_output_store,
    "analytics": analytics_store,
}


@router.get("/health", summary="Health check", response_model=UnifiedResponse[Dict[str, Any]])
async def health():
    """
    不需要认证；任一存储不可用时 status 为 degraded，HTTP 状态仍为 200。
    """
    results = await asyncio.gather(*(run_in_threadpool(store.ping) for store in STORES.values()))
    stores = dict(zip(STORES, results))
    failed = [name for name, ok in stores.items() if not ok]
    if failed:
        logger.warning("Health check: stores unavailable: {}", ", ".join(failed))

    return UnifiedResponse(
        data={
            "status": "degraded" if failed else "ok",
            "version": settings.APP_VERSION,
            "stores": stores,
        }
    )
