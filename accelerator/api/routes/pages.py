"""页面数据加载：返回页面渲染所需的数据，未登录时重定向到登录页"""

import asyncio
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends
from fastapi.concurrency import run_in_threadpool
from loguru import logger

from accelerator.core.auth import require_page_auth
from accelerator.core.config import settings
from accelerator.services.analytics import get_api_usage_stats
from accelerator.services.auth_provider import AuthSession, auth_provider
from accelerator.services.file_store import file_store
from accelerator.services.key_store import key_store
from accelerator.services.structured_outputs import has_basic_shape, structured_output_store

router = APIRouter(tags=["Pages"])

EMPTY_DEVELOPER_STATS = {
    "api_keys": {"total": 0, "active": 0},
    "usage": {"requests_7d": 0, "tokens_7d": 0},
    "schemas": {"total": 0, "recent": []},
    "files": {"total_files": 0, "total_size": 0, "by_type": {}, "by_status": {}, "processing_queue_size": 0},
}


@router.get("/dashboard", summary="Dashboard")
async def dashboard(session: AuthSession = Depends(require_page_auth)) -> Dict[str, Any]:
    profile = await run_in_threadpool(auth_provider.get_profile, session.user.id)
    return {"user": session.user.to_dict(), "profile": profile}


@router.get("/chat", summary="Chat page")
async def chat_page(session: AuthSession = Depends(require_page_auth)) -> Dict[str, Any]:
    return {"user": session.user.to_dict(), "models": settings.AVAILABLE_MODELS}


async def _developer_stats(user_id: str) -> Dict[str, Any]:
    key_names = await run_in_threadpool(key_store.key_names, user_id)
    keys, usage, (schemas, schema_total), file_stats = await asyncio.gather(
        run_in_threadpool(key_store.list_keys, user_id),
        run_in_threadpool(get_api_usage_stats, user_id, 7, key_names),
        run_in_threadpool(structured_output_store.list, user_id, False, None, 5, 0),
        run_in_threadpool(file_store.processing_stats, user_id),
    )
    return {
        "api_keys": {"total": len(key_names), "active": len(keys)},
        "usage": {"requests_7d": usage["total_requests"], "tokens_7d": usage["total_tokens"]},
        "schemas": {"total": schema_total, "recent": schemas[:3]},
        "files": file_stats,
    }


@router.get("/developer", summary="Developer console")
async def developer(session: AuthSession = Depends(require_page_auth)) -> Dict[str, Any]:
    """统计读取失败时仍然渲染页面，数据全部置零。"""
    try:
        stats = await _developer_stats(session.user.id)
    except Exception:
        logger.exception("Error loading developer console stats")
        stats = EMPTY_DEVELOPER_STATS
    return {"user": session.user.to_dict(), "stats": stats}


@router.get("/developer/schemas", summary="Developer schemas")
async def developer_schemas(
    search: Optional[str] = None,
    session: AuthSession = Depends(require_page_auth),
) -> Dict[str, Any]:
    search = search or None
    schemas, _ = await run_in_threadpool(structured_output_store.list, session.user.id, False, search, 50, 0)
    # 这里只做粗略检查：有 type 和 properties 即视为有效
    return {
        "schemas": [
            {**schema, "schema": schema["json_schema"], "is_valid": has_basic_shape(schema["json_schema"])}
            for schema in schemas
        ],
        "filters": {"search": search},
    }
