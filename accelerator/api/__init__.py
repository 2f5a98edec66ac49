"""API router package."""

from fastapi import APIRouter

from accelerator.api.routes import analytics, auth, chat, chats, health, pages, upload
from accelerator.api.routes.v1 import files, keys, structured_outputs

# 创建主路由器（不添加全局认证，各路由自行控制）
router = APIRouter(prefix="/api")

# Health 接口不需要认证
router.include_router(health.router)

# 以下接口使用登录会话认证
router.include_router(chats.router)
router.include_router(chat.router)
router.include_router(analytics.router)
router.include_router(upload.router)

# /api/v1 使用 API Key 认证（部分接口也接受登录会话）
v1_router = APIRouter(prefix="/v1")
v1_router.include_router(files.router)
v1_router.include_router(structured_outputs.router)
v1_router.include_router(keys.router)
router.include_router(v1_router)

# 页面数据和认证流程不在 /api 前缀下
web_router = APIRouter()
web_router.include_router(pages.router)
web_router.include_router(auth.router)

__all__ = ["router", "web_router"]
