"""聊天会话和消息接口（登录会话认证）"""

import asyncio
from typing import Dict, List

from fastapi import APIRouter, Depends
from fastapi.concurrency import run_in_threadpool

from accelerator.core.auth import require_auth
from accelerator.core.errors import NotFound
from accelerator.schemas import ChatCreate, ChatUpdate, MessageCreate
from accelerator.services.auth_provider import AuthSession
from accelerator.services.chat_store import chat_store
from accelerator.services.file_store import file_store

router = APIRouter(prefix="/chats", tags=["Chats"])


async def _owned_chat(chat_id: str, user_id: str) -> Dict:
    chat = await run_in_threadpool(chat_store.get_chat, chat_id, user_id)
    if not chat:
        raise NotFound("Chat not found")
    return chat


@router.get("", summary="获取会话列表")
async def list_chats(session: AuthSession = Depends(require_auth)) -> List[Dict]:
    return await run_in_threadpool(chat_store.list_chats, session.user.id)


@router.post("", summary="创建会话")
async def create_chat(body: ChatCreate, session: AuthSession = Depends(require_auth)) -> Dict:
    return await run_in_threadpool(
        chat_store.create_chat,
        session.user.id,
        body.title,
        body.model,
        body.system_prompt,
    )


@router.get("/{chat_id}", summary="获取会话")
async def get_chat(chat_id: str, session: AuthSession = Depends(require_auth)) -> Dict:
    return await _owned_chat(chat_id, session.user.id)


@router.patch("/{chat_id}", summary="更新会话")
async def update_chat(chat_id: str, body: ChatUpdate, session: AuthSession = Depends(require_auth)) -> Dict:
    updated = await run_in_threadpool(
        chat_store.update_chat,
        chat_id,
        session.user.id,
        body.model_dump(exclude_unset=True),
    )
    if not updated:
        raise NotFound("Chat not found")
    return updated


@router.delete("/{chat_id}", summary="删除会话")
async def delete_chat(chat_id: str, session: AuthSession = Depends(require_auth)) -> Dict[str, bool]:
    deleted = await run_in_threadpool(chat_store.delete_chat, chat_id, session.user.id)
    if not deleted:
        raise NotFound("Chat not found")
    return {"success": True}


@router.post("/{chat_id}/messages", summary="追加消息")
async def add_message(chat_id: str, body: MessageCreate, session: AuthSession = Depends(require_auth)) -> Dict:
    """
    追加一条消息；首条用户消息同时更新会话标题。附件会记录到 file_uploads。
    """
    user_id = session.user.id
    await _owned_chat(chat_id, user_id)

    message = await run_in_threadpool(
        chat_store.add_message,
        chat_id,
        body.role,
        body.content,
        body.model,
        body.token_count,
    )
    if body.is_first_message and body.role == "user":
        await run_in_threadpool(chat_store.update_chat_title, chat_id, user_id, body.content)
    if body.attachments:
        await run_in_threadpool(
            file_store.record_chat_files,
            user_id,
            chat_id,
            message["id"],
            [attachment.model_dump() for attachment in body.attachments],
        )
    return message


@router.get("/{chat_id}/details", summary="获取会话及消息")
async def get_chat_details(chat_id: str, session: AuthSession = Depends(require_auth)) -> Dict:
    chat, messages = await asyncio.gather(
        run_in_threadpool(chat_store.get_chat, chat_id, session.user.id),
        run_in_threadpool(chat_store.get_messages, chat_id, session.user.id),
    )
    if not chat:
        raise NotFound("Chat not found")
    return {"chat": chat, "messages": messages}


@router.get("/{chat_id}/files", summary="获取会话附件")
async def get_chat_files(chat_id: str, session: AuthSession = Depends(require_auth)) -> Dict:
    await _owned_chat(chat_id, session.user.id)
    files = await run_in_threadpool(file_store.get_chat_files, chat_id)
    return {
        "chat_id": chat_id,
        "files": [
            {
                "id": f["id"],
                "filename": f["original_name"],
                "file_type": f["file_type"],
                "file_size": f["file_size"],
                "mime_type": f["mime_type"],
                "created_at": f["created_at"],
            }
            for f in files
        ],
    }
