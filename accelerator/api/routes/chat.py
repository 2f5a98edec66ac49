"""对话补全接口：保存用户消息，调用模型，保存回复"""

import json
import time
import uuid
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple

from fastapi import APIRouter, BackgroundTasks, Depends, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import StreamingResponse
from langchain_ollama import ChatOllama
from loguru import logger

from accelerator.api.deps import get_llm
from accelerator.core.auth import require_auth
from accelerator.core.config import settings
from accelerator.core.errors import InvalidInput, NotFound, UpstreamFailure
from accelerator.schemas import ChatCompletionRequest
from accelerator.services.analytics import track_api_usage, track_user_activity
from accelerator.services.auth_provider import AuthSession
from accelerator.services.chat_store import chat_store

router = APIRouter(tags=["Chat"])

ROLE_MAP = {"system": "system", "user": "human", "assistant": "ai"}


def validate_messages(messages: Optional[List[Dict[str, Any]]]) -> List[Dict[str, str]]:
    if messages is None or not isinstance(messages, list):
        raise InvalidInput("Messages array is required")
    if not messages:
        raise InvalidInput("At least one message is required")
    for message in messages:
        if not isinstance(message, dict) or not message.get("role") or not message.get("content"):
            raise InvalidInput("Each message must have role and content")
        if message["role"] not in ROLE_MAP:
            raise InvalidInput("Invalid message role")
    return messages


def build_prompt(messages: List[Dict[str, str]], system_prompt: Optional[str]) -> List[Tuple[str, str]]:
    """保留 system 消息，其余只取最近 MAX_CONTEXT_MESSAGES 条。"""
    system = [m for m in messages if m["role"] == "system"]
    history = [m for m in messages if m["role"] != "system"][-settings.MAX_CONTEXT_MESSAGES:]
    prompt = [("system", system_prompt)] if system_prompt and not system else []
    prompt.extend((ROLE_MAP[m["role"]], str(m["content"])) for m in system + history)
    return prompt


def _chunk_text(chunk: Any) -> str:
    content = getattr(chunk, "content", None)
    if content is None and hasattr(chunk, "model_dump"):
        content = chunk.model_dump().get("content", "")
    return content if isinstance(content, str) else str(content or "")


@router.post("/chat", summary="Chat completion")
async def chat_completion(
    body: ChatCompletionRequest,
    request: Request,
    background_tasks: BackgroundTasks,
    llm: ChatOllama = Depends(get_llm),
    session: AuthSession = Depends(require_auth),
):
    """
    没有 chat_id 时新建会话，并用首条用户消息生成标题。

    stream=true 时以 SSE 返回，最后一帧带 chat_id；否则返回 JSON。
    """
    started = time.perf_counter()
    user_id = session.user.id
    messages = validate_messages(body.messages)
    model = body.model or settings.DEFAULT_CHAT_MODEL

    # 1. Handle chat
    chat_id = body.chat_id
    is_first_message = False
    if not chat_id:
        chat = await run_in_threadpool(chat_store.create_chat, user_id, "New Chat", model, body.system_prompt)
        chat_id = chat["id"]
        is_first_message = True
    elif not await run_in_threadpool(chat_store.get_chat, chat_id, user_id):
        raise NotFound("Chat not found")

    # 2. Save last user message
    last_message = messages[-1]
    if last_message["role"] == "user":
        await run_in_threadpool(chat_store.add_message, chat_id, "user", last_message["content"], model)
        if is_first_message:
            await run_in_threadpool(chat_store.update_chat_title, chat_id, user_id, last_message["content"])

    prompt = build_prompt(messages, body.system_prompt)
    endpoint = request.url.path

    if body.stream:

        async def stream_response() -> AsyncIterator[str]:
            full_response = ""
            try:
                async for chunk in llm.astream(prompt):
                    content = _chunk_text(chunk)
                    full_response += content
                    payload = {"choices": [{"index": 0, "delta": {"content": content}}], "model": model}
                    yield f"data: {json.dumps(payload, ensure_ascii=False)}\n\n"

                # Save assistant message after streaming is done
                if full_response.strip():
                    await run_in_threadpool(chat_store.add_message, chat_id, "assistant", full_response.strip(), model)
                yield f"data: {json.dumps({'chat_id': chat_id, 'done': True})}\n\n"
                yield "data: [DONE]\n\n"
            except Exception as e:
                logger.exception("Chat stream failed")
                error_payload = {"error": str(e), "content": f"\n[System Error]: {str(e)}"}
                yield f"data: {json.dumps(error_payload, ensure_ascii=False)}\n\n"

        background_tasks.add_task(
            track_user_activity, user_id, "chat_completion", {"chat_id": chat_id, "model": model, "stream": True}
        )
        return StreamingResponse(
            stream_response(),
            media_type="text/event-stream",
            headers={"Cache-Control": "no-cache", "Connection": "keep-alive"},
            background=background_tasks,
        )

    try:
        response = await llm.ainvoke(prompt)
    except Exception as e:
        logger.exception("Chat completion failed")
        await run_in_threadpool(
            track_api_usage,
            user_id,
            endpoint,
            request.method,
            model=model,
            response_time=int((time.perf_counter() - started) * 1000),
            status_code=500,
            error_message=str(e),
        )
        raise UpstreamFailure("AI service temporarily unavailable")

    content = _chunk_text(response)
    if content:
        await run_in_threadpool(chat_store.add_message, chat_id, "assistant", content, model)

    usage = getattr(response, "usage_metadata", None) or {}
    total_tokens = usage.get("total_tokens")
    background_tasks.add_task(
        track_api_usage,
        user_id,
        endpoint,
        request.method,
        model=model,
        tokens_used=total_tokens,
        response_time=int((time.perf_counter() - started) * 1000),
        status_code=200,
    )
    background_tasks.add_task(
        track_user_activity, user_id, "chat_completion", {"chat_id": chat_id, "model": model, "tokens": total_tokens}
    )

    return {
        "id": f"chatcmpl-{uuid.uuid4().hex}",
        "object": "chat.completion",
        "created": int(time.time()),
        "model": model,
        "choices": [
            {"index": 0, "message": {"role": "assistant", "content": content}, "finish_reason": "stop"}
        ],
        "usage": {
            "prompt_tokens": usage.get("input_tokens"),
            "completion_tokens": usage.get("output_tokens"),
            "total_tokens": total_tokens,
        },
        "chat_id": chat_id,
    }
