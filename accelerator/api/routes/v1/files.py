"""/api/v1/files：文件上传、查询、删除和 PDF 文本提取"""

import json
import time
from typing import Any, Dict, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, File, Form, Request, UploadFile
from fastapi.concurrency import run_in_threadpool
from langchain_ollama import ChatOllama
from pydantic import ValidationError

from accelerator.api.deps import allowed_query_params, get_llm, parse_pagination
from accelerator.core.api_auth import ApiPrincipal, ApiRoute, require_api_key
from accelerator.core.errors import InvalidInput, NotFound, UpstreamFailure
from accelerator.schemas import ExtractRequest, FileUploadResponse, ProcessingOptions
from accelerator.services.file_processor import UPLOAD_BUCKET, process_file, validate_file
from accelerator.services.file_store import file_store
from accelerator.services.storage import sanitize_path, storage

router = APIRouter(prefix="/files", tags=["Files"], route_class=ApiRoute)


def _parse_options(raw: Optional[str]) -> ProcessingOptions:
    if not raw:
        return ProcessingOptions()
    try:
        return ProcessingOptions.model_validate(json.loads(raw))
    except (ValueError, ValidationError):
        raise InvalidInput("Options must be a valid JSON object", code="INVALID_OPTIONS")


@router.get(
    "",
    summary="List file uploads",
)
async def list_files(
    request: Request,
    principal: ApiPrincipal = Depends(require_api_key("read")),
    _: None = Depends(
        allowed_query_params(
            "limit", "offset", "page", "file_type", "processing_status", "include_public", "search", "stats"
        )
    ),
    file_type: Optional[str] = None,
    processing_status: Optional[str] = None,
    include_public: Optional[str] = None,
    search: Optional[str] = None,
    stats: Optional[str] = None,
) -> Dict[str, Any]:
    """
    stats=true 时返回本人全部文件的处理统计，忽略分页和过滤参数。
    """
    if stats == "true":
        return await run_in_threadpool(file_store.processing_stats, principal.user_id)

    pagination = parse_pagination(request)
    files, total = await run_in_threadpool(
        file_store.list_uploads,
        principal.user_id,
        file_type,
        processing_status,
        include_public != "false",
        search,
        pagination.limit,
        pagination.offset,
    )
    return {"data": files, "meta": {"total": total, "limit": pagination.limit, "offset": pagination.offset}}


@router.post("/upload", summary="Upload file", response_model=FileUploadResponse)
async def upload_file(
    background_tasks: BackgroundTasks,
    principal: ApiPrincipal = Depends(require_api_key("write")),
    file: Optional[UploadFile] = File(None),
    process: Optional[str] = Form(None),
    options: Optional[str] = Form(None),
    llm: ChatOllama = Depends(get_llm),
):
    """
    保存文件并创建 pending 记录；process=true 时在响应之后后台处理。
    """
    if file is None:
        raise InvalidInput("File is required", code="MISSING_FILE")

    content = await file.read()
    mime_type = file.content_type or "application/octet-stream"
    file_type = validate_file(mime_type, len(content))
    processing_options = _parse_options(options)

    original_name = file.filename or "upload"
    object_path = f"{principal.user_id}/{int(time.time() * 1000)}_{sanitize_path(original_name) or 'upload'}"
    stored_path = await run_in_threadpool(storage.upload, UPLOAD_BUCKET, object_path, content)

    record = await run_in_threadpool(
        file_store.create_upload,
        principal.user_id,
        original_name,
        stored_path,
        mime_type,
        len(content),
        file_type,
    )

    if process == "true":
        background_tasks.add_task(process_file, record["id"], processing_options, llm)

    return record


@router.get("/{file_id}", summary="Get file")
async def get_file(file_id: str, principal: ApiPrincipal = Depends(require_api_key("read"))) -> Dict[str, Any]:
    record = await run_in_threadpool(file_store.get_upload, principal.user_id, file_id)
    if not record:
        raise NotFound("File not found", code="FILE_NOT_FOUND")
    return record


@router.delete("/{file_id}", summary="Delete file")
async def delete_file(file_id: str, principal: ApiPrincipal = Depends(require_api_key("delete"))) -> Dict[str, bool]:
    record = await run_in_threadpool(file_store.delete_upload, principal.user_id, file_id)
    if not record:
        raise NotFound("File not found", code="FILE_NOT_FOUND")
    # 聊天附件是虚拟路径，存储中没有对应文件
    if record["chat_id"] is None:
        await run_in_threadpool(storage.remove, UPLOAD_BUCKET, record["file_path"])
    return {"deleted": True}


@router.post("/{file_id}/extract", summary="Extract text from PDF")
async def extract_text(
    file_id: str,
    body: Optional[ExtractRequest] = None,
    principal: ApiPrincipal = Depends(require_api_key("write")),
    llm: ChatOllama = Depends(get_llm),
) -> Dict[str, Any]:
    body = body or ExtractRequest()
    record = await run_in_threadpool(file_store.get_upload, principal.user_id, file_id, False)
    if not record:
        raise NotFound("File not found", code="FILE_NOT_FOUND")
    if record["file_type"] != "pdf":
        raise InvalidInput("Text extraction is only available for PDF files", code="INVALID_FILE_TYPE")

    options = ProcessingOptions(
        extract_text=True,
        extract_metadata=body.extract_metadata,
        format=body.format or "text",
        analyze_content=body.analyze_content,
        custom_prompt=body.custom_prompt,
        model=body.model,
    )
    result = await process_file(file_id, options, llm)
    if not result.success:
        raise UpstreamFailure(result.error or "Failed to extract text", code="EXTRACTION_FAILED")

    return {"file_id": file_id, "extracted_data": result.data, "processing_status": "completed"}
