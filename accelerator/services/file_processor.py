"""
上传文件的校验和处理：pending -> processing -> completed / failed。
"""

from dataclasses import dataclass
from typing import Any, Dict, Optional

from fastapi.concurrency import run_in_threadpool
from langchain_ollama import ChatOllama
from loguru import logger

from accelerator.core.errors import InvalidInput
from accelerator.schemas import ProcessingOptions
from accelerator.services.file_store import FileType, file_store
from accelerator.services.sqlite_store import utc_now
from accelerator.services.storage import storage
from accelerator.utils.file_parsers import detect_format, parse_pdf

MB = 1024 * 1024

SUPPORTED_FILE_TYPES: Dict[str, Dict[str, Any]] = {
    "pdf": {
        "mime_types": ["application/pdf"],
        "max_size": 50 * MB,
    },
    "image": {
        "mime_types": ["image/jpeg", "image/png", "image/webp", "image/gif"],
        "max_size": 10 * MB,
    },
    "audio": {
        "mime_types": ["audio/mpeg", "audio/wav", "audio/mp4", "audio/webm"],
        "max_size": 25 * MB,
    },
}

UPLOAD_BUCKET = "uploads"


@dataclass
class ProcessingResult:
    success: bool
    data: Optional[Dict[str, Any]] = None
    error: Optional[str] = None


def validate_file(mime_type: str, size: int) -> FileType:
    """按 MIME 类型确定 file_type 并检查大小上限。"""
    for file_type, config in SUPPORTED_FILE_TYPES.items():
        if mime_type in config["mime_types"]:
            if size > config["max_size"]:
                raise InvalidInput(
                    f"File too large: {size / MB:.1f}MB. "
                    f"Maximum size for {file_type}: {config['max_size'] // MB}MB",
                    code="INVALID_FILE",
                )
            return file_type  # type: ignore[return-value]

    supported = ", ".join(m for config in SUPPORTED_FILE_TYPES.values() for m in config["mime_types"])
    raise InvalidInput(f"Unsupported file type: {mime_type}. Supported types: {supported}", code="INVALID_FILE")


async def _analyze(llm: ChatOllama, system_prompt: str, prompt: str) -> Optional[str]:
    """内容分析失败不影响处理结果。"""
    try:
        response = await llm.ainvoke([("system", system_prompt), ("human", prompt)])
        return str(response.content)
    except Exception as e:
        logger.warning("Content analysis failed: {}", e)
        return None


async def _process_pdf(content: bytes, options: ProcessingOptions, llm: Optional[ChatOllama]) -> Dict[str, Any]:
    parsed = await run_in_threadpool(parse_pdf, content)
    if not options.extract_metadata:
        parsed.pop("metadata", None)

    analysis = None
    if options.analyze_content and options.custom_prompt and llm is not None:
        analysis = await _analyze(
            llm,
            "You are a document analysis expert. Analyze the provided text and respond according to the user's request.",
            f"{options.custom_prompt}\n\nDocument text:\n{parsed['text']}",
        )
    return {
        **parsed,
        "analysis": analysis,
        "format": options.format or "text",
        "processing_options": options.model_dump(exclude_none=True),
    }


async def _process_image(
    content: bytes, mime_type: str, options: ProcessingOptions, llm: Optional[ChatOllama]
) -> Dict[str, Any]:
    description = "Image processed successfully"
    if options.analyze_content and llm is not None:
        prompt = options.custom_prompt or "Describe what you see in this image in detail."
        description = await _analyze(
            llm, "You are an image analysis assistant.", prompt
        ) or "Image uploaded but analysis failed"
    return {
        "description": description,
        "size": len(content),
        "image_format": detect_format(content, mime_type),
        "format": options.format or "description",
        "processing_options": options.model_dump(exclude_none=True),
        "metadata": {"analyzed_at": utc_now(), "model_used": options.model},
    }


async def _process_audio(content: bytes, mime_type: str, options: ProcessingOptions) -> Dict[str, Any]:
    # 不做转写，只记录大小和格式
    return {
        "size": len(content),
        "audio_format": detect_format(content, mime_type),
        "language": options.language,
        "format": options.format or "transcript",
        "processing_options": options.model_dump(exclude_none=True),
    }


async def process_file(
    file_id: str,
    options: Optional[ProcessingOptions] = None,
    llm: Optional[ChatOllama] = None,
) -> ProcessingResult:
    """
    处理已上传的文件并把结果写回 file_uploads。

    任何处理异常都会把状态标记为 failed 并返回 success=False，不向外抛出。
    """
    options = options or ProcessingOptions()
    record = await run_in_threadpool(file_store.get_by_id, file_id)
    if record is None:
        return ProcessingResult(success=False, error="File not found")

    await run_in_threadpool(file_store.update_processing, file_id, "processing")
    try:
        content = await run_in_threadpool(storage.download, UPLOAD_BUCKET, record["file_path"])
        if record["file_type"] == "pdf":
            data = await _process_pdf(content, options, llm)
        elif record["file_type"] == "image":
            data = await _process_image(content, record["mime_type"], options, llm)
        elif record["file_type"] == "audio":
            data = await _process_audio(content, record["mime_type"], options)
        else:
            raise ValueError(f"Unsupported file type: {record['file_type']}")
    except Exception as e:
        logger.warning("Processing file {} failed: {}", file_id, e)
        await run_in_threadpool(file_store.update_processing, file_id, "failed", None, str(e))
        return ProcessingResult(success=False, error=str(e))

    await run_in_threadpool(file_store.update_processing, file_id, "completed", data)
    return ProcessingResult(success=True, data=data)
