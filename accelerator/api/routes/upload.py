"""通用文件上传到存储桶"""

import uuid
from typing import Any, Dict, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, File, Form, UploadFile
from fastapi.concurrency import run_in_threadpool
from loguru import logger

from accelerator.core.auth import require_auth
from accelerator.core.errors import InvalidInput, UpstreamFailure
from accelerator.services.analytics import track_storage_usage, track_user_activity
from accelerator.services.auth_provider import AuthSession
from accelerator.services.storage import BUCKETS, sanitize_path, storage

router = APIRouter(tags=["Upload"])

ALLOWED_IMAGE_TYPES = ("image/jpeg", "image/png", "image/gif", "image/webp")
MAX_FILE_SIZE = 10 * 1024 * 1024


@router.post("/upload", summary="上传文件")
async def upload_file(
    background_tasks: BackgroundTasks,
    file: Optional[UploadFile] = File(None),
    bucket: str = Form("uploads"),
    path: Optional[str] = Form(None),
    session: AuthSession = Depends(require_auth),
) -> Dict[str, Any]:
    """
    校验顺序：文件存在 -> bucket -> 类型 -> 大小。文件名替换为随机 UUID，保留扩展名。
    """
    user_id = session.user.id
    if file is None or file.size == 0:
        raise InvalidInput("No file provided")
    if bucket not in BUCKETS:
        raise InvalidInput("Invalid bucket")
    if file.content_type not in ALLOWED_IMAGE_TYPES:
        raise InvalidInput("Invalid file type")
    if file.size and file.size > MAX_FILE_SIZE:
        raise InvalidInput("File too large")

    content = await file.read()
    if not content:
        raise InvalidInput("No file provided")
    if len(content) > MAX_FILE_SIZE:
        raise InvalidInput("File too large")

    folder = sanitize_path(path or f"user-{user_id}")
    if not folder:
        raise InvalidInput("Invalid file path")
    filename = file.filename or ""
    extension = filename.rsplit(".", 1)[-1].lower() if "." in filename else "bin"
    object_path = f"{folder}/{uuid.uuid4()}.{extension}"

    try:
        stored_path = await run_in_threadpool(storage.upload, bucket, object_path, content)
    except OSError:
        logger.exception("Upload to bucket {} failed", bucket)
        raise UpstreamFailure("Failed to upload file")

    background_tasks.add_task(track_storage_usage, user_id, bucket, stored_path, len(content), file.content_type)
    background_tasks.add_task(
        track_user_activity, user_id, "file_upload", {"bucket": bucket, "path": stored_path, "size": len(content)}
    )
    return {
        "success": True,
        "file": {
            "id": stored_path,
            "path": stored_path,
            "full_path": f"{bucket}/{stored_path}",
            "public_url": storage.public_url(bucket, stored_path),
        },
        "message": "File uploaded successfully",
    }
