"""本地文件存储，按 bucket 分目录。"""

import re
from pathlib import Path, PurePosixPath

from accelerator.core.config import settings
from accelerator.core.errors import InvalidInput

BUCKETS = ("avatars", "documents", "images", "uploads")


def sanitize_path(path: str) -> str:
    """
    规范化对象路径：去掉 . / .. 段和多余的斜杠，只保留安全字符。
    """
    parts = []
    for part in PurePosixPath(path.replace("\\", "/")).parts:
        if part in ("/", ".", ".."):
            continue
        cleaned = re.sub(r"[^A-Za-z0-9._-]", "_", part)
        if cleaned.strip("."):
            parts.append(cleaned)
    return "/".join(parts)


class LocalStorage:
    def __init__(self, root: str):
        self.root = Path(root)
        for bucket in BUCKETS:
            (self.root / bucket).mkdir(parents=True, exist_ok=True)

    def _resolve(self, bucket: str, path: str) -> Path:
        if bucket not in BUCKETS:
            raise InvalidInput("Invalid bucket")
        clean = sanitize_path(path)
        if not clean:
            raise InvalidInput("Invalid file path")
        return self.root / bucket / clean

    def upload(self, bucket: str, path: str, content: bytes) -> str:
        """写入文件，返回 bucket 内的规范化路径。"""
        target = self._resolve(bucket, path)
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(content)
        return target.relative_to(self.root / bucket).as_posix()

    def download(self, bucket: str, path: str) -> bytes:
        return self._resolve(bucket, path).read_bytes()

    def remove(self, bucket: str, path: str) -> bool:
        target = self._resolve(bucket, path)
        if not target.exists():
            return False
        target.unlink()
        return True

    def public_url(self, bucket: str, path: str) -> str:
        return f"{settings.PUBLIC_APP_URL}/storage/{bucket}/{sanitize_path(path)}"


storage = LocalStorage(settings.STORAGE_DIR)
