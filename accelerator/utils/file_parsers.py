import io
from typing import Any, Dict, Optional

from pypdf import PdfReader

# 常见图片/音频格式的文件头
_MAGIC_NUMBERS = (
    (b"\x89PNG\r\n\x1a\n", "png"),
    (b"\xff\xd8\xff", "jpeg"),
    (b"GIF87a", "gif"),
    (b"GIF89a", "gif"),
    (b"ID3", "mp3"),
    (b"\xff\xfb", "mp3"),
    (b"\x1aE\xdf\xa3", "webm"),
)


def parse_pdf(content: bytes) -> Dict[str, Any]:
    """解析 PDF 文件：全文、页数、词数和文档元数据"""
    reader = PdfReader(io.BytesIO(content))
    text = ""
    for page in reader.pages:
        text += (page.extract_text() or "") + "\n"

    info = reader.metadata
    creation_date: Optional[str] = None
    if info is not None and info.creation_date is not None:
        creation_date = info.creation_date.isoformat()

    return {
        "text": text.strip(),
        "pages": len(reader.pages),
        "word_count": len(text.split()),
        "metadata": {
            "title": info.title if info is not None else None,
            "author": info.author if info is not None else None,
            "creation_date": creation_date,
        },
    }


def detect_format(content: bytes, mime_type: str) -> str:
    """按文件头识别格式，识别不了时退回 MIME 子类型"""
    for magic, name in _MAGIC_NUMBERS:
        if content.startswith(magic):
            return name
    if content[:4] == b"RIFF" and content[8:12] == b"WEBP":
        return "webp"
    if content[:4] == b"RIFF" and content[8:12] == b"WAVE":
        return "wav"
    if content[4:8] == b"ftyp":
        return "mp4"
    return mime_type.split("/")[-1]
