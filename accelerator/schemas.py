from datetime import datetime
from typing import Any, Dict, Generic, List, Literal, Optional, TypeVar

from pydantic import BaseModel, ConfigDict, Field

T = TypeVar("T")


class UnifiedResponse(BaseModel, Generic[T]):
    code: str = "200"
    message: str = "success"
    data: Optional[T] = None


class ListMeta(BaseModel):
    total: int
    limit: int
    offset: int


class ApiListResponse(BaseModel, Generic[T]):
    """/api/v1 列表接口的统一格式"""

    data: List[T]
    meta: ListMeta


# --- Chats ---


class ChatCreate(BaseModel):
    title: Optional[str] = None
    model: Optional[str] = None
    system_prompt: Optional[str] = None


class ChatUpdate(BaseModel):
    title: Optional[str] = None
    model: Optional[str] = None
    system_prompt: Optional[str] = None


class ChatAttachment(BaseModel):
    filename: str
    file_type: Literal["pdf", "image", "audio"]
    file_size: int = Field(ge=0)
    mime_type: str


class MessageCreate(BaseModel):
    role: Literal["user", "assistant", "system"]
    content: str
    model: Optional[str] = None
    token_count: Optional[int] = None
    is_first_message: bool = False
    attachments: List[ChatAttachment] = Field(default_factory=list)


class ChatCompletionRequest(BaseModel):
    # messages 的格式在路由中逐条校验，以返回明确的错误信息
    messages: Optional[List[Dict[str, Any]]] = None
    model: Optional[str] = None
    stream: bool = False
    temperature: float = 0.7
    max_tokens: Optional[int] = None
    chat_id: Optional[str] = None
    system_prompt: Optional[str] = None


# --- Files ---


class ProcessingOptions(BaseModel):
    extract_text: bool = True
    extract_metadata: bool = True
    analyze_content: bool = False
    custom_prompt: Optional[str] = None
    model: Optional[str] = None
    language: Optional[str] = None
    format: Optional[str] = None


class ExtractRequest(BaseModel):
    extract_metadata: bool = True
    format: Optional[str] = None
    analyze_content: bool = False
    custom_prompt: Optional[str] = None
    model: Optional[str] = None


class FileUploadResponse(BaseModel):
    id: str
    original_name: str
    file_type: str
    file_size: int
    processing_status: str
    created_at: str


# --- Structured outputs ---


class StructuredOutputCreate(BaseModel):
    name: str = Field(min_length=1)
    description: Optional[str] = None
    json_schema: Dict[str, Any]
    example_output: Optional[Any] = None
    is_public: bool = False


class StructuredOutputUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1)
    description: Optional[str] = None
    json_schema: Optional[Dict[str, Any]] = None
    example_output: Optional[Any] = None
    is_public: Optional[bool] = None


class RestoreRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    version: Optional[int] = None
    change_summary: Optional[str] = Field(default=None, alias="changeSummary")


# --- API keys ---


class APIKeyCreateRequest(BaseModel):
    name: str = ""
    scopes: Optional[List[str]] = None
    rate_limit: Optional[int] = None
    expires_at: Optional[datetime] = None
    is_test: bool = False


class APIKeyUpdateRequest(BaseModel):
    name: Optional[str] = None
    scopes: Optional[List[str]] = None
    rate_limit: Optional[int] = None
    expires_at: Optional[datetime] = None
    is_active: Optional[bool] = None


class APIKeyCreateResponse(BaseModel):
    id: str
    name: str
    key: str
    scopes: List[str]
    rate_limit: int
    expires_at: Optional[str]
    created_at: str
