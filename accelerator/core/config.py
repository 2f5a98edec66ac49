import os
from functools import lru_cache
from typing import Optional

from dotenv import load_dotenv

# 加载 .env 文件
load_dotenv()


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


class Settings:
    # App
    APP_TITLE: str = "Chat Accelerator"
    APP_VERSION: str = "0.1.0"
    PUBLIC_APP_URL: str = os.getenv("PUBLIC_APP_URL", "http://localhost:8000").rstrip("/")

    # Storage
    DATA_DIR: str = os.getenv("DATA_DIR", "./data")
    STORAGE_DIR: str = os.getenv("STORAGE_DIR", os.path.join(DATA_DIR, "storage"))

    # Auth provider
    AUTH_PROVIDER_URL: str = os.getenv("AUTH_PROVIDER_URL", f"{PUBLIC_APP_URL}/auth/v1").rstrip("/")
    AUTH_REQUIRE_EMAIL_CONFIRMATION: bool = _env_flag("AUTH_REQUIRE_EMAIL_CONFIRMATION", "false")
    ACCESS_TOKEN_TTL_SECONDS: int = int(os.getenv("ACCESS_TOKEN_TTL_SECONDS", "3600"))
    REFRESH_TOKEN_TTL_SECONDS: int = int(os.getenv("REFRESH_TOKEN_TTL_SECONDS", str(60 * 60 * 24 * 30)))
    AUTH_CODE_TTL_SECONDS: int = int(os.getenv("AUTH_CODE_TTL_SECONDS", "600"))
    # 并发请求携带同一个旧 refresh token 时，在该窗口内返回轮换后的会话
    REFRESH_REUSE_SECONDS: int = int(os.getenv("REFRESH_REUSE_SECONDS", "10"))

    # Cookies
    ACCESS_COOKIE_NAME: str = "sb-access-token"
    REFRESH_COOKIE_NAME: str = "sb-refresh-token"
    ACCESS_COOKIE_MAX_AGE: int = 60 * 60 * 24 * 7
    REFRESH_COOKIE_MAX_AGE: int = 60 * 60 * 24 * 30
    # 本地 http 调试时可关闭
    COOKIE_SECURE: bool = _env_flag("COOKIE_SECURE", "true")

    # Model
    MODEL_NAME: str = os.getenv("MODEL_NAME", "qwen3-coder:480b-cloud")
    DEFAULT_CHAT_MODEL: str = os.getenv("DEFAULT_CHAT_MODEL", MODEL_NAME)
    AVAILABLE_MODELS: list[str] = [
        m.strip() for m in os.getenv("AVAILABLE_MODELS", MODEL_NAME).split(",") if m.strip()
    ]
    OLLAMA_BASE_URL: Optional[str] = os.getenv("OLLAMA_BASE_URL", None)
    MAX_CONTEXT_MESSAGES: int = int(os.getenv("MAX_CONTEXT_MESSAGES", "20"))

    # Logging
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO").upper()


@lru_cache
def get_settings() -> Settings:
    return Settings()


settings = get_settings()
