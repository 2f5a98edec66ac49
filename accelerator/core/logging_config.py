import sys

from loguru import logger

from accelerator.core.config import settings

_CONFIGURED = False


def configure_logging(level: str | None = None) -> None:
    """
    安装 stderr sink，替换 loguru 默认 handler。可重复调用（reload 时只生效一次）。
    """
    global _CONFIGURED
    if _CONFIGURED:
        return
    logger.remove()
    logger.add(
        sys.stderr,
        level=level or settings.LOG_LEVEL,
        format="<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | <level>{level:<8}</level> | "
        "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - <level>{message}</level>",
    )
    _CONFIGURED = True
