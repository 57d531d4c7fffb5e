"""
网关日志

Loguru 输出到控制台、按天轮转的 gateway.log 和 error.log。
每条日志带上当前连接标识 (``conn``)，由 WebSocket 端点通过
``connection_context`` 绑定；连接之外的日志显示为 ``-``。
标准库 logging (uvicorn / websockets / openai) 统一转发到 Loguru。
"""
import logging
import sys
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Union

from loguru import logger

NO_CONNECTION = "-"
INTERCEPTED_LOGGERS = ("uvicorn", "uvicorn.access", "uvicorn.error", "fastapi", "websockets", "openai", "httpx")

CONSOLE_FORMAT = (
    "<green>{time:HH:mm:ss}</green> | <level>{level: <8}</level> | "
    "<magenta>{extra[conn]}</magenta> | <cyan>{name}</cyan>:<cyan>{line}</cyan> - <level>{message}</level>"
)
FILE_FORMAT = "{time:YYYY-MM-DD HH:mm:ss.SSS} | {level: <8} | {extra[conn]} | {name}:{line} | {message}"


class InterceptHandler(logging.Handler):
    """把标准库 logging 记录转交给 Loguru"""

    def emit(self, record: logging.LogRecord) -> None:
        try:
            level: Union[str, int] = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno

        # 跳过 logging 内部帧，保留真实调用位置
        frame, depth = logging.currentframe(), 2
        while frame is not None and frame.f_code.co_filename == logging.__file__:
            frame = frame.f_back
            depth += 1

        logger.opt(depth=depth, exception=record.exc_info).log(level, record.getMessage())


@contextmanager
def connection_context(connection_id: str) -> Iterator[None]:
    """在当前任务及其派生任务的日志中标记连接"""
    with logger.contextualize(conn=connection_id):
        yield


def setup_logger(log_dir: Union[str, Path] = "logs", level: str = "INFO"):
    """
    配置网关日志
    :param log_dir: 日志目录，不存在时创建
    :param level: 控制台级别；文件始终记录 DEBUG
    """
    log_path = Path(log_dir)
    log_path.mkdir(parents=True, exist_ok=True)

    logger.remove()
    logger.configure(extra={"conn": NO_CONNECTION})

    logger.add(sys.stderr, level=level, format=CONSOLE_FORMAT)
    logger.add(
        log_path / "gateway.log",
        level="DEBUG",
        format=FILE_FORMAT,
        rotation="00:00",
        retention="10 days",
        compression="zip",
        enqueue=True,
    )
    logger.add(
        log_path / "error.log",
        level="ERROR",
        format=FILE_FORMAT,
        rotation="10 MB",
        retention="30 days",
        backtrace=True,
        diagnose=False,
    )

    logging.basicConfig(handlers=[InterceptHandler()], level=0, force=True)
    for name in INTERCEPTED_LOGGERS:
        std_logger = logging.getLogger(name)
        std_logger.handlers = [InterceptHandler()]
        std_logger.propagate = False

    logger.info(f"网关日志已初始化: {log_path.resolve()} (控制台级别 {level})")
    return logger
