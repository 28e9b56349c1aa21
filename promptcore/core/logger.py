"""
日志配置

组装流水线通过 extra 传入结构化字段（stage / family / action / cost_ms 等），
JSONFormatter 会把它们平铺到每一行 JSON 中，便于按阶段、架构族检索。
"""

import datetime
import json
import logging
import logging.handlers
import sys
from pathlib import Path

from promptcore.core.config import settings

# LogRecord 自带的属性，其余属性都来自 extra
_RESERVED_ATTRS = frozenset(
    logging.LogRecord("", 0, "", 0, "", (), None).__dict__
) | {"message", "asctime", "taskName"}


def record_extras(record: logging.LogRecord) -> dict:
    """提取调用方通过 extra 传入、且不为 None 的字段"""
    return {
        key: value
        for key, value in record.__dict__.items()
        if key not in _RESERVED_ATTRS and not key.startswith("_") and value is not None
    }


class JSONFormatter(logging.Formatter):
    """
    将日志输出为 JSON 格式，extra 字段与基础字段同级输出
    """

    def format(self, record):
        log_record = {
            "timestamp": datetime.datetime.fromtimestamp(record.created).isoformat(),
            "level": record.levelname,
            "message": record.getMessage(),
            "logger": record.name,
            "line_no": record.lineno,
        }
        for key, value in record_extras(record).items():
            log_record.setdefault(key, value)

        if record.exc_info:
            log_record["exception"] = self.formatException(record.exc_info)

        # ensure_ascii=False 保证中文正常显示
        return json.dumps(log_record, ensure_ascii=False, default=str)


class ConsoleFormatter(logging.Formatter):
    """控制台可读格式，在消息末尾追加 [stage=... family=...]"""

    def __init__(self):
        super().__init__("%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    def format(self, record):
        line = super().format(record)
        extras = record_extras(record)
        if extras:
            line += " [" + " ".join(f"{k}={v}" for k, v in extras.items()) + "]"
        return line


def setup_logging(
    log_dir: Path | None = None,
    level: int = logging.INFO,
    console: bool = True,
):
    """
    配置根日志记录器

    Args:
        log_dir: 日志目录，默认使用 settings.LOG_DIR
        level: 根日志级别
        console: 是否输出到 stderr（stdout 留给命令行的组装结果）
    """
    log_dir = log_dir or settings.LOG_DIR
    log_dir.mkdir(parents=True, exist_ok=True)

    root = logging.getLogger()
    root.setLevel(level)
    json_formatter = JSONFormatter()

    # 防止多次调用导致重复输出
    for handler in list(root.handlers):
        root.removeHandler(handler)
        handler.close()

    if console:
        console_handler = logging.StreamHandler(sys.stderr)
        console_handler.setLevel(level)
        console_handler.setFormatter(ConsoleFormatter())
        root.addHandler(console_handler)

    # 组装记录：每天午夜切割，保留30天
    info_handler = logging.handlers.TimedRotatingFileHandler(
        filename=log_dir / "application.log",
        when="midnight",
        backupCount=30,
        encoding="utf-8",
    )
    info_handler.setLevel(logging.INFO)
    info_handler.setFormatter(json_formatter)
    root.addHandler(info_handler)

    # 失败记录（TooManyImages / MissingAspectRatio / Render ...）单独一个文件
    error_handler = logging.handlers.TimedRotatingFileHandler(
        filename=log_dir / "error.log",
        when="midnight",
        backupCount=30,
        encoding="utf-8",
    )
    error_handler.setLevel(logging.ERROR)
    error_handler.setFormatter(json_formatter)
    root.addHandler(error_handler)

    # Pillow 解码图片时的 DEBUG 日志过多
    logging.getLogger("PIL").setLevel(logging.WARNING)
