"""CLI entry point: assemble a chat prompt from a JSON request file."""

import argparse
import asyncio
import base64
import json
import logging
import sys
from pathlib import Path

from promptcore.core.config import settings
from promptcore.core.exceptions import AppError
from promptcore.core.logger import setup_logging
from promptcore.models.schemas.chat_schema import ChatPromptRequest
from promptcore.services.llm_core.assembler import ChatPrompt, PromptAssembler
from promptcore.services.llm_core.tokens import TiktokenTokenizer

logger = logging.getLogger("promptcore.main")


def load_request(path: Path) -> ChatPromptRequest:
    """
    读取 JSON 请求

    messages[].images 为 base64 字符串；format 可以是字符串或任意 JSON 值，
    非字符串时重新序列化为原始 JSON 字节。
    """
    data = json.loads(path.read_text(encoding="utf-8"))

    for msg in data.get("messages", []):
        msg["images"] = [base64.b64decode(img) for img in msg.get("images", [])]

    fmt = data.get("format")
    if fmt is not None:
        data["format"] = fmt.encode() if isinstance(fmt, str) else json.dumps(fmt).encode()

    return ChatPromptRequest.model_validate(data)


def render_result(result: ChatPrompt) -> dict:
    return {
        "prompt": result.prompt,
        "images": [
            {"id": img.id, "aspect_ratio_id": img.aspect_ratio_id, "size": len(img.data)}
            for img in result.images
        ],
        "format": json.loads(result.format) if result.format else None,
        "messages_used": result.messages_used,
        "truncated": result.truncated,
    }


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        prog="promptcore-assemble",
        description="Assemble the next-turn prompt for a chat request.",
    )
    parser.add_argument(
        "-V", "--version",
        action="version",
        version=f"%(prog)s {settings.VERSION}",
    )
    parser.add_argument("request", type=Path, help="Path to a JSON chat request.")
    parser.add_argument(
        "--encoding",
        default=None,
        help=f"tiktoken encoding or model name (default: {settings.TOKENIZER_ENCODING}).",
    )
    parser.add_argument(
        "--log-dir",
        type=Path,
        default=None,
        help=f"Directory for JSON log files (default: {settings.LOG_DIR}).",
    )
    parser.add_argument(
        "--log-level",
        default="WARNING",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Console log level.",
    )
    args = parser.parse_args(argv)

    setup_logging(log_dir=args.log_dir, level=getattr(logging, args.log_level))

    try:
        request = load_request(args.request)
        assembler = PromptAssembler(tokenizer=TiktokenTokenizer(args.encoding))
        result = asyncio.run(assembler.assemble(request))
    except AppError as exc:
        logger.error(
            "组装失败: %s",
            exc.message,
            extra={"stage": exc.details.get("stage"), "error_code": exc.status_code},
        )
        print(json.dumps(exc.to_dict(), ensure_ascii=False), file=sys.stderr)
        return 1

    print(json.dumps(render_result(result), ensure_ascii=False, indent=2))
    return 0


if __name__ == "__main__":
    sys.exit(main())
