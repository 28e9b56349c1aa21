"""
LLM Core: 对话 Prompt 组装核心模块

对外暴露:
- PromptAssembler / ChatPrompt: Prompt 组装与结果
- select_window / TruncationWindow: 上下文窗口截断
- tag_images / ModelFamily / ImageStrategy: 图片开销与图片标签
- chat_format / tools_format: 工具调用输出格式
- ChatTemplate / default_template: Jinja2 对话模板与按架构族选择的内置模板
- TiktokenTokenizer: 默认 Token 计算工具
"""

from promptcore.services.llm_core.assembler import ChatPrompt, PromptAssembler
from promptcore.services.llm_core.images import (
    IMAGE_STRATEGIES,
    ImageStrategy,
    ModelFamily,
    check_image_limits,
    detect_family,
    image_strategy,
    tag_images,
)
from promptcore.services.llm_core.templates import (
    CHATML_TEMPLATE,
    DEFAULT_CHAT_TEMPLATE,
    LLAMA3_TEMPLATE,
    ChatTemplate,
    cached_template,
    default_template,
)
from promptcore.services.llm_core.tokens import TiktokenTokenizer
from promptcore.services.llm_core.tool_format import (
    chat_format,
    dump_schema,
    tool_format,
    tools_format,
)
from promptcore.services.llm_core.truncation import TruncationWindow, select_window

__all__ = [
    "PromptAssembler",
    "ChatPrompt",
    "select_window",
    "TruncationWindow",
    "tag_images",
    "check_image_limits",
    "detect_family",
    "image_strategy",
    "ModelFamily",
    "ImageStrategy",
    "IMAGE_STRATEGIES",
    "chat_format",
    "tools_format",
    "tool_format",
    "dump_schema",
    "ChatTemplate",
    "CHATML_TEMPLATE",
    "LLAMA3_TEMPLATE",
    "DEFAULT_CHAT_TEMPLATE",
    "cached_template",
    "default_template",
    "TiktokenTokenizer",
]
