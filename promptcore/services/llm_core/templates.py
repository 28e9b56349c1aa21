"""
对话模板管理 (Jinja2)

把结构化的消息列表渲染为推理引擎接收的字面 Prompt：
- 模型自带模板时按模型模板渲染
- 否则按架构族选择内置模板：llama 系列用 Llama3，其余用 ChatML
- 渲染必须是确定性的：截断算法依赖同一窗口多次渲染结果一致
"""

from collections.abc import Callable
from functools import lru_cache

from jinja2 import BaseLoader, Environment, StrictUndefined, Template, TemplateError

from promptcore.core.exceptions import RenderError
from promptcore.models.schemas.chat_schema import Message, Tool

# render 回调签名
Renderer = Callable[[list[Message], list[Tool]], str]


def _tool_json(tool: Tool) -> str:
    return tool.model_dump_json()


# ============================================================
# Jinja2 环境（全局单例，字符串模板模式）
# ============================================================

_env = Environment(
    loader=BaseLoader(),
    autoescape=False,       # Prompt 不需要 HTML 转义
    keep_trailing_newline=True,
    undefined=StrictUndefined,
)
_env.filters["tool_json"] = _tool_json

# ============================================================
# 模板字符串定义
# ============================================================

_CHATML_TEMPLATE = """\
{% if tools %}<|im_start|>system
You have access to the following tools:
{% for tool in tools %}{{ tool | tool_json }}
{% endfor %}<|im_end|>
{% endif %}\
{% for message in messages %}<|im_start|>{{ message.role }}
{{ message.content }}<|im_end|>
{% endfor %}<|im_start|>assistant
"""

_LLAMA3_TEMPLATE = """\
<|begin_of_text|>\
{% if tools %}<|start_header_id|>system<|end_header_id|>

Respond with a JSON tool call using one of these functions:
{% for tool in tools %}{{ tool | tool_json }}
{% endfor %}<|eot_id|>\
{% endif %}\
{% for message in messages %}<|start_header_id|>{{ message.role }}<|end_header_id|>

{{ message.content }}<|eot_id|>\
{% endfor %}<|start_header_id|>assistant<|end_header_id|>

"""


def compile_template(source: str) -> Template:
    """编译模板源码，语法错误转换为 RenderError"""
    try:
        return _env.from_string(source)
    except TemplateError as e:
        raise RenderError("对话模板编译失败", details={"error": str(e)}) from e


class ChatTemplate:
    """
    对话模板渲染器，满足 Renderer 协议

    使用方式：
        template = ChatTemplate.from_source("{% for m in messages %}...{% endfor %}")
        prompt = template.render(messages, tools)
    """

    def __init__(self, template: Template):
        self.template = template

    @classmethod
    def from_source(cls, source: str) -> "ChatTemplate":
        return cls(compile_template(source))

    def render(self, messages: list[Message], tools: list[Tool]) -> str:
        try:
            return self.template.render(messages=messages, tools=tools)
        except TemplateError as e:
            raise RenderError(
                "对话模板渲染失败",
                details={"error": str(e), "messages": len(messages)},
            ) from e

    def __call__(self, messages: list[Message], tools: list[Tool]) -> str:
        return self.render(messages, tools)


# ============================================================
# 编译后的模板对象（启动时一次性编译）
# ============================================================

CHATML_TEMPLATE = ChatTemplate(_env.from_string(_CHATML_TEMPLATE))
LLAMA3_TEMPLATE = ChatTemplate(_env.from_string(_LLAMA3_TEMPLATE))
DEFAULT_CHAT_TEMPLATE = CHATML_TEMPLATE

# 使用 Llama3 头部格式的架构族
LLAMA3_FAMILIES = frozenset({"llama", "mllama"})


@lru_cache(maxsize=64)
def cached_template(source: str) -> ChatTemplate:
    """按源码缓存编译结果，模型自带模板不必每个请求重新编译"""
    return ChatTemplate.from_source(source)


def default_template(families: list[str]) -> ChatTemplate:
    """模型没有自带模板时按架构族选择内置模板"""
    if LLAMA3_FAMILIES.intersection(families):
        return LLAMA3_TEMPLATE
    return DEFAULT_CHAT_TEMPLATE
