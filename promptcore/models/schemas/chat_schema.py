"""
Chat Schema 层: Pydantic 模型

分层设计：
- Reusable Types: 可复用的枚举与类型
- Request Schemas: 对话请求输入（消息、工具、选项）
- Model Metadata: 模型注册表提供的元数据
- Internal DTOs: 组装过程中流转的对象
"""

from enum import StrEnum
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

from promptcore.core.config import settings

# ============================================================
# --- Reusable Types ---
# ============================================================


class MessageRole(StrEnum):
    """消息角色枚举"""

    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"
    TOOL = "tool"


# ============================================================
# --- Request Schemas (输入控制) ---
# ============================================================


class Message(BaseModel):
    """
    单条对话消息。
    content 只会在组装阶段被改写（插入图片标签），且只作用于请求内部的副本。
    """

    role: MessageRole
    content: str = ""
    images: list[bytes] = Field(default_factory=list, description="原始图片字节")


class ToolProperty(BaseModel):
    """工具参数的单个字段"""

    type: str
    description: str = ""
    enum: list[str] = Field(default_factory=list)


class ToolParameters(BaseModel):
    """工具参数定义（OpenAPI 风格）"""

    type: Literal["object"] = "object"
    required: list[str] = Field(default_factory=list)
    properties: dict[str, ToolProperty] = Field(default_factory=dict)


class ToolFunction(BaseModel):
    name: str = Field(..., min_length=1)
    description: str = ""
    parameters: ToolParameters = Field(default_factory=ToolParameters)


class Tool(BaseModel):
    """调用方提供的可调用工具"""

    type: Literal["function"] = "function"
    function: ToolFunction

    model_config = ConfigDict(frozen=True)


class Options(BaseModel):
    """推理选项，这里只关心上下文 Token 预算"""

    num_ctx: int = Field(
        default_factory=lambda: settings.LLM_MAX_CONTEXT_TOKENS,
        gt=0,
        description="上下文 Token 预算",
    )


# ============================================================
# --- Model Metadata (由模型注册表提供) ---
# ============================================================


class ModelInfo(BaseModel):
    """模型元数据：架构族、视觉投影器、对话模板"""

    name: str = Field(default_factory=lambda: settings.LLM_MODEL_NAME)
    families: list[str] = Field(default_factory=list)
    projector_paths: list[str] = Field(default_factory=list)
    template: str | None = Field(None, description="Jinja2 对话模板源码")

    @property
    def has_projector(self) -> bool:
        return len(self.projector_paths) > 0


class ChatPromptRequest(BaseModel):
    """一次对话请求的完整输入"""

    model: ModelInfo
    messages: list[Message] = Field(default_factory=list)
    tools: list[Tool] = Field(default_factory=list)
    options: Options = Field(default_factory=Options)
    format: bytes | None = Field(None, description="调用方显式指定的输出格式 (原始 JSON)")


# ============================================================
# --- Internal DTOs ---
# ============================================================


class ImageData(BaseModel):
    """随 Prompt 一起发送给推理引擎的图片负载，id 与正文中的 [img-N] 标签对应"""

    id: int = Field(..., ge=0)
    data: bytes
    aspect_ratio_id: int = 0

    model_config = ConfigDict(frozen=True)
