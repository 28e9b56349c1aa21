"""
工具调用输出格式 (JSON Schema)

根据调用方提供的工具定义，生成约束模型输出的 JSON Schema：
- 单个工具: {"type": "object", "properties": {"name": ..., "parameters": ...}, ...}
- 多个工具: {"anyOf": [<单工具 schema>, ...]}，保持输入顺序

Schema 用一组小的值类型表示，由 to_dict() 显式序列化。
enum / required 为空时整个 key 省略，而不是输出空数组。
"""

import json
import logging
from dataclasses import dataclass, field

from promptcore.models.schemas.chat_schema import Tool, ToolParameters

logger = logging.getLogger(__name__)


# ============================================================
# Schema 值类型
# ============================================================


@dataclass(frozen=True)
class PropertySchema:
    """声明类型的单个字段，可带枚举"""

    type: str
    enum: tuple[str, ...] = ()

    def to_dict(self) -> dict:
        result: dict = {"type": self.type}
        if self.enum:
            result["enum"] = list(self.enum)
        return result


@dataclass(frozen=True)
class StringEnumSchema:
    """只能取给定值之一的字符串"""

    values: tuple[str, ...]

    def to_dict(self) -> dict:
        return {"type": "string", "enum": list(self.values)}


@dataclass(frozen=True)
class ObjectSchema:
    properties: dict = field(default_factory=dict)
    required: tuple[str, ...] = ()

    def to_dict(self) -> dict:
        result: dict = {
            "type": "object",
            "properties": {
                name: prop.to_dict() for name, prop in self.properties.items()
            },
        }
        if self.required:
            result["required"] = list(self.required)
        return result


@dataclass(frozen=True)
class AnyOfSchema:
    variants: tuple[ObjectSchema, ...]

    def to_dict(self) -> dict:
        return {"anyOf": [variant.to_dict() for variant in self.variants]}


Schema = PropertySchema | StringEnumSchema | ObjectSchema | AnyOfSchema


# ============================================================
# 工具 -> Schema
# ============================================================


def parameters_format(parameters: ToolParameters) -> ObjectSchema:
    """把工具参数定义转换为 JSON Schema 对象"""
    properties = {
        name: PropertySchema(type=param.type, enum=tuple(param.enum))
        for name, param in parameters.properties.items()
    }
    return ObjectSchema(properties=properties, required=tuple(parameters.required))


def tool_format(tool: Tool) -> ObjectSchema:
    """单个工具的调用格式：name 只能是该工具名，parameters 为参数 schema"""
    return ObjectSchema(
        properties={
            "name": StringEnumSchema(values=(tool.function.name,)),
            "parameters": parameters_format(tool.function.parameters),
        },
        required=("name", "parameters"),
    )


def tools_format(tools: list[Tool]) -> ObjectSchema | AnyOfSchema:
    """
    多个工具的调用格式

    Raises:
        ValueError: 工具列表为空（调用方应跳过格式推导）
    """
    if not tools:
        raise ValueError("tools_format 需要至少一个工具")
    if len(tools) == 1:
        return tool_format(tools[0])
    return AnyOfSchema(variants=tuple(tool_format(tool) for tool in tools))


def dump_schema(schema: Schema) -> bytes:
    """序列化为紧凑的 JSON 字节"""
    return json.dumps(
        schema.to_dict(), separators=(",", ":"), ensure_ascii=False
    ).encode("utf-8")


def chat_format(req_format: bytes | None, tools: list[Tool]) -> bytes | None:
    """
    决定对话响应的输出格式

    调用方显式指定了格式，或者没有工具时，原样返回（可能为空）；
    否则由工具定义推导 JSON Schema。
    """
    if req_format or not tools:
        return req_format

    logger.debug("由 %d 个工具推导输出格式", len(tools))
    return dump_schema(tools_format(tools))
