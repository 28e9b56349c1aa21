"""
Prompt Assembler: 对话 Prompt 组装与上下文窗口管理

核心职责：
1. 按模型架构族校验图片数量、确定每张图片的 Token 开销
2. 从最新消息向前截断，保证最后一条消息和所有 system 消息保留
3. 为窗口内的图片分配 id，把 [img-N] 标签写入消息正文
4. 渲染最终窗口得到字面 Prompt，并推导工具调用的输出格式
"""

import asyncio
import logging
from dataclasses import dataclass, field

from promptcore.core.config import settings
from promptcore.models.schemas.chat_schema import (
    ChatPromptRequest,
    ImageData,
    Message,
    ModelInfo,
    Options,
    Tool,
)
from promptcore.services.llm_core.images import (
    ImageEncoder,
    ModelFamily,
    check_image_limits,
    detect_family,
    image_strategy,
    tag_images,
)
from promptcore.services.llm_core.templates import (
    Renderer,
    cached_template,
    default_template,
)
from promptcore.services.llm_core.tokens import TiktokenTokenizer, Tokenizer
from promptcore.services.llm_core.tool_format import chat_format
from promptcore.services.llm_core.truncation import (
    ensure_not_cancelled,
    render_window,
    select_window,
)
from promptcore.utils.decorators import monitor_action

logger = logging.getLogger(__name__)


@dataclass
class ChatPrompt:
    """Prompt 组装结果"""

    prompt: str = ""
    images: list[ImageData] = field(default_factory=list)
    format: bytes | None = None
    messages_used: int = 0
    truncated: bool = False


class PromptAssembler:
    """
    Prompt 组装器

    使用方式：
        assembler = PromptAssembler()
        result = await assembler.assemble(request)

        # 替换分词器 / 模板 / 图片编码器（例如接入推理引擎自带的分词器）
        assembler = PromptAssembler(
            template=ChatTemplate.from_source(source),
            tokenizer=engine.tokenize,
        )

        # 覆盖每张图片的 Token 开销
        assembler = PromptAssembler(image_token_costs={ModelFamily.CLIP: 576})
    """

    def __init__(
        self,
        template: Renderer | None = None,
        tokenizer: Tokenizer | None = None,
        image_encoder: ImageEncoder | None = None,
        image_token_costs: dict[ModelFamily, int] | None = None,
    ):
        self.template = template
        self.tokenizer = tokenizer or TiktokenTokenizer()
        self.image_encoder = image_encoder
        self.image_token_costs = image_token_costs or {}

    def renderer_for(self, model: ModelInfo) -> Renderer:
        """模型自带模板优先，其次是组装器指定的模板，最后按架构族选择内置模板"""
        if model.template:
            return cached_template(model.template)
        if self.template is not None:
            return self.template
        return default_template(model.families)

    async def chat_prompt(
        self,
        model: ModelInfo,
        messages: list[Message],
        tools: list[Tool] | None = None,
        options: Options | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> ChatPrompt:
        """
        组装下一轮对话的 Prompt 与图片

        Args:
            model: 模型元数据（架构族、视觉投影器、模板）
            messages: 完整的对话历史，不会被修改
            tools: 可调用工具，会一并传入模板
            options: 推理选项，num_ctx 为 Token 预算
            cancel_event: 置位后中止组装

        Returns:
            ChatPrompt，images 的 id 与正文中的 [img-N] 一一对应

        Raises:
            TooManyImagesError: 打包族的某条消息携带多张图片
            MissingAspectRatioError: 图片编码器没有返回宽高比索引
            RenderError / TokenizationError / CancellationError
        """
        tools = tools or []
        options = options or Options()

        # 只修改请求内部的副本，失败时调用方看不到任何改动
        msgs = [msg.model_copy(deep=True) for msg in messages]

        family = detect_family(model.families)
        strategy = image_strategy(family, self.image_token_costs)
        check_image_limits(msgs, strategy)

        render = self.renderer_for(model)
        window = await select_window(
            msgs,
            budget=options.num_ctx,
            render=render,
            tokenize=self.tokenizer,
            tools=tools,
            image_num_tokens=strategy.num_tokens,
            count_images=model.has_projector,
            cancel_event=cancel_event,
        )

        kept = msgs[window.start_index :]
        images = await tag_images(
            kept,
            strategy,
            encoder=self.image_encoder,
            placeholder=settings.IMAGE_PLACEHOLDER,
            cancel_event=cancel_event,
        )

        ensure_not_cancelled(cancel_event, "render")
        prompt = render_window(window.messages_of(msgs), tools, render)

        result = ChatPrompt(
            prompt=prompt,
            images=images,
            messages_used=len(kept),
            truncated=window.start_index > 0,
        )

        logger.info(
            "Prompt 组装完成: model=%s, messages=%d/%d, carried_system=%d, images=%d, truncated=%s",
            model.name,
            result.messages_used,
            len(msgs),
            len(window.carried_system),
            len(images),
            result.truncated,
            extra={"stage": "assemble", "family": family.value},
        )
        return result

    @monitor_action(name="assemble_chat_prompt")
    async def assemble(
        self,
        request: ChatPromptRequest,
        cancel_event: asyncio.Event | None = None,
    ) -> ChatPrompt:
        """组装 Prompt 并决定响应的输出格式"""
        result = await self.chat_prompt(
            request.model,
            request.messages,
            tools=request.tools,
            options=request.options,
            cancel_event=cancel_event,
        )
        result.format = chat_format(request.format, request.tools)
        return result
