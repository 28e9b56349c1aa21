"""
上下文窗口截断

从最新一条消息开始向前扩展窗口 msgs[i:]，每次都完整渲染并计算 Token：
- 最后一条消息无条件保留（即使单独渲染就已超出预算）
- 窗口之前的 system 消息会被带到窗口最前面，不会因截断而丢失
- 一旦扩展后超出预算立即停止，返回最后一个满足预算的起点
"""

import asyncio
import logging
from dataclasses import dataclass, field

from promptcore.core.exceptions import (
    AppError,
    CancellationError,
    RenderError,
    TokenizationError,
)
from promptcore.models.schemas.chat_schema import Message, MessageRole, Tool
from promptcore.services.llm_core.templates import Renderer
from promptcore.services.llm_core.tokens import Tokenizer

logger = logging.getLogger(__name__)


@dataclass
class TruncationWindow:
    """截断结果：窗口起点 + 需要前置的 system 消息"""

    start_index: int = 0
    carried_system: list[Message] = field(default_factory=list)

    def messages_of(self, messages: list[Message]) -> list[Message]:
        """最终参与渲染的消息：前置 system + msgs[start_index:]"""
        return self.carried_system + messages[self.start_index :]


def ensure_not_cancelled(cancel_event: asyncio.Event | None, stage: str) -> None:
    if cancel_event is not None and cancel_event.is_set():
        logger.info("请求在 %s 阶段被取消", stage, extra={"stage": stage})
        raise CancellationError("请求已取消", details={"stage": stage})


def render_window(window: list[Message], tools: list[Tool], render: Renderer) -> str:
    """调用渲染回调，非业务异常统一转换为 RenderError"""
    try:
        return render(window, tools)
    except AppError:
        raise
    except Exception as e:
        raise RenderError("Prompt 渲染失败", details={"error": str(e)}) from e


def _system_before(messages: list[Message], index: int) -> list[Message]:
    return [msg for msg in messages[:index] if msg.role == MessageRole.SYSTEM]


async def measure_window(
    window: list[Message],
    *,
    tools: list[Tool],
    render: Renderer,
    tokenize: Tokenizer,
    extra_tokens: int = 0,
    cancel_event: asyncio.Event | None = None,
) -> int:
    """渲染窗口并计算其 Token 数，extra_tokens 为模板之外的开销（如图片）"""
    ensure_not_cancelled(cancel_event, "render")
    text = render_window(window, tools, render)

    ensure_not_cancelled(cancel_event, "tokenize")
    try:
        tokens = await tokenize(text)
    except AppError:
        raise
    except Exception as e:
        raise TokenizationError(
            "Tokenizer 调用失败", details={"error": str(e)}
        ) from e

    return len(tokens) + extra_tokens


async def select_window(
    messages: list[Message],
    *,
    budget: int,
    render: Renderer,
    tokenize: Tokenizer,
    tools: list[Tool] | None = None,
    image_num_tokens: int = 0,
    count_images: bool = True,
    cancel_event: asyncio.Event | None = None,
) -> TruncationWindow:
    """
    选择能放进 Token 预算的最长后缀窗口

    Args:
        messages: 按时间正序排列的完整消息列表
        budget: 上下文 Token 预算
        render: 渲染回调 (messages, tools) -> str
        tokenize: 异步分词回调 text -> token ids
        tools: 渲染时一并传入模板的工具
        image_num_tokens: 每张图片的 Token 开销
        count_images: 模型没有视觉投影器时不计图片开销
        cancel_event: 置位后在下一次渲染 / 分词前中止

    Returns:
        TruncationWindow

    Raises:
        RenderError / TokenizationError / CancellationError
    """
    tools = tools or []
    if not messages:
        return TruncationWindow()

    last = len(messages) - 1
    best = last  # 最后一条消息无条件保留

    for i in range(last - 1, -1, -1):
        window = _system_before(messages, i) + messages[i:]
        image_tokens = 0
        if count_images:
            image_tokens = image_num_tokens * sum(
                len(msg.images) for msg in messages[i:]
            )

        used = await measure_window(
            window,
            tools=tools,
            render=render,
            tokenize=tokenize,
            extra_tokens=image_tokens,
            cancel_event=cancel_event,
        )
        if used > budget:
            logger.debug(
                "截断超出上下文长度的消息: kept=%d, dropped=%d, tokens=%d, budget=%d",
                len(messages) - best,
                best,
                used,
                budget,
                extra={"stage": "truncate"},
            )
            break
        best = i

    return TruncationWindow(
        start_index=best, carried_system=_system_before(messages, best)
    )
