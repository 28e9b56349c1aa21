"""
上下文截断单元测试

覆盖：
- 全部消息能放下时不截断
- 预算不足时从最早的消息开始丢弃，边界消息精确判定
- 最后一条消息无条件保留
- 窗口之前的 system 消息被前置且只出现一次
- 图片 Token 开销只在模型有视觉投影器时计入
- 渲染 / 分词失败与取消
"""

import asyncio

import pytest

from promptcore.core.exceptions import (
    CancellationError,
    RenderError,
    TokenizationError,
)
from promptcore.models.schemas.chat_schema import Message, MessageRole
from promptcore.services.llm_core.truncation import TruncationWindow, select_window


# ============================================================
# 基础截断
# ============================================================


class TestSelectWindow:
    """select_window 窗口选择"""

    @pytest.mark.asyncio
    async def test_everything_fits(self, history, render, tokenizer):
        """预算充足时从 0 开始，不需要前置 system"""
        window = await select_window(
            history, budget=100, render=render, tokenize=tokenizer
        )
        assert window.start_index == 0
        assert window.carried_system == []

    @pytest.mark.asyncio
    async def test_exact_budget_includes_boundary(self, history, render, tokenizer):
        """Token 数恰好等于预算时包含边界消息"""
        # rules + a a a a + b b b + c c = 10
        window = await select_window(
            history, budget=10, render=render, tokenize=tokenizer
        )
        assert window.start_index == 0

    @pytest.mark.asyncio
    async def test_drops_oldest_and_carries_system(self, history, render, tokenizer):
        """超出预算时丢弃最早的轮次，system 消息被带到窗口前面"""
        # i=2: rules + b b b + c c = 6 <= 6; i=1: 10 > 6
        window = await select_window(
            history, budget=6, render=render, tokenize=tokenizer
        )
        assert window.start_index == 2
        assert window.carried_system == [history[0]]

        kept = window.messages_of(history)
        assert [m.content for m in kept] == ["rules", "b b b", "c c"]

    @pytest.mark.asyncio
    async def test_last_message_always_kept(self, history, render, tokenizer):
        """预算为 0 时仍然保留最后一条消息"""
        window = await select_window(
            history, budget=0, render=render, tokenize=tokenizer
        )
        assert window.start_index == len(history) - 1
        assert window.messages_of(history)[-1] is history[-1]

    @pytest.mark.asyncio
    async def test_single_oversized_message(self, render, tokenizer):
        """单条超长消息不会被丢弃，也不需要任何测量"""
        msgs = [Message(role=MessageRole.USER, content="x " * 500)]
        window = await select_window(
            msgs, budget=10, render=render, tokenize=tokenizer
        )
        assert window.start_index == 0
        assert tokenizer.calls == []

    @pytest.mark.asyncio
    async def test_empty_history(self, render, tokenizer):
        window = await select_window([], budget=10, render=render, tokenize=tokenizer)
        assert window == TruncationWindow()

    @pytest.mark.asyncio
    async def test_stops_at_first_overflow(self, render, tokenizer):
        """一旦超出预算就停止，不会跳过超长消息继续向前"""
        msgs = [
            Message(role=MessageRole.USER, content="a"),
            Message(role=MessageRole.USER, content="b " * 50),
            Message(role=MessageRole.USER, content="c"),
        ]
        window = await select_window(msgs, budget=5, render=render, tokenize=tokenizer)
        assert window.start_index == 2
        assert len(tokenizer.calls) == 1

    @pytest.mark.asyncio
    async def test_system_inside_window_not_duplicated(self, render, tokenizer):
        """窗口内的 system 消息不会再被前置"""
        msgs = [
            Message(role=MessageRole.USER, content="a a a"),
            Message(role=MessageRole.SYSTEM, content="sys"),
            Message(role=MessageRole.USER, content="b b b b"),
            Message(role=MessageRole.USER, content="c"),
        ]
        # i=2: sys + b*4 + c = 6; i=1: sys + b*4 + c = 6; i=0: 9
        window = await select_window(msgs, budget=6, render=render, tokenize=tokenizer)
        assert window.start_index == 1
        assert window.carried_system == []

        contents = [m.content for m in window.messages_of(msgs)]
        assert contents.count("sys") == 1

    @pytest.mark.asyncio
    async def test_system_at_failed_boundary_is_carried(self, render, tokenizer):
        """刚好在超限位置上的 system 消息仍然被前置"""
        msgs = [
            Message(role=MessageRole.USER, content="a a a"),
            Message(role=MessageRole.SYSTEM, content="sys"),
            Message(role=MessageRole.USER, content="b b b b"),
            Message(role=MessageRole.USER, content="c"),
        ]
        # i=2: sys + b*4 + c = 6 > 5
        window = await select_window(msgs, budget=5, render=render, tokenize=tokenizer)
        assert window.start_index == 3
        assert [m.content for m in window.messages_of(msgs)] == ["sys", "c"]

    @pytest.mark.asyncio
    async def test_budget_monotonicity(self, history, render, tokenizer):
        """预算增大时窗口不会变小"""
        sizes = []
        for budget in range(0, 15):
            window = await select_window(
                history, budget=budget, render=render, tokenize=tokenizer
            )
            sizes.append(len(history) - window.start_index)

        assert sizes == sorted(sizes)
        assert sizes[0] == 1
        assert sizes[-1] == len(history)


# ============================================================
# 图片开销
# ============================================================


class TestImageCost:
    """图片 Token 开销计入预算"""

    @pytest.fixture
    def image_history(self):
        return [
            Message(role=MessageRole.USER, content="look", images=[b"png"]),
            Message(role=MessageRole.USER, content="and"),
        ]

    @pytest.mark.asyncio
    async def test_image_cost_counted(self, image_history, render, tokenizer):
        window = await select_window(
            image_history,
            budget=100,
            render=render,
            tokenize=tokenizer,
            image_num_tokens=768,
        )
        assert window.start_index == 1

    @pytest.mark.asyncio
    async def test_packed_image_cost(self, image_history, render, tokenizer):
        # look + and = 2，加 1 张图片 = 3
        window = await select_window(
            image_history,
            budget=3,
            render=render,
            tokenize=tokenizer,
            image_num_tokens=1,
        )
        assert window.start_index == 0

    @pytest.mark.asyncio
    async def test_image_cost_ignored_without_projector(
        self, image_history, render, tokenizer
    ):
        window = await select_window(
            image_history,
            budget=100,
            render=render,
            tokenize=tokenizer,
            image_num_tokens=768,
            count_images=False,
        )
        assert window.start_index == 0


# ============================================================
# 失败与取消
# ============================================================


class TestFailures:
    """外部回调失败时整体中止"""

    @pytest.mark.asyncio
    async def test_render_error_propagates(self, history, tokenizer):
        def broken_render(messages, tools):
            raise ValueError("bad template")

        with pytest.raises(RenderError) as exc_info:
            await select_window(
                history, budget=10, render=broken_render, tokenize=tokenizer
            )
        assert "bad template" in exc_info.value.details["error"]

    @pytest.mark.asyncio
    async def test_tokenizer_error_wrapped(self, history, render, mocker):
        tokenize = mocker.AsyncMock(side_effect=RuntimeError("engine down"))

        with pytest.raises(TokenizationError):
            await select_window(history, budget=10, render=render, tokenize=tokenize)
        tokenize.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_cancelled_before_measuring(self, history, render, tokenizer):
        cancel = asyncio.Event()
        cancel.set()

        with pytest.raises(CancellationError) as exc_info:
            await select_window(
                history,
                budget=10,
                render=render,
                tokenize=tokenizer,
                cancel_event=cancel,
            )
        assert exc_info.value.retriable is True
        assert tokenizer.calls == []

    @pytest.mark.asyncio
    async def test_cancelled_mid_scan(self, history, render):
        cancel = asyncio.Event()
        calls = []

        async def tokenize(text):
            calls.append(text)
            cancel.set()
            return [0]

        with pytest.raises(CancellationError):
            await select_window(
                history,
                budget=100,
                render=render,
                tokenize=tokenize,
                cancel_event=cancel,
            )
        assert len(calls) == 1
