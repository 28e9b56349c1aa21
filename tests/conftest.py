import pytest

from promptcore.models.schemas.chat_schema import Message, MessageRole
from promptcore.services.llm_core.templates import ChatTemplate


class WordTokenizer:
    """按空白切词的假分词器，记录调用次数，便于精确控制 Token 数"""

    def __init__(self):
        self.calls: list[str] = []

    async def __call__(self, text: str) -> list[int]:
        self.calls.append(text)
        return list(range(len(text.split())))


def join_render(messages, tools):
    """最简单的渲染器：只拼接正文，Token 数 = 各条消息词数之和"""
    return " ".join(msg.content for msg in messages)


@pytest.fixture
def tokenizer():
    return WordTokenizer()


@pytest.fixture
def render():
    return join_render


@pytest.fixture
def line_template():
    """每条消息一行的 Jinja2 模板"""
    return ChatTemplate.from_source(
        "{% for m in messages %}{{ m.role }}: {{ m.content }}\n{% endfor %}"
    )


@pytest.fixture
def history():
    """system(1) + user(4) + assistant(3) + user(2)，括号内为词数"""
    return [
        Message(role=MessageRole.SYSTEM, content="rules"),
        Message(role=MessageRole.USER, content="a a a a"),
        Message(role=MessageRole.ASSISTANT, content="b b b"),
        Message(role=MessageRole.USER, content="c c"),
    ]
