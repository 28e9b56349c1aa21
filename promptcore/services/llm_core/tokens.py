"""
Token 计数工具

Prompt 截断只依赖一个异步的 tokenize 回调：text -> token id 列表。
默认实现基于 tiktoken，推理引擎自带分词器时可以替换为任意满足 Tokenizer 协议的对象。
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable

import tiktoken

from promptcore.core.config import settings

logger = logging.getLogger(__name__)

# tokenize 回调签名
Tokenizer = Callable[[str], Awaitable[list[int]]]

_encoding_cache: dict = {}

# 超过该长度的文本放到线程中编码，避免阻塞事件循环
THREAD_ENCODE_THRESHOLD = 4096


def _get_encoding(name: str):
    """获取或缓存 tiktoken 编码器（可以是模型名，也可以是编码名）"""
    if name not in _encoding_cache:
        try:
            _encoding_cache[name] = tiktoken.encoding_for_model(name)
        except KeyError:
            # 不在 tiktoken 注册表中的模型名，按编码名处理
            logger.debug("'%s' 不是已知模型名，按编码名加载", name)
            _encoding_cache[name] = tiktoken.get_encoding(name)
    return _encoding_cache[name]


class TiktokenTokenizer:
    """
    基于 tiktoken 的默认 Tokenizer

    使用方式：
        tokenize = TiktokenTokenizer()
        ids = await tokenize("你好")
    """

    def __init__(self, encoding: str | None = None):
        self.encoding_name = encoding or settings.TOKENIZER_ENCODING

    def encode(self, text: str) -> list[int]:
        if not text:
            return []
        encoding = _get_encoding(self.encoding_name)
        # 模板中的特殊 token（如 <|image|>）按普通文本计数
        return encoding.encode(text, disallowed_special=())

    async def __call__(self, text: str) -> list[int]:
        if len(text) > THREAD_ENCODE_THRESHOLD:
            return await asyncio.to_thread(self.encode, text)
        return self.encode(text)

