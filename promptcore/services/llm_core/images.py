"""
图片 Token 开销与图片标签

不同架构族的视觉编码器对每张图片占用的上下文不同：
- mllama: 整张图片打包进一个 embedding，占 1 个 Token，每条消息最多一张图片
- clip:   每张图片固定产生一组网格 embedding（约 768 个 Token）

开销是按架构族查表得到的近似值，并不根据图片内容计算；可以通过配置或
PromptAssembler(image_token_costs=...) 覆盖。
"""

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass, replace
from enum import StrEnum

from promptcore.core.config import settings
from promptcore.core.exceptions import MissingAspectRatioError, TooManyImagesError
from promptcore.models.schemas.chat_schema import ImageData, Message
from promptcore.services.llm_core.mllama import preprocess
from promptcore.services.llm_core.truncation import ensure_not_cancelled

logger = logging.getLogger(__name__)

# image-encode 回调签名：原始字节 -> (张量字节, 辅助元数据)
ImageEncoder = Callable[[bytes], tuple[bytes, dict]]


class ModelFamily(StrEnum):
    """决定图片处理方式的架构族"""

    MLLAMA = "mllama"  # 打包 embedding
    CLIP = "clip"  # 网格 embedding


@dataclass(frozen=True)
class ImageStrategy:
    """单个架构族的图片处理策略"""

    family: ModelFamily
    num_tokens: int
    max_images_per_message: int | None = None
    leading_marker: str = ""
    requires_encoder: bool = False


IMAGE_STRATEGIES: dict[ModelFamily, ImageStrategy] = {
    ModelFamily.MLLAMA: ImageStrategy(
        family=ModelFamily.MLLAMA,
        num_tokens=settings.MLLAMA_IMAGE_NUM_TOKENS,
        max_images_per_message=1,
        leading_marker="<|image|>",
        requires_encoder=True,
    ),
    ModelFamily.CLIP: ImageStrategy(
        family=ModelFamily.CLIP,
        num_tokens=settings.CLIP_IMAGE_NUM_TOKENS,
    ),
}


def detect_family(families: list[str]) -> ModelFamily:
    """模型元数据中声明了 mllama 即为打包族，否则按通用网格族处理"""
    if ModelFamily.MLLAMA.value in families:
        return ModelFamily.MLLAMA
    return ModelFamily.CLIP


def image_strategy(
    family: ModelFamily, overrides: dict[ModelFamily, int] | None = None
) -> ImageStrategy:
    """查表获取策略，overrides 可以覆盖每张图片的 Token 开销"""
    strategy = IMAGE_STRATEGIES[family]
    if overrides and family in overrides:
        strategy = replace(strategy, num_tokens=overrides[family])
    return strategy


def check_image_limits(messages: list[Message], strategy: ImageStrategy) -> None:
    """
    校验每条消息的图片数量

    Raises:
        TooManyImagesError: 打包族的某条消息携带了多张图片
    """
    limit = strategy.max_images_per_message
    if limit is None:
        return
    for index, msg in enumerate(messages):
        if len(msg.images) > limit:
            logger.warning(
                "消息图片数量超出限制: index=%d, images=%d",
                index,
                len(msg.images),
                extra={"stage": "validate", "family": strategy.family.value},
            )
            raise TooManyImagesError(
                "vision model only supports a single image per message",
                details={
                    "message_index": index,
                    "images": len(msg.images),
                    "limit": limit,
                },
            )


async def _encode(
    raw: bytes, image_id: int, strategy: ImageStrategy, encoder: ImageEncoder
) -> ImageData:
    if not strategy.requires_encoder:
        return ImageData(id=image_id, data=raw)

    # 预处理是 CPU 密集操作，放到线程中执行，不阻塞事件循环
    data, meta = await asyncio.to_thread(encoder, raw)
    aspect_ratio = meta.get("aspectRatioIndex")
    if not isinstance(aspect_ratio, int) or isinstance(aspect_ratio, bool):
        raise MissingAspectRatioError(
            "missing aspect ratio for image",
            details={"image_id": image_id, "family": strategy.family.value},
        )
    return ImageData(id=image_id, data=data, aspect_ratio_id=aspect_ratio)


async def tag_images(
    messages: list[Message],
    strategy: ImageStrategy,
    encoder: ImageEncoder | None = None,
    placeholder: str | None = None,
    cancel_event: asyncio.Event | None = None,
) -> list[ImageData]:
    """
    为消息中的图片分配全局 id，并把 [img-N] 标签写入消息正文

    - 正文中有占位符（默认 [img]）时，每张图片按顺序替换一个占位符
    - 否则把该消息的所有标签放在正文之前
    - 打包族还会在标签之后、正文之前插入 <|image|>

    会原地修改 messages 中的 content，调用方应传入请求内部的副本。
    每次编码前检查 cancel_event，置位后抛出 CancellationError。

    Returns:
        按出现顺序排列的图片负载，id 为 0..k-1
    """
    encoder = encoder or preprocess
    placeholder = placeholder or settings.IMAGE_PLACEHOLDER
    images: list[ImageData] = []

    for msg in messages:
        if not msg.images:
            continue

        prefix = ""
        content = msg.content
        for raw in msg.images:
            ensure_not_cancelled(cancel_event, "encode")
            image = await _encode(raw, len(images), strategy, encoder)
            tag = f"[img-{image.id}]"
            if placeholder in content:
                content = content.replace(placeholder, tag, 1)
            else:
                prefix += tag
            images.append(image)

        msg.content = prefix + strategy.leading_marker + content

    return images
