"""
Mllama 图片预处理

把原始图片字节处理成打包视觉编码器需要的张量：
1. 在所有支持的分块布局中选择最合适的画布（尽量少缩小、尽量小面积）
2. 保持宽高比缩放并在右下补零
3. 按 CLIP 均值/方差归一化，切成 tile_size x tile_size 的分块
4. 补齐到 max_tiles 个分块，输出 little-endian float32 字节

返回的 aspectRatioIndex 是所选布局在支持列表中的位置（从 1 开始，0 保留给填充）。
"""

import io
import logging

import numpy as np
from PIL import Image, UnidentifiedImageError

from promptcore.core.config import settings
from promptcore.core.exceptions import ImageDecodeError

logger = logging.getLogger(__name__)

CLIP_MEAN = np.array([0.48145466, 0.4578275, 0.40821073], dtype=np.float32)
CLIP_STD = np.array([0.26862954, 0.26130258, 0.27577711], dtype=np.float32)


def supported_aspect_ratios(max_tiles: int) -> list[tuple[int, int]]:
    """所有满足 宽 x 高 <= max_tiles 的分块布局，按 (宽, 高) 顺序"""
    return [
        (width, height)
        for width in range(1, max_tiles + 1)
        for height in range(1, max_tiles + 1)
        if width * height <= max_tiles
    ]


def optimal_tiled_canvas(
    image_size: tuple[int, int], max_tiles: int, tile_size: int
) -> tuple[int, int]:
    """
    选择画布尺寸

    优先选择能放大的布局中放大倍数最小的；都需要缩小时选缩小最少的。
    倍数相同时取面积最小的画布。
    """
    image_width, image_height = image_size
    canvases = [
        (width * tile_size, height * tile_size)
        for width, height in supported_aspect_ratios(max_tiles)
    ]
    scales = [
        min(canvas_w / image_width, canvas_h / image_height)
        for canvas_w, canvas_h in canvases
    ]

    upscales = [scale for scale in scales if scale >= 1]
    selected = min(upscales) if upscales else max(scales)

    candidates = [
        canvas for canvas, scale in zip(canvases, scales) if scale == selected
    ]
    return min(candidates, key=lambda canvas: canvas[0] * canvas[1])


def fit_to_canvas(
    image_size: tuple[int, int], canvas_size: tuple[int, int], tile_size: int
) -> tuple[int, int]:
    """保持宽高比，把图片缩放到画布内的尺寸"""
    image_width, image_height = image_size
    canvas_width, canvas_height = canvas_size

    target_width = min(max(image_width, tile_size), canvas_width)
    target_height = min(max(image_height, tile_size), canvas_height)

    scale_width = target_width / image_width
    scale_height = target_height / image_height

    if scale_width < scale_height:
        new_width = target_width
        new_height = min(int(image_height * scale_width), target_height)
    else:
        new_height = target_height
        new_width = min(int(image_width * scale_height), target_width)

    return max(new_width, 1), max(new_height, 1)


def _decode(raw: bytes) -> Image.Image:
    try:
        image = Image.open(io.BytesIO(raw))
        image.load()
    except (UnidentifiedImageError, OSError) as e:
        raise ImageDecodeError("无法解码图片", details={"error": str(e)}) from e

    # 透明通道合成到白色背景上
    if image.mode in ("RGBA", "LA", "P"):
        image = image.convert("RGBA")
        background = Image.new("RGBA", image.size, (255, 255, 255, 255))
        image = Image.alpha_composite(background, image)
    return image.convert("RGB")


def _split_tiles(pixels: np.ndarray, tile_size: int) -> np.ndarray:
    """(H, W, C) -> (tiles, C, tile, tile)，按行优先顺序切块"""
    height, width, channels = pixels.shape
    rows, cols = height // tile_size, width // tile_size
    tiles = pixels.reshape(rows, tile_size, cols, tile_size, channels)
    tiles = tiles.transpose(0, 2, 4, 1, 3)
    return tiles.reshape(rows * cols, channels, tile_size, tile_size)


def preprocess(
    raw: bytes,
    tile_size: int | None = None,
    max_tiles: int | None = None,
) -> tuple[bytes, dict]:
    """
    预处理单张图片

    Args:
        raw: 原始图片字节
        tile_size: 分块边长，默认 settings.MLLAMA_TILE_SIZE
        max_tiles: 最大分块数，默认 settings.MLLAMA_MAX_TILES

    Returns:
        (float32 张量字节, {"aspectRatioIndex": int, "numTiles": int})

    Raises:
        ImageDecodeError: 图片无法解码
    """
    tile_size = tile_size or settings.MLLAMA_TILE_SIZE
    max_tiles = max_tiles or settings.MLLAMA_MAX_TILES

    image = _decode(raw)
    canvas = optimal_tiled_canvas(image.size, max_tiles, tile_size)
    new_size = fit_to_canvas(image.size, canvas, tile_size)

    resized = image.resize(new_size, Image.Resampling.BILINEAR)
    padded = Image.new("RGB", canvas, (0, 0, 0))
    padded.paste(resized, (0, 0))

    pixels = np.asarray(padded, dtype=np.float32) / 255.0
    pixels = (pixels - CLIP_MEAN) / CLIP_STD

    tiles = _split_tiles(pixels, tile_size)
    num_tiles = tiles.shape[0]
    if num_tiles < max_tiles:
        filler = np.zeros(
            (max_tiles - num_tiles, *tiles.shape[1:]), dtype=np.float32
        )
        tiles = np.concatenate([tiles, filler])

    ratio = (canvas[0] // tile_size, canvas[1] // tile_size)
    aspect_ratio_index = supported_aspect_ratios(max_tiles).index(ratio) + 1

    logger.debug(
        "图片预处理完成: size=%s, canvas=%s, tiles=%d, aspect_ratio_index=%d",
        image.size,
        canvas,
        num_tiles,
        aspect_ratio_index,
    )
    return tiles.astype("<f4").tobytes(), {
        "aspectRatioIndex": aspect_ratio_index,
        "numTiles": num_tiles,
    }
