import os
from functools import lru_cache
from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    # --- 目录配置 ---
    BASE_DIR: Path = Path(__file__).resolve().parent.parent.parent
    LOG_DIR: Path = BASE_DIR / "logs/promptcore"

    # --- 项目信息 ---
    PROJECT_NAME: str = "Chat Prompt Core"
    VERSION: str = "0.1.0"

    # --- 模型与上下文配置 ---
    LLM_MODEL_NAME: str = "llama3.2:latest"
    LLM_MAX_CONTEXT_TOKENS: int = 2048  # 请求未指定 num_ctx 时的默认预算

    # --- Tokenizer 配置 ---
    TOKENIZER_ENCODING: str = "cl100k_base"

    # --- 图片配置 ---
    IMAGE_PLACEHOLDER: str = "[img]"  # 用户在正文中标记图片位置的占位符
    # 每张图片占用的 Token 数（近似值，真实值取决于具体的视觉编码器）
    MLLAMA_IMAGE_NUM_TOKENS: int = 1
    CLIP_IMAGE_NUM_TOKENS: int = 768
    MLLAMA_TILE_SIZE: int = 560
    MLLAMA_MAX_TILES: int = 4

    # Pydantic Settings 配置
    model_config = SettingsConfigDict(
        env_file=".env" if os.path.exists(".env") else None,
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )


@lru_cache
def get_settings() -> Settings:
    return Settings()


settings = get_settings()
