"""
配置模块 (Configuration Module)
==============================

从环境变量和 .env 文件加载应用配置，包括视觉模型 API、存储目录、同步等设置。
"""

from pydantic_settings import BaseSettings
from pydantic import field_validator
from dotenv import load_dotenv

load_dotenv()


class Settings(BaseSettings):
    """
    应用配置类，继承自 Pydantic BaseSettings，支持从环境变量自动加载。

    属性:
        OPENAI_BASE_URL: OpenAI 兼容 API 基础 URL
        OPENAI_API_KEY: API 密钥（必填）
        OPENAI_VISION_MODEL: 视觉模型，用于标签/白板识别
        TEMPERATURE: 生成温度，0 表示确定性输出
        REQUEST_TIMEOUT: 模型请求超时秒数
        LLM_RETRY_*: 重试相关配置
        STORAGE_DIR: 本地键值存储目录
        EXPORT_DIR: 导出文件目录
        SYNC_TIMEOUT: Webhook 同步请求超时秒数
        QUEUE_DISPLAY_DELAY_SECONDS: 已完成条目在队列中保留的秒数
        MAX_IMAGE_BYTES: 单张图片大小上限
    """
    OPENAI_BASE_URL: str = "https://api.openai.com/v1"
    OPENAI_API_KEY: str = ""
    OPENAI_VISION_MODEL: str = "gpt-4o-mini"
    TEMPERATURE: float = 0.0
    REQUEST_TIMEOUT: int = 60
    LLM_RETRY_MAX_ATTEMPTS: int = 3
    LLM_RETRY_MIN_WAIT_SECONDS: float = 2.0
    LLM_RETRY_MAX_WAIT_SECONDS: float = 10.0
    LLM_RETRY_BACKOFF_MULTIPLIER: float = 1.0
    STORAGE_DIR: str = ".medscan"
    EXPORT_DIR: str = "output"
    SYNC_TIMEOUT: float = 30.0
    QUEUE_DISPLAY_DELAY_SECONDS: float = 2.0
    MAX_IMAGE_BYTES: int = 5 * 1024 * 1024

    @field_validator("OPENAI_API_KEY")
    @classmethod
    def validate_api_key(cls, v: str) -> str:
        """
        校验 OPENAI_API_KEY 已设置且非空。

        若未配置则抛出 ValueError，提示用户检查 .env 文件。
        """
        if v is None or v.strip() == "":
            raise ValueError(
                "OPENAI_API_KEY is not set or empty. "
                "Please check your .env file and ensure OPENAI_API_KEY is configured."
            )
        return v

    class Config:
        env_file = ".env"
        case_sensitive = False


# 全局单例，避免重复加载配置
_settings_instance = None


def get_settings() -> Settings:
    """
    获取配置单例。

    首次调用时创建 Settings 实例并缓存，后续调用返回同一实例。
    """
    global _settings_instance
    if _settings_instance is None:
        _settings_instance = Settings()
    return _settings_instance

