"""
提取器基类模块 (Base Extractor Module)
=====================================

为图片识别提取器提供统一接口和异常类型。
"""
from abc import ABC, abstractmethod
from typing import Optional

from medscan.ir import ExtractionResult
from medscan.llm import LLMClient


class ExtractionError(Exception):
    """视觉模型返回无法解析或缺少必需字段时抛出。"""


class BaseExtractor(ABC):
    """
    所有提取器的抽象基类。

    extract() 失败时直接抛出异常，由导入队列按条目捕获。
    """

    def __init__(self, llm: LLMClient, prompts: Optional[dict] = None):
        """
        初始化提取器。

        参数:
            llm: 具备视觉能力的 LLM 客户端
            prompts: 覆盖默认提示词的字典，可选
        """
        self.llm = llm
        self.prompts = prompts or {}

    @abstractmethod
    def extract(self, payload: bytes, mime_type: str, filename: Optional[str] = None) -> ExtractionResult:
        """
        从图片字节中识别结构化字段。

        抛出:
            ExtractionError: 响应无法解析或缺少字段
            Exception: 传输层异常（重试耗尽后原样抛出）
        """
        pass
