"""
LLM 客户端模块 (LLM Client Module)
=================================

封装 OpenAI 兼容 API 的视觉调用 vision_json，
包含重试、Token 统计、JSON 解析等能力。
"""

from __future__ import annotations

import asyncio
import base64
import json
import re
import threading
import time
from dataclasses import dataclass
from functools import partial
from typing import Any, Dict, List, Optional, Union

import httpx
from openai import AsyncOpenAI
from tenacity import Retrying, retry_if_exception_type, stop_after_attempt, wait_exponential
from medscan.config import get_settings
from medscan.logger import get_logger

logger = get_logger(__name__)


RE_JSON_BLOCK = re.compile(r"```(?:json)?\s*(\{.*\}|\[.*\])\s*```", re.DOTALL)


@dataclass(frozen=True)
class RetryConfig:
    """
    重试配置数据类，不可变。
    属性: max_attempts, min_wait_seconds, max_wait_seconds, backoff_multiplier
    """
    max_attempts: int
    min_wait_seconds: float
    max_wait_seconds: float
    backoff_multiplier: float


class TokenTracker:
    """
    Token 使用追踪器，累计多次 LLM 请求的 token 消耗。
    """

    def __init__(self) -> None:
        self.reset()

    def update(self, response: Any) -> None:
        """根据响应更新 token 统计。"""
        usage = getattr(response, "usage", None)
        if usage is None:
            return
        input_tokens = int(getattr(usage, "prompt_tokens", 0) or 0)
        output_tokens = int(getattr(usage, "completion_tokens", 0) or 0)
        total_tokens = int(getattr(usage, "total_tokens", 0) or (input_tokens + output_tokens))
        self._usage["input_tokens"] += input_tokens
        self._usage["output_tokens"] += output_tokens
        self._usage["total_tokens"] += total_tokens
        self._usage["requests_count"] += 1
        logger.debug(
            "Token usage: input=%d, output=%d, total=%d (cumulative=%d)",
            input_tokens,
            output_tokens,
            total_tokens,
            self._usage["total_tokens"],
        )

    def get(self) -> Dict[str, int]:
        """返回当前 token 使用统计的副本。"""
        return dict(self._usage)

    def reset(self) -> None:
        """重置统计。"""
        self._usage: Dict[str, int] = {
            "input_tokens": 0,
            "output_tokens": 0,
            "total_tokens": 0,
            "requests_count": 0,
        }


class JSONParser:
    """
    轻量 JSON 解析器，用于解析模型响应。

    主路径期望严格 JSON（通过 response_format=json_object 启用）。
    回退支持 Markdown 代码块和括号平衡切片。
    """

    @staticmethod
    def parse(text: str) -> Union[dict, list]:
        """
        解析文本为 JSON 对象或数组。
        失败时返回包含 error、raw_output、parse_error 的字典。
        """
        raw = (text or "").strip()
        if not raw:
            return {"error": "json_parse_error", "raw_output": "", "parse_error": "empty_output"}

        try:
            return json.loads(raw)
        except json.JSONDecodeError:
            pass

        block = RE_JSON_BLOCK.search(raw)
        if block:
            try:
                return json.loads(block.group(1))
            except json.JSONDecodeError:
                pass

        sliced = JSONParser._extract_balanced_json(raw)
        if sliced is not None:
            try:
                return json.loads(sliced)
            except json.JSONDecodeError:
                pass

        return {
            "error": "json_parse_error",
            "raw_output": raw[:5000],
            "parse_error": "unable_to_parse_json",
        }

    @staticmethod
    def _extract_balanced_json(text: str) -> Optional[str]:
        """从文本中提取括号平衡的 JSON 片段。"""
        start_positions = [idx for idx in (text.find("{"), text.find("[")) if idx != -1]
        if not start_positions:
            return None
        start = min(start_positions)
        opener = text[start]
        closer = "}" if opener == "{" else "]"
        depth = 0
        for idx in range(start, len(text)):
            char = text[idx]
            if char == opener:
                depth += 1
            elif char == closer:
                depth -= 1
                if depth == 0:
                    return text[start : idx + 1]
        return None


def _log_retry(
    retry_state: Any,
    client: "LLMClient",
    method: str,
    step: Optional[str] = None,
    filename: Optional[str] = None,
) -> None:
    client._set_last_call_retry(retry_state.attempt_number)
    logger.warning(
        "LLM %s retrying (attempt %d/%d) | step=%s | model=%s | filename=%s | error=%s",
        method,
        retry_state.attempt_number,
        client.retry_config.max_attempts,
        step,
        client.vision_model,
        filename,
        str(retry_state.outcome.exception()) if retry_state.outcome else "unknown",
    )


# Module-level singleton instance
_llm_client_instance: Optional["LLMClient"] = None


def get_llm_client() -> "LLMClient":
    """
    获取 LLMClient 单例。

    确保整个应用只创建一个 LLMClient 并复用。
    """
    global _llm_client_instance
    if _llm_client_instance is None:
        logger.debug("Creating new LLMClient singleton instance")
        _llm_client_instance = LLMClient()
    return _llm_client_instance


def reset_llm_client() -> None:
    """
    重置 LLMClient 单例。

    用于测试或配置变更后需要重新创建客户端时。
    """
    global _llm_client_instance
    _llm_client_instance = None
    logger.debug("LLMClient singleton instance reset")


class LLMClient:
    """
    LLM 客户端，封装 OpenAI 兼容 API 的异步视觉调用。

    内置重试、Token 统计、JSON 解析等。
    """
    def __init__(self) -> None:
        settings = get_settings()
        timeout = httpx.Timeout(settings.REQUEST_TIMEOUT, connect=10.0)
        self.client = AsyncOpenAI(
            api_key=settings.OPENAI_API_KEY,
            base_url=settings.OPENAI_BASE_URL,
            timeout=timeout,
        )
        self.vision_model = settings.OPENAI_VISION_MODEL
        self.temperature = settings.TEMPERATURE
        self.timeout = settings.REQUEST_TIMEOUT
        self.retry_config = RetryConfig(
            max_attempts=int(getattr(settings, "LLM_RETRY_MAX_ATTEMPTS", 3)),
            min_wait_seconds=float(getattr(settings, "LLM_RETRY_MIN_WAIT_SECONDS", 2.0)),
            max_wait_seconds=float(getattr(settings, "LLM_RETRY_MAX_WAIT_SECONDS", 10.0)),
            backoff_multiplier=float(getattr(settings, "LLM_RETRY_BACKOFF_MULTIPLIER", 1.0)),
        )
        self.token_tracker = TokenTracker()
        self._last_call_info: Optional[Dict[str, Any]] = None
        logger.info("LLMClient initialized with vision_model=%s", self.vision_model)

    def _set_last_call_start(self, *, step: Optional[str], prompt_len: int, images: int) -> float:
        start_time = time.time()
        self._last_call_info = {
            "step": step,
            "method": "vision_json",
            "model": self.vision_model,
            "timeout": self.timeout,
            "prompt_chars": prompt_len,
            "images": images,
            "status": "in_progress",
            "start_time": start_time,
            "retries": 0,
        }
        return start_time

    def _set_last_call_end(self, start_time: float, status: str, error: Optional[str] = None) -> None:
        if self._last_call_info is None:
            self._last_call_info = {}
        end_time = time.time()
        self._last_call_info.update(
            {"status": status, "end_time": end_time, "elapsed_ms": int((end_time - start_time) * 1000)}
        )
        if error:
            self._last_call_info["error"] = error

    def _set_last_call_retry(self, attempts: int) -> None:
        if self._last_call_info is None:
            self._last_call_info = {"retries": attempts}
        else:
            self._last_call_info["retries"] = attempts

    def get_last_call_info(self) -> Optional[Dict[str, Any]]:
        return dict(self._last_call_info) if self._last_call_info else None

    def get_token_usage(self) -> Dict[str, int]:
        return self.token_tracker.get()

    def reset_token_usage(self) -> None:
        self.token_tracker.reset()
        logger.debug("Token usage statistics reset")

    @staticmethod
    def encode_image(payload: bytes, mime_type: str) -> str:
        """将图片字节编码为 data URL。"""
        data = base64.b64encode(payload).decode("utf-8")
        return f"data:{mime_type};base64,{data}"

    def _build_vision_messages(
        self,
        prompt: str,
        images: List[Dict[str, Any]],
        system: Optional[str],
    ) -> List[Dict[str, Any]]:
        messages: List[Dict[str, Any]] = []
        if system:
            messages.append({"role": "system", "content": system})

        content: List[Dict[str, Any]] = [{"type": "text", "text": prompt}]
        for image in images:
            url = self.encode_image(image["data"], image.get("mime_type") or "image/jpeg")
            content.append({"type": "image_url", "image_url": {"url": url}})
        messages.append({"role": "user", "content": content})
        return messages

    @staticmethod
    def _run_sync(coro: Any) -> Any:
        """
        Run a coroutine from sync context.

        - Preferred path: `asyncio.run` (script/worker context).
        - Fallback: if already inside a running loop, execute in a helper thread.
        """
        try:
            return asyncio.run(coro)
        except RuntimeError as exc:
            if "asyncio.run() cannot be called from a running event loop" not in str(exc):
                raise

            holder: Dict[str, Any] = {}

            def _runner() -> None:
                try:
                    holder["result"] = asyncio.run(coro)
                except Exception as thread_exc:  # noqa: BLE001
                    holder["error"] = thread_exc

            thread = threading.Thread(target=_runner, daemon=True)
            thread.start()
            thread.join()
            if "error" in holder:
                raise holder["error"]
            return holder.get("result")

    async def _vision_json_async(
        self,
        prompt: str,
        images: List[Dict[str, Any]],
        system: Optional[str] = None,
        temperature: Optional[float] = None,
        step: Optional[str] = None,
        filename: Optional[str] = None,
    ) -> Union[dict, list]:
        messages = self._build_vision_messages(prompt, images=images, system=system)
        temp = self.temperature if temperature is None else temperature
        logger.info(
            "LLM vision_json start | step=%s | model=%s | timeout=%s | prompt_chars=%d | images=%d | filename=%s",
            step,
            self.vision_model,
            self.timeout,
            len(prompt),
            len(images),
            filename,
        )
        start = self._set_last_call_start(step=step, prompt_len=len(prompt), images=len(images))
        try:
            response = await self.client.chat.completions.create(
                model=self.vision_model,
                messages=messages,
                temperature=temp,
                response_format={"type": "json_object"},
            )
        except Exception as exc:
            self._set_last_call_end(start, "error", error=str(exc))
            raise

        self.token_tracker.update(response)
        content = (response.choices[0].message.content or "").strip()
        self._set_last_call_end(start, "ok")
        logger.info(
            "LLM vision_json done | step=%s | elapsed_ms=%d | retries=%d | filename=%s",
            step,
            self._last_call_info.get("elapsed_ms", 0) if self._last_call_info else 0,
            self._last_call_info.get("retries", 0) if self._last_call_info else 0,
            filename,
        )
        return JSONParser.parse(content)

    def vision_json(
        self,
        prompt: str,
        images: List[Dict[str, Any]],
        system: Optional[str] = None,
        temperature: Optional[float] = None,
        step: Optional[str] = None,
        filename: Optional[str] = None,
    ) -> Union[dict, list]:
        """
        调用视觉模型并解析 JSON。

        images 为 {"data": bytes, "mime_type": str} 列表。
        传输异常在重试耗尽后抛出（次数与退避由 retry_config 决定）；
        解析失败返回 JSONParser 的错误字典。
        """
        cfg = self.retry_config
        retrying = Retrying(
            stop=stop_after_attempt(cfg.max_attempts),
            wait=wait_exponential(
                multiplier=cfg.backoff_multiplier,
                min=cfg.min_wait_seconds,
                max=cfg.max_wait_seconds,
            ),
            retry=retry_if_exception_type((Exception,)),
            before_sleep=partial(_log_retry, client=self, method="vision_json", step=step, filename=filename),
            reraise=True,
        )
        return retrying(
            lambda: self._run_sync(
                self._vision_json_async(
                    prompt=prompt,
                    images=images,
                    system=system,
                    temperature=temperature,
                    step=step,
                    filename=filename,
                )
            )
        )
