"""
LLM HTTP transport（基于 httpx.AsyncClient）。

目标：
- **尽量薄**：只做一次 POST，把 status/headers/body 原样交回
- **不做重试**：重试/退避/降级策略全部由 dispatcher 控制
- **超时**：每次调用固定 wall-clock 超时；`httpx.TimeoutException` 原样抛出，由上游判定为 transient
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any

import httpx

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LLMHttpResponse:
    """一次 LLM HTTP 调用的原始结果。"""

    status_code: int
    headers: dict[str, str]
    text: str

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 300

    def json(self) -> Any:
        """解析 body 为 JSON；非法 JSON 抛 `ValueError`。"""
        try:
            return json.loads(self.text)
        except json.JSONDecodeError as exc:
            raise ValueError(f"LLM response body is not valid JSON: {self.text[:200]}") from exc


class LLMTransport:
    """复用 httpx.AsyncClient 连接池的 provider 无关 transport。"""

    def __init__(self, http_client: httpx.AsyncClient, timeout_seconds: float) -> None:
        """
        - http_client: 复用的 httpx.AsyncClient
        - timeout_seconds: 单次请求超时（秒）
        """
        if timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be > 0")
        self._http_client = http_client
        self._timeout = httpx.Timeout(timeout_seconds)

    async def send(self, url: str, headers: dict[str, str], body: dict[str, Any]) -> LLMHttpResponse:
        """
        POST JSON 并返回原始响应。

        注意：
        - 非 2xx 不抛异常（由 dispatcher 按 status 分类）
        - 网络错误/超时直接抛出
        """
        try:
            response = await self._http_client.post(url, headers=headers, json=body, timeout=self._timeout)
        except httpx.TimeoutException:
            logger.error(f"LLM request timed out: {url}")
            raise
        except httpx.HTTPError as exc:
            logger.error(f"LLM HTTP error: {exc}")
            raise

        logger.debug(f"LLM response: status={response.status_code}, {len(response.text)} chars")
        return LLMHttpResponse(
            status_code=response.status_code,
            headers={k.lower(): v for k, v in response.headers.items()},
            text=response.text,
        )
