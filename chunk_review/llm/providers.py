"""
LLM provider 适配（封闭集合）。

每个 provider 只负责三件事：
- **build_request**：URL + auth header + body 形状
- **parse_response**：校验 2xx 响应结构并取出文本（结构不对/文本为空 -> `MalformedResponseError`）
- **parse_error_message**：从错误响应体里取出可读的 message

新增 provider 只需要新写一个实现并注册到 `PROVIDERS`，dispatcher 不用改。
"""

from __future__ import annotations

import json
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Protocol

from chunk_review.config import ReviewConfig

OPENAI_URL = "https://api.openai.com/v1/chat/completions"
CLAUDE_URL = "https://api.anthropic.com/v1/messages"
ANTHROPIC_VERSION = "2023-06-01"

SYSTEM_PROMPT = (
    "You are a senior engineer performing a code review. Provide detailed, actionable feedback "
    "focusing on bugs, security issues, performance problems. Be specific and provide code examples "
    "when possible. Give merge decisions."
)


class UnsupportedProviderError(ValueError):
    """配置了不支持的 provider。"""


class MalformedResponseError(ValueError):
    """2xx 响应结构不符合 provider 约定，或提取出的文本为空。"""


@dataclass(frozen=True)
class LLMRequest:
    url: str
    headers: dict[str, str]
    body: dict[str, Any]


class LLMProvider(Protocol):
    name: str

    def build_request(self, prompt: str, payload: str) -> LLMRequest: ...

    def parse_response(self, data: Any) -> str: ...


def parse_error_message(error_text: str) -> str:
    """错误响应体：优先 `error.message`，其次 `message`，否则原文。"""
    try:
        data = json.loads(error_text)
    except (json.JSONDecodeError, TypeError):
        return error_text
    if isinstance(data, dict):
        error = data.get("error")
        if isinstance(error, dict) and isinstance(error.get("message"), str):
            return error["message"]
        if isinstance(data.get("message"), str):
            return data["message"]
    return error_text


def _require_text(text: Any, provider: str) -> str:
    if not isinstance(text, str) or not text.strip():
        raise MalformedResponseError(f"Empty or invalid response from {provider.upper()} API")
    return text


@dataclass(frozen=True)
class OpenAIProvider:
    """OpenAI chat completions（Bearer auth，`choices[0].message.content`）。"""

    api_key: str
    model: str
    max_tokens: int
    temperature: float
    url: str = OPENAI_URL
    name: str = "openai"

    def build_request(self, prompt: str, payload: str) -> LLMRequest:
        return LLMRequest(
            url=self.url,
            headers={
                "Content-Type": "application/json",
                "Authorization": f"Bearer {self.api_key}",
            },
            body={
                "model": self.model,
                "messages": [
                    {"role": "system", "content": SYSTEM_PROMPT},
                    {"role": "user", "content": f"{prompt}\n\n{payload}"},
                ],
                "max_tokens": self.max_tokens,
                "temperature": self.temperature,
            },
        )

    def parse_response(self, data: Any) -> str:
        choices = data.get("choices") if isinstance(data, dict) else None
        if not isinstance(choices, list) or not choices:
            raise MalformedResponseError("Invalid response structure from OPENAI API")
        first = choices[0]
        message = first.get("message") if isinstance(first, dict) else None
        content = message.get("content") if isinstance(message, dict) else None
        return _require_text(content, self.name)


@dataclass(frozen=True)
class ClaudeProvider:
    """Anthropic messages API（`x-api-key` auth，`content[0].text`）。"""

    api_key: str
    model: str
    max_tokens: int
    temperature: float
    url: str = CLAUDE_URL
    name: str = "claude"

    def build_request(self, prompt: str, payload: str) -> LLMRequest:
        return LLMRequest(
            url=self.url,
            headers={
                "Content-Type": "application/json",
                "x-api-key": self.api_key,
                "anthropic-version": ANTHROPIC_VERSION,
            },
            body={
                "model": self.model,
                "max_tokens": self.max_tokens,
                "temperature": self.temperature,
                "messages": [{"role": "user", "content": f"{prompt}\n\n{payload}"}],
            },
        )

    def parse_response(self, data: Any) -> str:
        content = data.get("content") if isinstance(data, dict) else None
        if not isinstance(content, list) or not content:
            raise MalformedResponseError("Invalid response structure from CLAUDE API")
        first = content[0]
        text = first.get("text") if isinstance(first, dict) else None
        return _require_text(text, self.name)


PROVIDERS: dict[str, Callable[..., LLMProvider]] = {
    "openai": OpenAIProvider,
    "claude": ClaudeProvider,
}


def build_provider(config: ReviewConfig, url: str | None = None) -> LLMProvider:
    """
    根据配置创建 provider。

    - url：可覆盖默认 endpoint（本地 mock server / 代理）
    - 失败：provider 未注册抛 `UnsupportedProviderError`；缺 key 抛 `ValueError`
    """
    provider_cls = PROVIDERS.get(config.provider)
    if provider_cls is None:
        raise UnsupportedProviderError(f"Unsupported LLM provider: {config.provider}")
    if not config.api_key:
        raise ValueError(f"No {config.provider.upper()} API key configured")
    kwargs: dict[str, Any] = {
        "api_key": config.api_key,
        "model": config.model,
        "max_tokens": config.max_tokens,
        "temperature": config.temperature,
    }
    if url is not None:
        kwargs["url"] = url
    return provider_cls(**kwargs)
