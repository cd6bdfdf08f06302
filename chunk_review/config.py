"""
应用配置加载。

设计目标：
- **不可变**：`ReviewConfig` 冻结，作为显式参数传入 chunker/dispatcher/aggregator/decision
- **类型安全**：使用 Pydantic 校验数值范围、provider 名称等，减少运行时踩坑
- **可测试**：核心加载函数接收 `environ` 显式输入，便于单元测试

注意：
- 缺少 API key 不在这里报错（只是“不能跑 review”），由 orchestrator 在任何网络调用前短路
- provider 不受支持则直接报错（启动即失败）
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError

ProviderName = Literal["openai", "claude"]

DEFAULT_MODELS: dict[str, str] = {
    "openai": "gpt-4o-mini",
    "claude": "claude-sonnet-4-20250514",
}

API_KEY_ENV_VARS: dict[str, str] = {
    "openai": "OPENAI_API_KEY",
    "claude": "CLAUDE_API_KEY",
}


class ReviewConfig(BaseModel):
    """一次 review 运行所需的全部配置（冻结，不允许运行中修改）。"""

    model_config = ConfigDict(frozen=True)

    # LLM provider
    provider: ProviderName = "claude"
    api_key: str | None = None
    model: str = DEFAULT_MODELS["claude"]
    max_tokens: int = Field(default=3000, gt=0)
    temperature: float = Field(default=0.0, ge=0.0, le=2.0)

    # VCS
    base_ref: str = "origin/develop"
    head_ref: str = "HEAD"
    language: str = "js"
    path_prefixes: tuple[str, ...] = ("packages/",)
    # git 命令的工作目录（None = 服务进程当前目录）；只能由部署方配置
    repo_dir: str | None = None

    # chunking / dispatch
    chunk_max_bytes: int = 300 * 1024
    max_concurrent_requests: int = Field(default=2, gt=0)
    sequential_threshold: int = Field(default=3, ge=0)
    request_delay_ms: int = Field(default=2000, ge=0)
    max_retries: int = Field(default=3, gt=0)
    retry_base_delay_ms: int = Field(default=1000, ge=0)
    request_timeout_seconds: float = Field(default=60.0, gt=0)
    token_warning_threshold: int = Field(default=180_000, gt=0)
    max_reasonable_chunks: int = Field(default=50, gt=0)

    # 策略常量：经验值，保持与历史 review 输出兼容
    critical_confidence_threshold: float = 0.6
    legacy_critical_keyword_min: int = 2


def _parse_int(environ: Mapping[str, str], key: str, errors: list[str]) -> int | None:
    raw = environ.get(key)
    if raw is None or raw == "":
        return None
    try:
        return int(raw)
    except ValueError:
        errors.append(f"{key} must be an integer, got {raw!r}")
        return None


def _parse_float(environ: Mapping[str, str], key: str, errors: list[str]) -> float | None:
    raw = environ.get(key)
    if raw is None or raw == "":
        return None
    try:
        return float(raw)
    except ValueError:
        errors.append(f"{key} must be a number, got {raw!r}")
        return None


def _parse_path_prefixes(raw: str) -> tuple[str, ...]:
    return tuple(p.strip() for p in raw.split(",") if p.strip())


def load_config_from_env(environ: Mapping[str, str]) -> ReviewConfig:
    """
    从环境变量加载并校验配置。

    - **输入**：`environ`（例如 `os.environ`）
    - **输出**：`ReviewConfig`
    - **失败**：provider 不支持 / 数值非法则抛 `ValueError`（一次列出所有问题）
    """
    errors: list[str] = []

    provider = (environ.get("LLM_PROVIDER") or "claude").strip().lower()
    if provider not in API_KEY_ENV_VARS:
        raise ValueError(f"Unsupported LLM provider: {provider!r} (expected one of: {', '.join(API_KEY_ENV_VARS)})")

    values: dict[str, object] = {
        "provider": provider,
        "api_key": environ.get(API_KEY_ENV_VARS[provider]) or None,
        "model": environ.get("LLM_MODEL") or DEFAULT_MODELS[provider],
    }

    str_keys = {
        "REVIEW_BASE_REF": "base_ref",
        "REVIEW_HEAD_REF": "head_ref",
        "REVIEW_LANGUAGE": "language",
        "REVIEW_REPO_DIR": "repo_dir",
    }
    for env_key, field_name in str_keys.items():
        if environ.get(env_key):
            values[field_name] = environ[env_key].strip()

    if environ.get("REVIEW_PATHS"):
        prefixes = _parse_path_prefixes(environ["REVIEW_PATHS"])
        if prefixes:
            values["path_prefixes"] = prefixes

    int_keys = {
        "LLM_MAX_TOKENS": "max_tokens",
        "CHUNK_MAX_BYTES": "chunk_max_bytes",
        "MAX_CONCURRENT_REQUESTS": "max_concurrent_requests",
        "BATCH_DELAY_MS": "request_delay_ms",
        "MAX_RETRIES": "max_retries",
        "TOKEN_WARNING_THRESHOLD": "token_warning_threshold",
    }
    for env_key, field_name in int_keys.items():
        parsed_int = _parse_int(environ, env_key, errors)
        if parsed_int is not None:
            values[field_name] = parsed_int

    float_keys = {
        "LLM_TEMPERATURE": "temperature",
        "REQUEST_TIMEOUT_SECONDS": "request_timeout_seconds",
    }
    for env_key, field_name in float_keys.items():
        parsed_float = _parse_float(environ, env_key, errors)
        if parsed_float is not None:
            values[field_name] = parsed_float

    if errors:
        raise ValueError(f"Invalid env vars: {'; '.join(errors)}")

    # 交给 Pydantic 做范围校验
    try:
        return ReviewConfig.model_validate(values)
    except ValidationError as exc:
        raise ValueError(f"Invalid review config: {exc}") from exc
