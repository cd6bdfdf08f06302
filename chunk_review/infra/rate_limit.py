from __future__ import annotations

"""
限流/退避计算（纯函数）。

为什么需要这个模块：
- provider 的 429 会带 `retry-after`，没有时才用指数退避
- 5xx / 超时 / 空响应用统一的指数退避（base * 2^(attempt-1)）
- 保持纯函数，dispatcher 只负责 sleep，便于单元测试断言等待时长
"""

from collections.abc import Mapping


def parse_retry_after_seconds(headers: Mapping[str, str]) -> int | None:
    """
    解析 `retry-after` header（只支持整数秒）。

    - 缺失/非整数/非正数 -> None（由调用方回退到指数退避）
    """
    raw = None
    for key, value in headers.items():
        if key.lower() == "retry-after":
            raw = value
            break
    if raw is None:
        return None
    try:
        seconds = int(raw.strip())
    except ValueError:
        return None
    if seconds <= 0:
        return None
    return seconds


def rate_limit_wait_seconds(headers: Mapping[str, str], attempt: int) -> float:
    """429 的等待时长：优先 provider 提示，否则 2^attempt 秒。"""
    if attempt <= 0:
        raise ValueError("attempt must be > 0")
    hinted = parse_retry_after_seconds(headers)
    if hinted is not None:
        return float(hinted)
    return float(2**attempt)


def backoff_seconds(attempt: int, base_delay_ms: int) -> float:
    """
    指数退避：attempt=1 -> base，attempt=2 -> 2*base，attempt=3 -> 4*base。

    - attempt: 从 1 开始的尝试序号
    - base_delay_ms: 基础等待（毫秒）
    """
    if attempt <= 0:
        raise ValueError("attempt must be > 0")
    if base_delay_ms < 0:
        raise ValueError("base_delay_ms must be >= 0")
    return base_delay_ms * (2 ** (attempt - 1)) / 1000.0
