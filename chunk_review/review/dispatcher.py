"""
Chunk Dispatcher（把 chunk 发给 LLM，带并发控制/退避/重试）。

关键约束：
- **顺序**：输出第 i 个元素永远对应第 i 个输入 chunk（按位置写入，不依赖完成顺序）
- **自适应并发**：chunk 数 <= sequential_threshold 时串行 + 固定间隔；否则按固定大小 batch 并发，batch 之间留间隔
- **失败不扩散**：单个 chunk 失败只得到 `ChunkFailure`，不会中断整个 run
- **取消**：可选 `asyncio.Event`，只在 chunk/batch 之间检查；已经发出的 chunk 会走完自己的重试流程

错误分类（每个 chunk 最多 max_retries 次尝试）：
- 5xx / 超时 / 网络错误 / 2xx 但结构不对或文本为空 -> 指数退避后重试
- 429 -> 按 `retry-after` 等待（没有就 2^attempt 秒）后重试
- 400 且错误信息提到 token -> 不重试，直接返回 token 超限占位结果
- 其他非 2xx -> 不重试，直接失败
"""

from __future__ import annotations

import asyncio
import logging
import math
from collections.abc import Awaitable, Callable, Sequence

import httpx

from chunk_review.config import ReviewConfig
from chunk_review.infra.rate_limit import backoff_seconds
from chunk_review.infra.rate_limit import rate_limit_wait_seconds
from chunk_review.llm.client import LLMTransport
from chunk_review.llm.providers import LLMProvider
from chunk_review.llm.providers import parse_error_message
from chunk_review.review.models import Chunk
from chunk_review.review.models import ChunkFailure
from chunk_review.review.models import ChunkResult
from chunk_review.review.models import ChunkSuccess
from chunk_review.review.models import ChunkTokenLimitExceeded
from chunk_review.review.prompts import build_chunk_prompt
from chunk_review.review.prompts import build_token_limit_placeholder

logger = logging.getLogger(__name__)

Sleep = Callable[[float], Awaitable[None]]


def estimate_tokens(prompt: str, payload: str) -> int:
    """粗略估算：代码约 4 个字符一个 token。"""
    return math.ceil((len(prompt) + len(payload)) / 4)


def count_succeeded(results: Sequence[ChunkResult]) -> int:
    return sum(1 for r in results if not isinstance(r, ChunkFailure))


class ChunkDispatcher:
    """按配置的并发策略把 chunk 逐个/分批发送给 LLM provider。"""

    def __init__(
        self,
        config: ReviewConfig,
        provider: LLMProvider,
        transport: LLMTransport,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        """
        - config: 冻结配置（并发/间隔/重试/阈值）
        - provider: 负责请求/响应形状
        - transport: 负责真正发 HTTP
        - sleep: 可注入（测试里替换成记录等待时长的 fake）
        """
        self._config = config
        self._provider = provider
        self._transport = transport
        self._sleep = sleep

    async def run_all(
        self,
        prompt: str,
        chunks: Sequence[Chunk],
        cancel_event: asyncio.Event | None = None,
    ) -> list[ChunkResult]:
        """
        处理全部 chunk，返回与输入等长、同序的结果列表。

        - 串行路径：每个请求之间等待 request_delay_ms
        - 并发路径：每个 batch 用 gather 等全部结束后再进入下一个 batch
        """
        total = len(chunks)
        results: list[ChunkResult | None] = [None] * total
        delay = self._config.request_delay_ms / 1000.0

        if total <= self._config.sequential_threshold:
            logger.info(f"Processing {total} chunks sequentially (small batch)")
            for position, chunk in enumerate(chunks):
                if cancel_event is not None and cancel_event.is_set():
                    logger.warning(f"Review cancelled before chunk {position + 1}/{total}")
                    break
                logger.info(f"Processing chunk {position + 1}/{total}")
                results[position] = await self.call_chunk(prompt=prompt, chunk=chunk, position=position, total=total)
                if position + 1 < total:
                    logger.info(f"Waiting {self._config.request_delay_ms}ms before next request...")
                    await self._sleep(delay)
        else:
            batch_size = min(self._config.max_concurrent_requests, total)
            logger.info(f"Processing {total} chunks with controlled concurrency (max {batch_size})")
            for start in range(0, total, batch_size):
                if cancel_event is not None and cancel_event.is_set():
                    logger.warning(f"Review cancelled before batch starting at chunk {start + 1}/{total}")
                    break
                batch = chunks[start : start + batch_size]
                batch_results = await asyncio.gather(
                    *(
                        self.call_chunk(prompt=prompt, chunk=chunk, position=start + offset, total=total)
                        for offset, chunk in enumerate(batch)
                    )
                )
                for offset, result in enumerate(batch_results):
                    results[start + offset] = result
                if start + batch_size < total:
                    logger.info(f"Waiting {self._config.request_delay_ms}ms before next batch...")
                    await self._sleep(delay)

        final: list[ChunkResult] = [
            r if r is not None else ChunkFailure(chunk_index=i, reason="cancelled", attempts=0)
            for i, r in enumerate(results)
        ]
        succeeded = count_succeeded(final)
        if succeeded < total:
            logger.warning(f"Only {succeeded}/{total} chunks processed successfully")
        else:
            logger.info(f"Successfully processed {succeeded}/{total} chunks")
        return final

    async def call_chunk(self, prompt: str, chunk: Chunk, position: int, total: int) -> ChunkResult:
        """
        发送单个 chunk（带重试）。

        - position/total：用于 chunk 上下文 prompt 与日志（0-based position）
        - 永远不抛异常：成功 -> `ChunkSuccess`；token 超限 -> `ChunkTokenLimitExceeded`；其他 -> `ChunkFailure`
        """
        max_retries = self._config.max_retries
        label = f"chunk {position + 1}/{total}"

        # 只做提示，不拦截：真正的上限以 provider 的错误响应为准
        estimated = estimate_tokens(prompt, chunk.content)
        if estimated > self._config.token_warning_threshold:
            logger.warning(f"Chunk {position + 1} estimated at {estimated} tokens - may exceed limits")

        request = self._provider.build_request(
            prompt=build_chunk_prompt(prompt=prompt, chunk_index=position, total_chunks=total),
            payload=chunk.content,
        )

        last_reason = "no attempts made"
        for attempt in range(1, max_retries + 1):
            is_last = attempt == max_retries
            logger.info(f"Calling {self._provider.name.upper()} LLM for {label} (attempt {attempt}/{max_retries})...")

            try:
                response = await self._transport.send(url=request.url, headers=request.headers, body=request.body)
            except httpx.TimeoutException:
                last_reason = f"request timed out after {self._config.request_timeout_seconds}s"
                await self._backoff(label=label, attempt=attempt, reason=last_reason, is_last=is_last)
                continue
            except httpx.TransportError as exc:
                last_reason = f"transport error: {exc}"
                await self._backoff(label=label, attempt=attempt, reason=last_reason, is_last=is_last)
                continue

            if not response.ok:
                message = parse_error_message(response.text)
                status = response.status_code

                if status == 429:
                    last_reason = f"rate limited (429): {message}"
                    if not is_last:
                        wait = rate_limit_wait_seconds(headers=response.headers, attempt=attempt)
                        logger.warning(
                            f"Rate limit hit for chunk {position + 1}. Waiting {wait:g}s (attempt {attempt}/{max_retries})..."
                        )
                        await self._sleep(wait)
                    continue

                if status == 400 and "token" in message.lower():
                    logger.error(f"Token limit exceeded for chunk {position + 1}: {message}")
                    logger.warning(f"Creating summary review for chunk {position + 1} instead")
                    return ChunkTokenLimitExceeded(
                        chunk_index=chunk.index,
                        text=build_token_limit_placeholder(chunk_index=position, total_chunks=total),
                    )

                if status >= 500:
                    last_reason = f"server error ({status}): {message}"
                    await self._backoff(label=label, attempt=attempt, reason=last_reason, is_last=is_last)
                    continue

                logger.error(f"{self._provider.name.upper()} API error for {label}: {status} - {message}")
                return ChunkFailure(chunk_index=chunk.index, reason=f"HTTP {status}: {message}", attempts=attempt)

            try:
                text = self._provider.parse_response(response.json())
            except ValueError as exc:
                last_reason = str(exc)
                await self._backoff(label=label, attempt=attempt, reason=last_reason, is_last=is_last)
                continue

            logger.info(f"Received valid response for {label} ({len(text)} chars)")
            return ChunkSuccess(chunk_index=chunk.index, text=text)

        logger.error(f"LLM review failed for chunk {position + 1} after {max_retries} attempts: {last_reason}")
        return ChunkFailure(chunk_index=chunk.index, reason=last_reason, attempts=max_retries)

    async def _backoff(self, label: str, attempt: int, reason: str, is_last: bool) -> None:
        if is_last:
            return
        delay = backoff_seconds(attempt=attempt, base_delay_ms=self._config.retry_base_delay_ms)
        logger.warning(
            f"Attempt {attempt}/{self._config.max_retries} failed for {label} ({reason}). Retrying in {delay * 1000:.0f}ms..."
        )
        await self._sleep(delay)
