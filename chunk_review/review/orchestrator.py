"""
Review Orchestrator（核心流程编排）。

关键思想：
- **流程由工程代码控制**：Chunker -> Dispatcher -> Aggregator -> Decision，参数显式传递
- **LLM 只负责“生成结构化输出”**：合并与判定都是确定性代码

失败策略：
- 缺 API key / provider 不支持：在任何网络调用前直接抛错（整个 run 无法进行）
- 其他一切 chunk 级失败都不会抛出 core 边界：run 总会给出一个 `ReviewOutput`
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Sequence
from dataclasses import dataclass

import anyio
import httpx

from chunk_review.config import ReviewConfig
from chunk_review.llm.client import LLMTransport
from chunk_review.llm.providers import build_provider
from chunk_review.review.aggregator import combine_chunk_results
from chunk_review.review.chunker import byte_size
from chunk_review.review.chunker import render_bundle
from chunk_review.review.chunker import split_diff_bundle
from chunk_review.review.decision import build_verdict
from chunk_review.review.dispatcher import ChunkDispatcher
from chunk_review.review.dispatcher import Sleep
from chunk_review.review.dispatcher import count_succeeded
from chunk_review.review.dispatcher import estimate_tokens
from chunk_review.review.models import ChunkFailure
from chunk_review.review.models import ChunkResult
from chunk_review.review.models import DiffBundle
from chunk_review.review.models import ReviewOutput
from chunk_review.review.prompts import build_review_prompt
from chunk_review.vcs.git import DiffSource
from chunk_review.vcs.git import build_diff_bundle

logger = logging.getLogger(__name__)


class MissingCredentialsError(RuntimeError):
    """没有配置当前 provider 的 API key。"""


@dataclass(frozen=True)
class ReviewOrchestrator:
    """Orchestrator 运行时依赖集合。"""

    config: ReviewConfig
    dispatcher: ChunkDispatcher


def build_review_orchestrator(
    config: ReviewConfig,
    http_client: httpx.AsyncClient,
    provider_url: str | None = None,
    sleep: Sleep = asyncio.sleep,
) -> ReviewOrchestrator:
    """
    组装 orchestrator。

    - provider_url：覆盖 provider 默认 endpoint（本地 mock / 代理）
    - 失败：缺 key 抛 `MissingCredentialsError`；provider 不支持抛 `UnsupportedProviderError`
    """
    if not config.api_key:
        raise MissingCredentialsError(f"No {config.provider.upper()} API key found. Skipping LLM review.")
    provider = build_provider(config, url=provider_url)
    transport = LLMTransport(http_client=http_client, timeout_seconds=config.request_timeout_seconds)
    dispatcher = ChunkDispatcher(config=config, provider=provider, transport=transport, sleep=sleep)
    return ReviewOrchestrator(config=config, dispatcher=dispatcher)


def build_review_output(results: Sequence[ChunkResult], config: ReviewConfig) -> ReviewOutput:
    """把 dispatcher 结果交给 aggregator + decision，组装对外输出。"""
    total = len(results)
    succeeded = count_succeeded(results)
    raw_texts = ["" if isinstance(r, ChunkFailure) else r.text for r in results]

    if succeeded == 0:
        logger.error("All LLM API calls failed")
        return ReviewOutput(
            block_merge=False,
            raw_per_chunk_text=raw_texts,
            strategy="none",
            manual_review_recommended=True,
            chunks_total=total,
            chunks_succeeded=0,
        )

    aggregated = combine_chunk_results(results, keyword_min=config.legacy_critical_keyword_min)
    verdict = build_verdict(aggregated, confidence_threshold=config.critical_confidence_threshold)
    return ReviewOutput(
        block_merge=verdict.block_merge,
        issues=verdict.issues,
        raw_per_chunk_text=raw_texts,
        critical_count=verdict.critical_count,
        suggestion_count=verdict.suggestion_count,
        summary=" ".join(aggregated.summaries),
        strategy=aggregated.strategy,
        manual_review_recommended=aggregated.manual_review_recommended,
        chunks_total=total,
        chunks_succeeded=succeeded,
    )


async def review_bundle(
    orchestrator: ReviewOrchestrator,
    bundle: DiffBundle,
    prompt: str | None = None,
    cancel_event: asyncio.Event | None = None,
) -> ReviewOutput:
    """
    对一个 DiffBundle 跑完整 review。

    - prompt：默认按配置语言生成
    - cancel_event：只在 chunk/batch 之间生效
    """
    config = orchestrator.config
    if not bundle.files:
        logger.info("No changed files to review")
        return ReviewOutput(block_merge=False, strategy="none")

    review_prompt = prompt if prompt is not None else build_review_prompt(config.language)
    rendered = render_bundle(bundle)
    logger.info(
        f"Diff analysis: {len(bundle.files)} files, {round(byte_size(rendered) / 1024)}KB, "
        f"~{estimate_tokens(review_prompt, rendered)} tokens"
    )

    chunks = split_diff_bundle(
        bundle,
        max_chunk_bytes=config.chunk_max_bytes,
        max_reasonable_chunks=config.max_reasonable_chunks,
    )
    results = await orchestrator.dispatcher.run_all(prompt=review_prompt, chunks=chunks, cancel_event=cancel_event)
    output = build_review_output(results, config)
    if output.block_merge:
        logger.info("MERGE BLOCKED: critical issues detected")
    else:
        logger.info("MERGE APPROVED: no blocking issues detected")
    return output


async def run_review(
    orchestrator: ReviewOrchestrator,
    diff_source: DiffSource,
    cancel_event: asyncio.Event | None = None,
) -> ReviewOutput:
    """从 VCS collaborator 取 diff 并 review（base/head 来自配置）。"""
    config = orchestrator.config
    logger.info(f"Comparing {config.head_ref} against {config.base_ref}")
    # git 调用是同步阻塞的，放到线程里
    bundle = await anyio.to_thread.run_sync(build_diff_bundle, diff_source, config.base_ref, config.head_ref)
    return await review_bundle(orchestrator, bundle, cancel_event=cancel_event)
