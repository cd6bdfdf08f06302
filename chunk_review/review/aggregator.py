"""
Aggregator（多 chunk 结果合并）。

两种策略，由一个谓词选择：“是否至少有一个 JSON block 解析成功？”
- **structured**：从每个 chunk 文本中抽取所有 ```json fenced block，逐个解析；
  issue 打上来源 chunk index，summary 收集，metrics 计数求和，记录是否有 do_not_merge
- **heuristic**：一个都没解析成功时，对所有 chunk 文本做大小写不敏感的短语匹配（legacy 兜底）

确定性：
- 只依赖输入顺序（chunk 顺序 -> block 顺序 -> issue 顺序），不依赖时间/随机/字典迭代顺序
- 不修改输入对象
"""

from __future__ import annotations

import json
import logging
import re
from collections.abc import Sequence
from dataclasses import dataclass

from pydantic import ValidationError

from chunk_review.review.decision import compute_severity_score
from chunk_review.review.models import AggregatedReview
from chunk_review.review.models import ChunkFailure
from chunk_review.review.models import ChunkResult
from chunk_review.review.models import ChunkReview
from chunk_review.review.models import Issue

logger = logging.getLogger(__name__)

JSON_BLOCK_PATTERN = re.compile(r"```json\s*([\s\S]*?)\s*```")

APPROVAL_PHRASES: tuple[str, ...] = (
    "safe to merge",
    "✅ safe to merge",
    "merge approved",
    "no critical issues",
    "safe to commit",
    "approved for merge",
    "proceed with merge",
    "merge is safe",
)

BLOCKING_PHRASES: tuple[str, ...] = (
    "do not merge",
    "❌ do not merge",
    "block merge",
    "merge blocked",
    "not safe to merge",
    "critical issues found",
    "must be fixed",
    "blockers found",
)

CRITICAL_KEYWORDS: tuple[str, ...] = (
    "security vulnerability",
    "security issue",
    "critical bug",
    "memory leak",
    "race condition",
    "xss vulnerability",
    "authentication issue",
    "authorization problem",
)


@dataclass(frozen=True)
class ParsedBlock:
    chunk_index: int
    review: ChunkReview


def extract_json_blocks(text: str) -> list[str]:
    """返回文本中所有 ```json fenced block 的内容（按出现顺序）。"""
    return [m.group(1) for m in JSON_BLOCK_PATTERN.finditer(text)]


def _parse_issues(raw_issues: object, chunk_index: int) -> list[Issue]:
    if not isinstance(raw_issues, list):
        return []
    issues: list[Issue] = []
    for position, raw in enumerate(raw_issues):
        if not isinstance(raw, dict):
            logger.warning(f"Skipping issue #{position + 1} in chunk {chunk_index + 1}: not a JSON object")
            continue
        try:
            issue = Issue.model_validate(raw)
        except ValidationError as exc:
            logger.warning(f"Skipping invalid issue #{position + 1} in chunk {chunk_index + 1}: {exc.error_count()} error(s)")
            continue
        update: dict[str, object] = {"chunk_index": chunk_index, "original_id": issue.id}
        if issue.severity_score is None and isinstance(raw.get("risk_factors"), dict):
            update["severity_score"] = compute_severity_score(issue.risk_factors)
        issues.append(issue.model_copy(update=update))
    return issues


def parse_json_block(block: str, chunk_index: int) -> ChunkReview:
    """
    解析单个 JSON block。

    - 字段宽松转换（见 models）：类型不对的字段退回默认值，issue 与 final_recommendation 都保留
    - 只有不是 JSON 对象的 issue 会被跳过
    - block 本身不是 JSON 对象 -> 抛 `ValueError`
    """
    data = json.loads(block)
    if not isinstance(data, dict):
        raise ValueError(f"JSON block is {type(data).__name__}, expected object")
    raw_issues = data.pop("issues", [])
    try:
        review = ChunkReview.model_validate(data)
    except ValidationError as exc:
        raise ValueError(f"JSON block does not match review schema: {exc.error_count()} error(s)") from exc
    return review.model_copy(update={"issues": _parse_issues(raw_issues, chunk_index)})


def collect_parsed_blocks(results: Sequence[ChunkResult]) -> tuple[list[ParsedBlock], int]:
    """抽取并解析所有 chunk 的全部 JSON block；返回 (成功列表, 失败数)。"""
    parsed: list[ParsedBlock] = []
    failed = 0
    for result in results:
        if isinstance(result, ChunkFailure):
            continue
        blocks = extract_json_blocks(result.text)
        for block_no, block in enumerate(blocks, start=1):
            try:
                review = parse_json_block(block, chunk_index=result.chunk_index)
            except ValueError as exc:
                # json.JSONDecodeError 也是 ValueError
                failed += 1
                logger.warning(f"Error parsing JSON object {block_no}/{len(blocks)} of chunk {result.chunk_index + 1}: {exc}")
                continue
            logger.info(
                f"Parsed JSON object {block_no}/{len(blocks)} of chunk {result.chunk_index + 1}: {len(review.issues)} issues"
            )
            parsed.append(ParsedBlock(chunk_index=result.chunk_index, review=review))
    return parsed, failed


class StructuredAggregation:
    """structured 策略：把所有成功解析的 block 合并为一个 issue 集合。"""

    name = "structured"

    def aggregate(self, blocks: Sequence[ParsedBlock], failed_blocks: int) -> AggregatedReview:
        issues: list[Issue] = []
        summaries: list[str] = []
        critical_count = 0
        suggestion_count = 0
        blocking = False

        for block in blocks:
            review = block.review
            if review.final_recommendation:
                is_block = review.final_recommendation == "do_not_merge"
                blocking = blocking or is_block
                logger.info(
                    f"Chunk {block.chunk_index + 1} final recommendation: {review.final_recommendation} "
                    f"({'BLOCK' if is_block else 'APPROVE'})"
                )
            issues.extend(review.issues)
            if review.summary.strip():
                summaries.append(review.summary.strip())
            critical_count += review.metrics.critical_count
            suggestion_count += review.metrics.suggestion_count

        return AggregatedReview(
            strategy="structured",
            issues=issues,
            summaries=summaries,
            critical_count=critical_count,
            suggestion_count=suggestion_count,
            blocking_recommendation=blocking,
            parsed_blocks=len(blocks),
            failed_blocks=failed_blocks,
        )


class HeuristicAggregation:
    """
    heuristic 策略（legacy 纯文本兜底）。

    顺序：approval 短语 -> blocking 短语 -> 关键问题关键词计数（>= keyword_min 则 block）-> 默认放行但建议人工 review
    """

    name = "heuristic"

    def __init__(self, keyword_min: int = 2) -> None:
        self._keyword_min = keyword_min

    def aggregate(self, texts: Sequence[str], failed_blocks: int) -> AggregatedReview:
        lowered = "\n".join(texts).lower()

        for phrase in APPROVAL_PHRASES:
            if phrase in lowered:
                logger.info(f"Found approval phrase: {phrase!r}")
                return self._result(block=False, matched=[phrase], failed_blocks=failed_blocks)

        for phrase in BLOCKING_PHRASES:
            if phrase in lowered:
                logger.info(f"Found blocking phrase: {phrase!r}")
                return self._result(block=True, matched=[phrase], failed_blocks=failed_blocks)

        keywords = [k for k in CRITICAL_KEYWORDS if k in lowered]
        if len(keywords) >= self._keyword_min:
            logger.info(f"Found {len(keywords)} critical issues without explicit approval")
            return self._result(block=True, matched=keywords, failed_blocks=failed_blocks)

        logger.warning("No explicit merge decision found, defaulting to allow merge (manual review recommended)")
        return self._result(block=False, matched=keywords, failed_blocks=failed_blocks, manual_review=True)

    @staticmethod
    def _result(block: bool, matched: list[str], failed_blocks: int, manual_review: bool = False) -> AggregatedReview:
        return AggregatedReview(
            strategy="heuristic",
            heuristic_block=block,
            matched_phrases=matched,
            failed_blocks=failed_blocks,
            manual_review_recommended=manual_review,
        )


def combine_chunk_results(results: Sequence[ChunkResult], keyword_min: int = 2) -> AggregatedReview:
    """
    合并全部 chunk 结果。

    - 失败的 chunk 不参与合并
    - 至少一个 JSON block 解析成功 -> structured；否则 -> heuristic
    """
    blocks, failed = collect_parsed_blocks(results)
    if blocks:
        logger.info(f"Found {len(blocks)} valid JSON objects across {len(results)} chunk results")
        return StructuredAggregation().aggregate(blocks, failed_blocks=failed)

    if failed:
        logger.warning(f"All {failed} JSON objects failed to parse, falling back to text-based parsing")
    else:
        logger.warning("JSON not found in response, falling back to text-based parsing")
    texts = [r.text for r in results if not isinstance(r, ChunkFailure)]
    return HeuristicAggregation(keyword_min=keyword_min).aggregate(texts, failed_blocks=failed)
