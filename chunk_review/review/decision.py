"""
Decision Engine（确定性 block/allow 判定）。

structured 策略按顺序过闸门：
1. 任一 chunk 明确给出 final_recommendation == "do_not_merge" -> block
2. 任一 issue severity_proposed == "critical" 且 confidence >= 阈值（默认 0.6）-> block
3. 各 chunk metrics.critical_count 求和 > 0 -> block
4. 否则 allow

顺序有意义：chunk 级整体判断优先于单条 issue 的启发式。
heuristic 策略直接采用 aggregator 的短语匹配结论。

阈值与严重度公式是经验调出来的策略常量（与历史输出兼容），不是算法不变量。
"""

from __future__ import annotations

import logging

from chunk_review.review.models import AggregatedReview
from chunk_review.review.models import Issue
from chunk_review.review.models import ReviewVerdict
from chunk_review.review.models import RiskFactors

logger = logging.getLogger(__name__)

SEVERITY_WEIGHTS: dict[str, float] = {
    "impact": 0.35,
    "exploitability": 0.30,
    "likelihood": 0.20,
    "blast_radius": 0.10,
    "evidence_strength": 0.05,
}

CRITICAL_SCORE_THRESHOLD = 3.6
CRITICAL_EVIDENCE_THRESHOLD = 3
CRITICAL_CONFIDENCE_THRESHOLD = 0.6


def compute_severity_score(factors: RiskFactors) -> float:
    """severity_score = 0.35*impact + 0.30*exploitability + 0.20*likelihood + 0.10*blast_radius + 0.05*evidence_strength"""
    score = sum(weight * getattr(factors, name) for name, weight in SEVERITY_WEIGHTS.items())
    return round(score, 2)


def classify_severity(
    factors: RiskFactors,
    score_threshold: float = CRITICAL_SCORE_THRESHOLD,
    evidence_threshold: int = CRITICAL_EVIDENCE_THRESHOLD,
) -> str:
    """critical 当且仅当 score >= 3.6 且 evidence_strength >= 3。"""
    score = compute_severity_score(factors)
    if score >= score_threshold and factors.evidence_strength >= evidence_threshold:
        return "critical"
    return "suggestion"


def _issue_label(issue: Issue) -> str:
    score = f"{issue.severity_score:.1f}" if issue.severity_score is not None else "N/A"
    chunk = issue.chunk_index + 1 if issue.chunk_index is not None else "?"
    return f"{issue.original_id or issue.id} ({issue.category}, chunk {chunk}, score: {score}, confidence: {issue.confidence})"


def high_confidence_critical_issues(issues: list[Issue], confidence_threshold: float) -> list[Issue]:
    return [i for i in issues if i.severity_proposed == "critical" and i.confidence >= confidence_threshold]


def decide_block_merge(
    aggregated: AggregatedReview,
    confidence_threshold: float = CRITICAL_CONFIDENCE_THRESHOLD,
) -> bool:
    """按闸门顺序给出是否阻塞合并。"""
    if aggregated.strategy == "heuristic":
        return aggregated.heuristic_block

    if aggregated.blocking_recommendation:
        logger.info("At least one chunk recommended blocking the merge")
        return True

    critical = high_confidence_critical_issues(aggregated.issues, confidence_threshold)
    if critical:
        logger.info(
            f"Found {len(critical)} critical issues with confidence >= {confidence_threshold} across all chunks: "
            + ", ".join(_issue_label(i) for i in critical)
        )
        return True

    if aggregated.issues:
        logger.info("All issues found: " + ", ".join(f"{i.severity_proposed.upper()} {_issue_label(i)}" for i in aggregated.issues))

    if aggregated.critical_count > 0:
        logger.info(f"Total critical issues count across all chunks: {aggregated.critical_count}")
        return True

    logger.info("No critical issues found across all chunks - safe to merge")
    return False


def build_verdict(
    aggregated: AggregatedReview,
    confidence_threshold: float = CRITICAL_CONFIDENCE_THRESHOLD,
) -> ReviewVerdict:
    """把 aggregator 结果收敛为最终 verdict。"""
    return ReviewVerdict(
        block_merge=decide_block_merge(aggregated, confidence_threshold=confidence_threshold),
        critical_count=aggregated.critical_count,
        suggestion_count=aggregated.suggestion_count,
        issues=list(aggregated.issues),
    )
