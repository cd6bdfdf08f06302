"""
Review 领域模型（Pydantic）。

用途：
- 明确 chunker -> dispatcher -> aggregator -> decision 各阶段的输入/输出
- 作为 LLM 输出中 JSON block 的 schema 校验（宽松：缺字段给默认值，不因格式小偏差整体失败）

生命周期：
DiffBundle（一次 run 只生成一次）-> Chunk（临时）-> ChunkResult（每个 chunk 一个）-> ReviewOutput（终态）
"""

from __future__ import annotations

import math
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator


class FileDiff(BaseModel):
    """单个文件的 unified diff（由 VCS collaborator 提供）。"""

    model_config = ConfigDict(frozen=True)

    path: str
    diff: str


class DiffBundle(BaseModel):
    """一次 base...head 比较的全部文件 diff（有序、不可变）。"""

    model_config = ConfigDict(frozen=True)

    base_ref: str
    head_ref: str
    files: tuple[FileDiff, ...] = ()


class Chunk(BaseModel):
    """若干个完整文件 section 拼接而成的一段 payload（不会在文件中间切开）。"""

    model_config = ConfigDict(frozen=True)

    index: int
    content: str
    size_bytes: int
    paths: tuple[str, ...]


class ChunkSuccess(BaseModel):
    kind: Literal["success"] = "success"
    chunk_index: int
    text: str


class ChunkTokenLimitExceeded(BaseModel):
    """上游报告超出上下文窗口时的降级结果：占位文本照常参与汇总。"""

    kind: Literal["token_limit_exceeded"] = "token_limit_exceeded"
    chunk_index: int
    text: str


class ChunkFailure(BaseModel):
    kind: Literal["failure"] = "failure"
    chunk_index: int
    reason: str
    attempts: int = 0


ChunkResult = Annotated[
    Union[ChunkSuccess, ChunkTokenLimitExceeded, ChunkFailure],
    Field(discriminator="kind"),
]


# 以下模型用于校验 LLM 输出，全部是宽松解析：
# 字段类型不对时尽量转换，转换不了就给默认值，不能让一个坏字段丢掉整条 issue / 整个 block。


def _as_text(value: Any) -> str:
    if value is None:
        return ""
    return value if isinstance(value, str) else str(value)


def _as_float(value: Any) -> float | None:
    if isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if math.isnan(number):
        return None
    return number


def _as_int(value: Any, default: int = 0) -> int:
    number = _as_float(value)
    if number is None or math.isinf(number):
        return default
    return int(number)


def _clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


def _as_line_numbers(value: Any) -> list[int]:
    if not isinstance(value, list):
        return []
    lines: list[int] = []
    for item in value:
        number = _as_float(item)
        if number is not None and not math.isinf(number):
            lines.append(int(number))
    return lines


class RiskFactors(BaseModel):
    impact: int = Field(default=0, ge=0, le=5)
    exploitability: int = Field(default=0, ge=0, le=5)
    likelihood: int = Field(default=0, ge=0, le=5)
    blast_radius: int = Field(default=0, ge=0, le=5)
    evidence_strength: int = Field(default=0, ge=0, le=5)

    @field_validator("*", mode="before")
    @classmethod
    def _coerce_factor(cls, value: Any) -> int:
        return int(_clamp(_as_int(value), 0, 5))


class Occurrence(BaseModel):
    file: str = ""
    lines: list[int] = Field(default_factory=list)

    @field_validator("file", mode="before")
    @classmethod
    def _coerce_file(cls, value: Any) -> str:
        return _as_text(value)

    @field_validator("lines", mode="before")
    @classmethod
    def _coerce_lines(cls, value: Any) -> list[int]:
        return _as_line_numbers(value)


class Issue(BaseModel):
    """
    LLM 输出的单条结构化问题（字段名与 JSON 输出契约一致）。

    category 不限定枚举：模型给出的分类原样保留。
    """

    model_config = ConfigDict(extra="ignore")

    id: str = ""
    category: str = "best_practices"
    severity_proposed: Literal["critical", "suggestion"] = "suggestion"
    severity_score: float | None = Field(default=None, ge=0.0, le=5.0)
    risk_factors: RiskFactors = Field(default_factory=RiskFactors)
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    file: str = ""
    lines: list[int] = Field(default_factory=list)
    snippet: str = ""
    why_it_matters: str = ""
    fix: str = ""
    tests: str = ""
    occurrences: list[Occurrence] = Field(default_factory=list)
    # 汇总时补充：来源 chunk（0-based）与原始 id
    chunk_index: int | None = None
    original_id: str | None = None

    @field_validator("id", "file", "snippet", "why_it_matters", "fix", "tests", mode="before")
    @classmethod
    def _coerce_text(cls, value: Any) -> str:
        return _as_text(value)

    @field_validator("category", mode="before")
    @classmethod
    def _coerce_category(cls, value: Any) -> str:
        text = _as_text(value).strip()
        return text or "best_practices"

    @field_validator("severity_proposed", mode="before")
    @classmethod
    def _coerce_severity(cls, value: Any) -> str:
        return "critical" if _as_text(value).strip().lower() == "critical" else "suggestion"

    @field_validator("severity_score", mode="before")
    @classmethod
    def _coerce_score(cls, value: Any) -> float | None:
        number = _as_float(value)
        if number is None:
            return None
        return _clamp(number, 0.0, 5.0)

    @field_validator("confidence", mode="before")
    @classmethod
    def _coerce_confidence(cls, value: Any) -> float:
        number = _as_float(value)
        if number is None:
            return 0.0
        return _clamp(number, 0.0, 1.0)

    @field_validator("risk_factors", mode="before")
    @classmethod
    def _coerce_risk_factors(cls, value: Any) -> Any:
        return value if isinstance(value, (dict, RiskFactors)) else {}

    @field_validator("lines", mode="before")
    @classmethod
    def _coerce_lines(cls, value: Any) -> list[int]:
        return _as_line_numbers(value)

    @field_validator("occurrences", mode="before")
    @classmethod
    def _coerce_occurrences(cls, value: Any) -> list[Any]:
        if not isinstance(value, list):
            return []
        return [item for item in value if isinstance(item, (dict, Occurrence))]


class ReviewMetrics(BaseModel):
    critical_count: int = 0
    suggestion_count: int = 0

    @field_validator("critical_count", "suggestion_count", mode="before")
    @classmethod
    def _coerce_count(cls, value: Any) -> int:
        return max(0, _as_int(value))


class ChunkReview(BaseModel):
    """一个 ```json fenced block 的 schema（final_recommendation 不受其他字段影响）。"""

    model_config = ConfigDict(extra="ignore")

    summary: str = ""
    issues: list[Issue] = Field(default_factory=list)
    metrics: ReviewMetrics = Field(default_factory=ReviewMetrics)
    final_recommendation: str | None = None

    @field_validator("summary", mode="before")
    @classmethod
    def _coerce_summary(cls, value: Any) -> str:
        return _as_text(value)

    @field_validator("metrics", mode="before")
    @classmethod
    def _coerce_metrics(cls, value: Any) -> Any:
        return value if isinstance(value, (dict, ReviewMetrics)) else {}

    @field_validator("final_recommendation", mode="before")
    @classmethod
    def _coerce_recommendation(cls, value: Any) -> str | None:
        if not isinstance(value, str):
            return None
        return value.strip().lower() or None


class AggregatedReview(BaseModel):
    """
    aggregator 的输出（decision engine 的输入）。

    - strategy：structured（至少一个 JSON block 解析成功）/ heuristic（纯文本兜底）
    - heuristic_block：仅 heuristic 策略使用
    """

    strategy: Literal["structured", "heuristic"]
    issues: list[Issue] = Field(default_factory=list)
    summaries: list[str] = Field(default_factory=list)
    critical_count: int = 0
    suggestion_count: int = 0
    blocking_recommendation: bool = False
    parsed_blocks: int = 0
    failed_blocks: int = 0
    heuristic_block: bool = False
    matched_phrases: list[str] = Field(default_factory=list)
    manual_review_recommended: bool = False


class ReviewVerdict(BaseModel):
    block_merge: bool
    critical_count: int
    suggestion_count: int
    issues: list[Issue] = Field(default_factory=list)


class ReviewOutput(BaseModel):
    """core 对外的唯一输出（由被排除的展示层格式化成评论）。"""

    block_merge: bool
    issues: list[Issue] = Field(default_factory=list)
    raw_per_chunk_text: list[str] = Field(default_factory=list)
    critical_count: int = 0
    suggestion_count: int = 0
    summary: str = ""
    strategy: Literal["structured", "heuristic", "none"] = "none"
    manual_review_recommended: bool = False
    chunks_total: int = 0
    chunks_succeeded: int = 0
