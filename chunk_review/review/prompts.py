"""
Review prompt 模板。

只约定“输出契约”（```json fenced block + 简短总结），措辞本身不是重点。
"""

from __future__ import annotations

_OUTPUT_CONTRACT = """Severity Scoring (mandatory)
For EACH issue, assign 0-5 scores: impact, exploitability, likelihood, blast_radius, evidence_strength.
severity_score = 0.35*impact + 0.30*exploitability + 0.20*likelihood + 0.10*blast_radius + 0.05*evidence_strength
Set "severity_proposed" to "critical" if severity_score >= 3.6 AND evidence_strength >= 3, otherwise "suggestion".

Final Policy
final_recommendation = "do_not_merge" if any issue is "critical" with confidence >= 0.6; else "safe_to_merge".

Output Format (JSON first, then a short human summary)
```json
{
  "summary": "1-3 sentences overall assessment.",
  "issues": [
    {
      "id": "SEC-01",
      "category": "security|performance|maintainability|best_practices",
      "severity_proposed": "critical|suggestion",
      "severity_score": 0.0,
      "risk_factors": {"impact": 0, "exploitability": 0, "likelihood": 0, "blast_radius": 0, "evidence_strength": 0},
      "confidence": 0.0,
      "file": "path/to/file",
      "lines": [120, 134],
      "snippet": "<15-line minimal excerpt>",
      "why_it_matters": "Concrete impact in 1 sentence.",
      "fix": "Specific steps or code patch.",
      "tests": "Brief test to prevent regression.",
      "occurrences": [{"file": "path/to/other", "lines": [88, 95]}]
    }
  ],
  "metrics": {"critical_count": 0, "suggestion_count": 0},
  "final_recommendation": "safe_to_merge|do_not_merge"
}
```
"""

_ROLES: dict[str, str] = {
    "js": "a senior frontend engineer reviewing JavaScript/TypeScript changes for enterprise web apps",
    "python": "a senior Python engineer reviewing changes for enterprise Python services and data jobs",
    "java": "a senior Java engineer reviewing changes for enterprise Java services",
    "php": "a senior PHP engineer reviewing changes for enterprise PHP apps",
}


def build_review_prompt(language: str) -> str:
    """按语言生成 base prompt；未知语言回退到 js。"""
    role = _ROLES.get(language, _ROLES["js"])
    return (
        f"You are {role}. Review only the provided diff. Focus on critical risks across "
        "Performance, Security, Maintainability, and Best Practices; ignore style and formatting. "
        "Do not assume code that is not shown.\n\n"
        f"{_OUTPUT_CONTRACT}\n"
        "Context: Here are the code changes (diff or full files):"
    )


def build_chunk_prompt(prompt: str, chunk_index: int, total_chunks: int) -> str:
    """
    多 chunk 时追加位置上下文，让模型知道自己只看到一部分。

    - total_chunks == 1：原样返回
    """
    if total_chunks <= 1:
        return prompt
    return (
        f"{prompt}\n\n"
        f"**CHUNK CONTEXT:** This is chunk {chunk_index + 1} of {total_chunks} total chunks.\n"
        "**INSTRUCTIONS:**\n"
        "- Review this specific portion of the code changes\n"
        "- Focus on issues that are relevant to this chunk\n"
        "- If you find critical issues, mark them clearly\n"
        "- Consider how this chunk relates to the overall changes\n\n"
        "**CODE CHANGES TO REVIEW:**"
    )


def build_token_limit_placeholder(chunk_index: int, total_chunks: int) -> str:
    """上游报告 token 超限时的占位总结（降级成功，不含任何 blocking 短语）。"""
    return (
        f"**CHUNK {chunk_index + 1}/{total_chunks} - TOKEN LIMIT EXCEEDED**\n\n"
        "This chunk was too large to process completely.\n\n"
        "- This chunk contains significant code changes\n"
        "- Manual review recommended for this section\n"
        "- Consider breaking down large files into smaller changes\n\n"
        "*Note: This is an automated summary due to token limits. Full review requires manual inspection.*"
    )
