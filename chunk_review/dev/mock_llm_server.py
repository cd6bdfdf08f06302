"""
本地 Mock LLM server（同时模拟 OpenAI 与 Anthropic 两种响应信封）。

用途：
- 在没有真实 API key 的情况下，本地跑通 chunk -> dispatch -> aggregate -> decide 闭环

启动：
  python -m chunk_review.dev.mock_llm_server

约定（便于手工构造场景）：
- diff 里出现 `MOCK_CRITICAL`：返回一个 critical issue（confidence 0.9）+ do_not_merge
- diff 里出现 `MOCK_TOKEN_LIMIT`：返回 400 + token 超限错误
- 否则：返回一个 suggestion + safe_to_merge
"""

from __future__ import annotations

import json
import re
from collections.abc import Sequence

import uvicorn
from fastapi import FastAPI
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

_FILE_MARKER = re.compile(r"^--- File: (.+) ---$", re.MULTILINE)
_CHUNK_CONTEXT = re.compile(r"This is chunk (\d+) of (\d+)")


class MockMessage(BaseModel):
    role: str
    content: str


class MockCompletionRequest(BaseModel):
    model: str
    messages: list[MockMessage] = Field(default_factory=list)


def _user_text(messages: Sequence[MockMessage]) -> str:
    user_texts = [m.content for m in messages if m.role == "user"]
    if not user_texts:
        raise ValueError("Mock server expects at least one user message")
    return "\n".join(user_texts)


def _chunk_label(prompt: str) -> str:
    match = _CHUNK_CONTEXT.search(prompt)
    if match is None:
        return "1/1"
    return f"{match.group(1)}/{match.group(2)}"


def build_mock_review_text(prompt: str) -> str:
    """根据 prompt 里的 diff 构造一个 JSON-first 的 review 文本。"""
    paths = _FILE_MARKER.findall(prompt)
    first_path = paths[0] if paths else "unknown"
    label = _chunk_label(prompt)

    if "MOCK_CRITICAL" in prompt:
        review = {
            "summary": f"[MOCK {label}] Critical issue found.",
            "issues": [
                {
                    "id": "SEC-01",
                    "category": "security",
                    "severity_proposed": "critical",
                    "severity_score": 4.2,
                    "risk_factors": {
                        "impact": 5,
                        "exploitability": 4,
                        "likelihood": 4,
                        "blast_radius": 3,
                        "evidence_strength": 4,
                    },
                    "confidence": 0.9,
                    "file": first_path,
                    "lines": [1, 1],
                    "why_it_matters": "[MOCK] Untrusted input reaches a dangerous sink.",
                    "fix": "[MOCK] Validate and escape the input.",
                    "tests": "[MOCK] Add a regression test with malicious input.",
                    "occurrences": [],
                }
            ],
            "metrics": {"critical_count": 1, "suggestion_count": 0},
            "final_recommendation": "do_not_merge",
        }
    else:
        review = {
            "summary": f"[MOCK {label}] No blocking issues.",
            "issues": [
                {
                    "id": "MAINT-01",
                    "category": "maintainability",
                    "severity_proposed": "suggestion",
                    "severity_score": 1.5,
                    "risk_factors": {
                        "impact": 2,
                        "exploitability": 1,
                        "likelihood": 2,
                        "blast_radius": 1,
                        "evidence_strength": 3,
                    },
                    "confidence": 0.7,
                    "file": first_path,
                    "lines": [1, 1],
                    "why_it_matters": "[MOCK] Missing error handling.",
                    "fix": "[MOCK] Handle the failure branch.",
                    "tests": "[MOCK] Cover the failure branch.",
                    "occurrences": [],
                }
            ],
            "metrics": {"critical_count": 0, "suggestion_count": 1},
            "final_recommendation": "safe_to_merge",
        }
    return f"```json\n{json.dumps(review, indent=2)}\n```\n\n[MOCK] Short human summary for chunk {label}."


def _token_limit_response() -> JSONResponse:
    return JSONResponse(
        status_code=400,
        content={"error": {"type": "invalid_request_error", "message": "prompt is too long: maximum context tokens exceeded"}},
    )


app = FastAPI(title="Mock LLM (OpenAI + Anthropic envelopes)", version="0.1.0")


@app.post("/v1/chat/completions", response_model=None)
async def chat_completions(req: MockCompletionRequest) -> dict[str, object] | JSONResponse:
    prompt = _user_text(req.messages)
    if "MOCK_TOKEN_LIMIT" in prompt:
        return _token_limit_response()
    return {"choices": [{"message": {"role": "assistant", "content": build_mock_review_text(prompt)}}]}


@app.post("/v1/messages", response_model=None)
async def messages(req: MockCompletionRequest) -> dict[str, object] | JSONResponse:
    prompt = _user_text(req.messages)
    if "MOCK_TOKEN_LIMIT" in prompt:
        return _token_limit_response()
    return {"content": [{"type": "text", "text": build_mock_review_text(prompt)}]}


def main() -> None:
    uvicorn.run(app, host="127.0.0.1", port=9001)


if __name__ == "__main__":
    main()
