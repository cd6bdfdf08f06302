from __future__ import annotations

import asyncio

import httpx
import pytest

from chunk_review.config import ReviewConfig
from chunk_review.dev.mock_llm_server import app as mock_app
from chunk_review.review.models import DiffBundle
from chunk_review.review.models import FileDiff
from chunk_review.review.models import ReviewOutput
from chunk_review.review.orchestrator import MissingCredentialsError
from chunk_review.review.orchestrator import build_review_orchestrator
from chunk_review.review.orchestrator import review_bundle
from chunk_review.review.orchestrator import run_review

MOCK_CLAUDE_URL = "http://mock/v1/messages"
MOCK_OPENAI_URL = "http://mock/v1/chat/completions"


async def _no_sleep(seconds: float) -> None:
    return None


def _config(**overrides: object) -> ReviewConfig:
    values: dict[str, object] = {"provider": "claude", "api_key": "test-key", "request_delay_ms": 0}
    values.update(overrides)
    return ReviewConfig.model_validate(values)


def _bundle(*files: tuple[str, str]) -> DiffBundle:
    return DiffBundle(base_ref="main", head_ref="feature", files=tuple(FileDiff(path=p, diff=d) for p, d in files))


def _review(bundle: DiffBundle, config: ReviewConfig, provider_url: str = MOCK_CLAUDE_URL) -> ReviewOutput:
    async def go() -> ReviewOutput:
        async with httpx.AsyncClient(transport=httpx.ASGITransport(app=mock_app)) as client:
            orchestrator = build_review_orchestrator(config, client, provider_url=provider_url, sleep=_no_sleep)
            return await review_bundle(orchestrator, bundle)

    return asyncio.run(go())


def test_clean_diff_is_approved_with_suggestion() -> None:
    output = _review(_bundle(("packages/a.js", "+const x = 1;")), _config())

    assert output.block_merge is False
    assert output.strategy == "structured"
    assert [i.original_id for i in output.issues] == ["MAINT-01"]
    assert output.issues[0].file == "packages/a.js"
    assert output.suggestion_count == 1
    assert output.chunks_total == 1
    assert output.chunks_succeeded == 1
    assert "[MOCK 1/1]" in output.summary


def test_critical_marker_blocks_merge_across_chunks() -> None:
    bundle = _bundle(
        ("packages/a.js", "+const a = 1;"),
        ("packages/b.js", "+eval(userInput) // MOCK_CRITICAL"),
    )
    output = _review(bundle, _config(chunk_max_bytes=40))

    assert output.block_merge is True
    assert output.chunks_total == 2
    assert [(i.original_id, i.chunk_index) for i in output.issues] == [("MAINT-01", 0), ("SEC-01", 1)]
    assert output.critical_count == 1
    assert len(output.raw_per_chunk_text) == 2
    assert "[MOCK 2/2]" in output.raw_per_chunk_text[1]


def test_openai_envelope_through_mock_server() -> None:
    output = _review(
        _bundle(("packages/a.js", "+x // MOCK_CRITICAL")),
        _config(provider="openai", model="gpt-4o-mini"),
        provider_url=MOCK_OPENAI_URL,
    )
    assert output.block_merge is True


def test_token_limit_chunk_degrades_to_manual_review() -> None:
    output = _review(_bundle(("packages/huge.js", "+MOCK_TOKEN_LIMIT")), _config())

    assert output.block_merge is False
    assert output.strategy == "heuristic"
    assert output.manual_review_recommended is True
    assert output.chunks_succeeded == 1
    assert "TOKEN LIMIT EXCEEDED" in output.raw_per_chunk_text[0]


def test_all_chunks_failed_allows_with_manual_review() -> None:
    async def go() -> ReviewOutput:
        transport = httpx.MockTransport(lambda request: httpx.Response(500, text="down"))
        async with httpx.AsyncClient(transport=transport) as client:
            orchestrator = build_review_orchestrator(_config(max_retries=1), client, sleep=_no_sleep)
            return await review_bundle(orchestrator, _bundle(("packages/a.js", "+x")))

    output = asyncio.run(go())
    assert output.block_merge is False
    assert output.strategy == "none"
    assert output.manual_review_recommended is True
    assert output.raw_per_chunk_text == [""]
    assert output.chunks_succeeded == 0


def test_empty_bundle_needs_no_llm_call() -> None:
    async def go() -> ReviewOutput:
        def handler(request: httpx.Request) -> httpx.Response:
            raise AssertionError("no request expected")

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            orchestrator = build_review_orchestrator(_config(), client, sleep=_no_sleep)
            return await review_bundle(orchestrator, _bundle())

    output = asyncio.run(go())
    assert output.block_merge is False
    assert output.issues == []
    assert output.chunks_total == 0


def test_missing_api_key_fails_before_any_call() -> None:
    async def go() -> None:
        async with httpx.AsyncClient(transport=httpx.ASGITransport(app=mock_app)) as client:
            build_review_orchestrator(_config(api_key=None), client)

    with pytest.raises(MissingCredentialsError):
        asyncio.run(go())


class _StaticSource:
    def list_changed_files(self, base_ref: str, head_ref: str) -> list[str]:
        assert (base_ref, head_ref) == ("origin/main", "HEAD")
        return ["packages/a.js"]

    def file_diff(self, base_ref: str, head_ref: str, path: str) -> str:
        return "+doSomething() // MOCK_CRITICAL"


def test_run_review_reads_diff_from_source() -> None:
    async def go() -> ReviewOutput:
        async with httpx.AsyncClient(transport=httpx.ASGITransport(app=mock_app)) as client:
            orchestrator = build_review_orchestrator(
                _config(base_ref="origin/main"), client, provider_url=MOCK_CLAUDE_URL, sleep=_no_sleep
            )
            return await run_review(orchestrator, _StaticSource())

    output = asyncio.run(go())
    assert output.block_merge is True
    assert output.issues[0].file == "packages/a.js"
