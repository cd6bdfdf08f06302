from __future__ import annotations

import pytest

from chunk_review.config import ReviewConfig
from chunk_review.llm.providers import ClaudeProvider
from chunk_review.llm.providers import MalformedResponseError
from chunk_review.llm.providers import OpenAIProvider
from chunk_review.llm.providers import PROVIDERS
from chunk_review.llm.providers import build_provider
from chunk_review.llm.providers import parse_error_message


def test_claude_request_shape() -> None:
    provider = ClaudeProvider(api_key="ck", model="claude-x", max_tokens=100, temperature=0.0)
    request = provider.build_request(prompt="P", payload="D")
    assert request.url == "https://api.anthropic.com/v1/messages"
    assert request.headers["x-api-key"] == "ck"
    assert request.headers["anthropic-version"] == "2023-06-01"
    assert request.body["messages"] == [{"role": "user", "content": "P\n\nD"}]
    assert request.body["max_tokens"] == 100


def test_openai_request_shape() -> None:
    provider = OpenAIProvider(api_key="sk", model="gpt-x", max_tokens=50, temperature=0.2)
    request = provider.build_request(prompt="P", payload="D")
    assert request.headers["Authorization"] == "Bearer sk"
    assert request.body["model"] == "gpt-x"
    assert request.body["messages"][0]["role"] == "system"
    assert request.body["messages"][1] == {"role": "user", "content": "P\n\nD"}


def test_parse_response_extracts_text_per_envelope() -> None:
    claude = ClaudeProvider(api_key="k", model="m", max_tokens=1, temperature=0.0)
    openai = OpenAIProvider(api_key="k", model="m", max_tokens=1, temperature=0.0)
    assert claude.parse_response({"content": [{"type": "text", "text": "hi"}]}) == "hi"
    assert openai.parse_response({"choices": [{"message": {"content": "yo"}}]}) == "yo"


@pytest.mark.parametrize("data", [None, {}, {"content": []}, {"content": [{"type": "text", "text": ""}]}, {"content": "x"}])
def test_claude_parse_response_rejects_malformed(data: object) -> None:
    provider = ClaudeProvider(api_key="k", model="m", max_tokens=1, temperature=0.0)
    with pytest.raises(MalformedResponseError):
        provider.parse_response(data)


@pytest.mark.parametrize("data", [{}, {"choices": []}, {"choices": [{"message": {"content": None}}]}])
def test_openai_parse_response_rejects_malformed(data: object) -> None:
    provider = OpenAIProvider(api_key="k", model="m", max_tokens=1, temperature=0.0)
    with pytest.raises(MalformedResponseError):
        provider.parse_response(data)


def test_parse_error_message_variants() -> None:
    assert parse_error_message('{"error": {"message": "too many tokens"}}') == "too many tokens"
    assert parse_error_message('{"message": "bad key"}') == "bad key"
    assert parse_error_message("plain text failure") == "plain text failure"
    assert parse_error_message('["unexpected"]') == '["unexpected"]'


def test_build_provider_uses_config_and_url_override() -> None:
    config = ReviewConfig(provider="openai", api_key="sk", model="gpt-4o-mini")
    provider = build_provider(config, url="http://localhost:9001/v1/chat/completions")
    assert isinstance(provider, OpenAIProvider)
    assert provider.build_request("p", "d").url == "http://localhost:9001/v1/chat/completions"


def test_build_provider_requires_api_key() -> None:
    with pytest.raises(ValueError):
        build_provider(ReviewConfig(provider="claude", api_key=None))


def test_build_provider_accepts_any_registered_factory(monkeypatch: pytest.MonkeyPatch) -> None:
    built: dict[str, object] = {}

    def factory(**kwargs: object) -> ClaudeProvider:
        built.update(kwargs)
        return ClaudeProvider(api_key="proxy", model="m", max_tokens=1, temperature=0.0)

    monkeypatch.setitem(PROVIDERS, "claude", factory)
    provider = build_provider(ReviewConfig(provider="claude", api_key="ck", model="claude-x"))

    assert provider.build_request("p", "d").headers["x-api-key"] == "proxy"
    assert built["api_key"] == "ck"
    assert built["model"] == "claude-x"
