from __future__ import annotations

import shutil
import subprocess
from pathlib import Path

import httpx
import pytest
from fastapi.testclient import TestClient

from chunk_review.config import ReviewConfig
from chunk_review.dev.mock_llm_server import app as mock_app
from chunk_review.main import build_app


def _client(config: ReviewConfig) -> TestClient:
    llm_client = httpx.AsyncClient(transport=httpx.ASGITransport(app=mock_app))
    app = build_app(config=config, http_client=llm_client, provider_url="http://mock/v1/messages")
    return TestClient(app)


def test_health() -> None:
    client = _client(ReviewConfig(api_key="k"))
    resp = client.get("/health")
    assert resp.status_code == 200
    assert resp.json() == {"status": "ok"}


def test_review_with_inline_files_blocks_on_critical_issue() -> None:
    client = _client(ReviewConfig(api_key="k", request_delay_ms=0))
    resp = client.post(
        "/review",
        json={
            "base_ref": "main",
            "head_ref": "feature",
            "files": [{"path": "packages/app.js", "diff": "+run(req.query.cmd) // MOCK_CRITICAL"}],
        },
    )
    assert resp.status_code == 200
    body = resp.json()
    assert body["files_reviewed"] == ["packages/app.js"]
    assert body["result"]["block_merge"] is True
    assert body["result"]["issues"][0]["original_id"] == "SEC-01"


def test_review_with_empty_file_list_allows() -> None:
    client = _client(ReviewConfig(api_key="k"))
    resp = client.post("/review", json={"files": []})
    assert resp.status_code == 200
    assert resp.json()["result"]["block_merge"] is False


def test_review_without_api_key_is_rejected() -> None:
    client = _client(ReviewConfig(api_key=None))
    resp = client.post("/review", json={"files": [{"path": "a.js", "diff": "+x"}]})
    assert resp.status_code == 400
    assert "API key" in resp.json()["detail"]


def test_review_rejects_caller_supplied_repo_dir() -> None:
    client = _client(ReviewConfig(api_key="k"))
    resp = client.post("/review", json={"repo_dir": "/etc", "base_ref": "main"})
    assert resp.status_code == 422


def _git(repo: Path, *args: str) -> None:
    subprocess.run(
        ["git", "-c", "user.email=dev@example.com", "-c", "user.name=dev", *args],
        cwd=repo,
        check=True,
        capture_output=True,
    )


@pytest.mark.skipif(shutil.which("git") is None, reason="git not installed")
def test_review_without_files_diffs_configured_repo(tmp_path: Path) -> None:
    (tmp_path / "src").mkdir()
    (tmp_path / "src" / "app.py").write_text("x = 1\n", encoding="utf-8")
    _git(tmp_path, "init", "-q")
    _git(tmp_path, "add", ".")
    _git(tmp_path, "commit", "-q", "-m", "base")
    _git(tmp_path, "tag", "base")
    (tmp_path / "src" / "app.py").write_text("x = 2  # MOCK_CRITICAL\n", encoding="utf-8")
    _git(tmp_path, "commit", "-q", "-am", "change")

    config = ReviewConfig(
        api_key="k",
        repo_dir=str(tmp_path),
        path_prefixes=("src/",),
        language="python",
        request_delay_ms=0,
    )
    resp = _client(config).post("/review", json={"base_ref": "base", "head_ref": "HEAD"})

    assert resp.status_code == 200
    result = resp.json()["result"]
    assert result["chunks_total"] == 1
    assert result["block_merge"] is True
    assert result["issues"][0]["file"] == "src/app.py"
