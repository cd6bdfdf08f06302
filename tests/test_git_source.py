from __future__ import annotations

import shutil
import subprocess
from pathlib import Path

import pytest

from chunk_review.vcs.git import GitDiffSource
from chunk_review.vcs.git import build_diff_bundle
from chunk_review.vcs.git import filter_changed_files


class _FakeSource:
    def __init__(self, diffs: dict[str, object]) -> None:
        self._diffs = diffs

    def list_changed_files(self, base_ref: str, head_ref: str) -> list[str]:
        return list(self._diffs)

    def file_diff(self, base_ref: str, head_ref: str, path: str) -> str:
        diff = self._diffs[path]
        if isinstance(diff, Exception):
            raise diff
        return str(diff)


def test_filter_keeps_prefixed_language_files() -> None:
    paths = [
        "packages/api/index.ts",
        "packages/api/index.test.js",
        "packages/api/package.json",
        "packages/api/README.md",
        "packages/api/util.py",
        "scripts/build.js",
        "",
    ]
    assert filter_changed_files(paths, path_prefixes=("packages/",), language="js") == ["packages/api/index.ts"]


def test_filter_unknown_language_keeps_everything_not_ignored() -> None:
    paths = ["src/main.rs", "src/lib.rs", "Cargo.lock"]
    assert filter_changed_files(paths, path_prefixes=(), language="rust") == ["src/main.rs", "src/lib.rs"]


def test_build_diff_bundle_skips_failed_and_empty_diffs() -> None:
    source = _FakeSource(
        {
            "a.py": "+a",
            "broken.py": RuntimeError("git exploded"),
            "empty.py": "",
            "b.py": "+b",
        }
    )
    bundle = build_diff_bundle(source, base_ref="main", head_ref="feature")
    assert bundle.base_ref == "main"
    assert bundle.head_ref == "feature"
    assert [(f.path, f.diff) for f in bundle.files] == [("a.py", "+a"), ("b.py", "+b")]


def _git(repo: Path, *args: str) -> None:
    subprocess.run(
        ["git", "-c", "user.email=dev@example.com", "-c", "user.name=dev", *args],
        cwd=repo,
        check=True,
        capture_output=True,
    )


@pytest.mark.skipif(shutil.which("git") is None, reason="git not installed")
def test_git_diff_source_against_real_repo(tmp_path: Path) -> None:
    (tmp_path / "src").mkdir()
    (tmp_path / "src" / "app.py").write_text("print('old')\n", encoding="utf-8")
    _git(tmp_path, "init", "-q")
    _git(tmp_path, "add", ".")
    _git(tmp_path, "commit", "-q", "-m", "base")
    _git(tmp_path, "tag", "base")

    (tmp_path / "src" / "app.py").write_text("print('new')\n", encoding="utf-8")
    (tmp_path / "src" / "notes.md").write_text("# notes\n", encoding="utf-8")
    (tmp_path / "docs").mkdir()
    (tmp_path / "docs" / "conf.py").write_text("x = 1\n", encoding="utf-8")
    _git(tmp_path, "add", ".")
    _git(tmp_path, "commit", "-q", "-m", "change")

    source = GitDiffSource(repo_dir=str(tmp_path), path_prefixes=("src/",), language="python")
    bundle = build_diff_bundle(source, base_ref="base", head_ref="HEAD")

    assert [f.path for f in bundle.files] == ["src/app.py"]
    assert "+print('new')" in bundle.files[0].diff
    assert "-print('old')" in bundle.files[0].diff


@pytest.mark.skipif(shutil.which("git") is None, reason="git not installed")
def test_git_diff_source_raises_on_bad_ref(tmp_path: Path) -> None:
    _git(tmp_path, "init", "-q")
    source = GitDiffSource(repo_dir=str(tmp_path), path_prefixes=(), language="python")
    with pytest.raises(RuntimeError):
        source.list_changed_files(base_ref="nope", head_ref="HEAD")
