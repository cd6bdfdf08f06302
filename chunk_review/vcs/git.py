"""
基于 git CLI 的 diff 来源（VCS collaborator）。

只提供两个确定性查询：
- `list_changed_files(base_ref, head_ref)`：`git diff --name-only base...head`，按路径前缀/忽略后缀/语言扩展名过滤
- `file_diff(base_ref, head_ref, path)`：单文件 unified diff

`build_diff_bundle` 把两者组合成不可变的 `DiffBundle`；拿不到 diff 的文件跳过并打 warning。
"""

from __future__ import annotations

import logging
import subprocess
from collections.abc import Sequence
from typing import Protocol

from chunk_review.review.models import DiffBundle
from chunk_review.review.models import FileDiff

logger = logging.getLogger(__name__)

IGNORED_SUFFIXES: tuple[str, ...] = (".json", ".md", ".lock", ".test.js", ".spec.js")

LANGUAGE_EXTENSIONS: dict[str, tuple[str, ...]] = {
    "js": (".js", ".jsx", ".ts", ".tsx", ".mjs"),
    "python": (".py", ".pyw", ".pyx", ".pyi"),
    "java": (".java",),
    "php": (".php",),
}


class DiffSource(Protocol):
    """VCS collaborator 协议（便于测试时替换成内存实现）。"""

    def list_changed_files(self, base_ref: str, head_ref: str) -> list[str]: ...

    def file_diff(self, base_ref: str, head_ref: str, path: str) -> str: ...


def matches_language(path: str, language: str) -> bool:
    """未知语言：不过滤（全部保留）。"""
    extensions = LANGUAGE_EXTENSIONS.get(language)
    if extensions is None:
        return True
    return path.endswith(extensions)


def filter_changed_files(paths: Sequence[str], path_prefixes: Sequence[str], language: str) -> list[str]:
    if language not in LANGUAGE_EXTENSIONS:
        logger.warning(f"Unknown language: {language}, defaulting to all files")
    kept: list[str] = []
    for path in paths:
        if not path:
            continue
        if path_prefixes and not any(path.startswith(prefix) for prefix in path_prefixes):
            continue
        if path.endswith(IGNORED_SUFFIXES):
            continue
        if not matches_language(path, language):
            continue
        kept.append(path)
    return kept


class GitDiffSource:
    """在本地仓库里调用 git CLI。"""

    def __init__(
        self,
        repo_dir: str | None = None,
        git_bin: str = "git",
        path_prefixes: Sequence[str] = (),
        language: str = "js",
    ) -> None:
        self._repo_dir = repo_dir
        self._git_bin = git_bin
        self._path_prefixes = tuple(path_prefixes)
        self._language = language

    def list_changed_files(self, base_ref: str, head_ref: str) -> list[str]:
        output = _run_git(self._git_bin, ["diff", "--name-only", f"{base_ref}...{head_ref}"], self._repo_dir)
        files = filter_changed_files(
            paths=output.splitlines(),
            path_prefixes=self._path_prefixes,
            language=self._language,
        )
        logger.info(f"Found {len(files)} changed files matching language: {self._language}")
        return files

    def file_diff(self, base_ref: str, head_ref: str, path: str) -> str:
        return _run_git(
            self._git_bin,
            [
                "diff",
                f"{base_ref}...{head_ref}",
                "--unified=3",
                "--no-prefix",
                "--ignore-blank-lines",
                "--ignore-space-at-eol",
                "--no-color",
                "--",
                path,
            ],
            self._repo_dir,
        )


def build_diff_bundle(source: DiffSource, base_ref: str, head_ref: str) -> DiffBundle:
    """按 changed files 的原始顺序逐个取 diff，组装 `DiffBundle`。"""
    paths = source.list_changed_files(base_ref=base_ref, head_ref=head_ref)
    files: list[FileDiff] = []
    for i, path in enumerate(paths, start=1):
        logger.info(f"Processing diff for: {path} ({i}/{len(paths)})")
        try:
            diff = source.file_diff(base_ref=base_ref, head_ref=head_ref, path=path)
        except RuntimeError as exc:
            logger.warning(f"Could not get diff for {path}: {exc}")
            continue
        if not diff:
            logger.warning(f"Empty diff for {path}, skipping")
            continue
        files.append(FileDiff(path=path, diff=diff))

    if paths and not files:
        logger.warning("No valid diffs could be generated for any files")
    return DiffBundle(base_ref=base_ref, head_ref=head_ref, files=tuple(files))


def _run_git(git_bin: str, args: list[str], cwd: str | None) -> str:
    cmd = [git_bin] + args
    result = subprocess.run(cmd, cwd=cwd, capture_output=True, text=True)
    if result.returncode != 0:
        logger.error(f"git failed: {' '.join(cmd)}\nstdout={result.stdout}\nstderr={result.stderr}")
        raise RuntimeError(f"git command failed: {' '.join(cmd)}")
    return result.stdout
