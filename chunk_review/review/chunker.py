"""
Diff 分块（非 AI，必须确定性）。

规则：
- 以文件 section 为最小单位：一个文件的 diff 永远不会被切到两个 chunk 里
- 按 UTF-8 字节数计量（不是字符数），多字节文本也能正确计量
- `max_chunk_bytes` 是“分组目标”而不是硬上限：单个超大文件 section 独占一个 chunk
- `max_chunk_bytes <= 0` 视为配置错误：整个 bundle 作为一个 chunk，并打 warning
"""

from __future__ import annotations

import logging

from chunk_review.review.models import Chunk
from chunk_review.review.models import DiffBundle
from chunk_review.review.models import FileDiff

logger = logging.getLogger(__name__)

FILE_MARKER_PREFIX = "--- File: "
MAX_REASONABLE_CHUNKS = 50


def render_file_section(file_diff: FileDiff) -> str:
    """给单个文件 diff 加上文件边界标记。"""
    return f"\n{FILE_MARKER_PREFIX}{file_diff.path} ---\n{file_diff.diff}\n"


def render_bundle(bundle: DiffBundle) -> str:
    return "".join(render_file_section(f) for f in bundle.files)


def byte_size(text: str) -> int:
    return len(text.encode("utf-8"))


def split_diff_bundle(
    bundle: DiffBundle,
    max_chunk_bytes: int | None,
    max_reasonable_chunks: int = MAX_REASONABLE_CHUNKS,
) -> list[Chunk]:
    """
    将 bundle 按文件边界分组成多个 chunk。

    - 输入：bundle + 每个 chunk 的目标字节数
    - 输出：有序 chunk 列表（index 0..N-1）；空 bundle 返回 []
    - 不会产生空 chunk
    """
    if not bundle.files:
        return []

    if max_chunk_bytes is None or max_chunk_bytes <= 0:
        logger.warning(f"Invalid chunk size: {max_chunk_bytes}, treating the whole diff as a single chunk")
        content = render_bundle(bundle)
        return [
            Chunk(
                index=0,
                content=content,
                size_bytes=byte_size(content),
                paths=tuple(f.path for f in bundle.files),
            )
        ]

    groups: list[tuple[list[str], list[str], int]] = []
    buffer: list[str] = []
    paths: list[str] = []
    current_size = 0

    for file_diff in bundle.files:
        section = render_file_section(file_diff)
        section_size = byte_size(section)

        if current_size + section_size > max_chunk_bytes and buffer:
            groups.append((buffer, paths, current_size))
            buffer, paths, current_size = [], [], 0

        buffer.append(section)
        paths.append(file_diff.path)
        current_size += section_size

    if buffer:
        groups.append((buffer, paths, current_size))

    chunks = [
        Chunk(index=i, content="".join(sections), size_bytes=size, paths=tuple(group_paths))
        for i, (sections, group_paths, size) in enumerate(groups)
    ]

    logger.info(f"Split diff into {len(chunks)} chunks (max {round(max_chunk_bytes / 1024)}KB each)")
    if len(chunks) > max_reasonable_chunks:
        logger.warning(f"Large number of chunks ({len(chunks)}) created. Consider increasing chunk size.")
    for chunk in chunks:
        if chunk.size_bytes > max_chunk_bytes:
            logger.warning(
                f"Chunk {chunk.index + 1} holds a single oversized file ({chunk.size_bytes} bytes > {max_chunk_bytes})"
            )
    return chunks
