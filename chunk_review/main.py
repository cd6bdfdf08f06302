"""
FastAPI 服务入口。

这里做三件事：
- 加载配置（不可变 `ReviewConfig`）
- 组装外部依赖（复用的 httpx.AsyncClient）
- 装配路由（health + review）

注意：
- 业务流程不写在这里（由 `review/orchestrator.py` 负责）
- 只返回 JSON 结果，评论排版/回写由调用方负责
"""

from __future__ import annotations

import logging
import os

import httpx
from fastapi import FastAPI
from fastapi import HTTPException
from pydantic import BaseModel, ConfigDict, Field

from chunk_review.config import ReviewConfig
from chunk_review.config import load_config_from_env
from chunk_review.llm.providers import UnsupportedProviderError
from chunk_review.review.models import DiffBundle
from chunk_review.review.models import FileDiff
from chunk_review.review.models import ReviewOutput
from chunk_review.review.orchestrator import MissingCredentialsError
from chunk_review.review.orchestrator import build_review_orchestrator
from chunk_review.review.orchestrator import review_bundle
from chunk_review.review.orchestrator import run_review
from chunk_review.vcs.git import GitDiffSource


class ReviewRequest(BaseModel):
    """
    review 请求。

    - files 为空/缺省：在配置的 repo_dir（REVIEW_REPO_DIR）里用 git CLI 计算 base...head 的 diff
    - 不接受未知字段：git 工作目录只能由部署方配置，调用方无法指定
    - base_ref/head_ref 缺省：使用配置里的值
    """

    model_config = ConfigDict(extra="forbid")

    base_ref: str | None = None
    head_ref: str | None = None
    files: list[FileDiff] | None = None
    prompt: str | None = None


class ReviewResponse(BaseModel):
    status: str = "ok"
    result: ReviewOutput
    files_reviewed: list[str] = Field(default_factory=list)


def build_app(
    config: ReviewConfig | None = None,
    http_client: httpx.AsyncClient | None = None,
    provider_url: str | None = None,
) -> FastAPI:
    """创建并返回 FastAPI app（便于测试/复用）。"""

    # 1) 配置：非法值直接抛错，启动失败（这是期望行为）
    base_config = config if config is not None else load_config_from_env(os.environ)

    # 2) 可复用的 HTTP client：所有 LLM 调用共用连接池
    client = http_client if http_client is not None else httpx.AsyncClient(timeout=httpx.Timeout(base_config.request_timeout_seconds))

    app = FastAPI(title="Chunked Diff Review", version="0.1.0")

    @app.get("/health")
    async def health() -> dict[str, str]:
        """健康检查：用于 k8s / LB 探活。"""
        return {"status": "ok"}

    @app.post("/review")
    async def review(request: ReviewRequest) -> ReviewResponse:
        """跑一次 review，返回 verdict + issues + 每个 chunk 的原始文本。"""
        updates = {k: v for k, v in (("base_ref", request.base_ref), ("head_ref", request.head_ref)) if v}
        run_config = base_config.model_copy(update=updates)

        try:
            orchestrator = build_review_orchestrator(config=run_config, http_client=client, provider_url=provider_url)
        except (MissingCredentialsError, UnsupportedProviderError) as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc

        if request.files is not None:
            bundle = DiffBundle(base_ref=run_config.base_ref, head_ref=run_config.head_ref, files=tuple(request.files))
            output = await review_bundle(orchestrator, bundle, prompt=request.prompt)
            return ReviewResponse(result=output, files_reviewed=[f.path for f in bundle.files])

        source = GitDiffSource(
            repo_dir=run_config.repo_dir,
            path_prefixes=run_config.path_prefixes,
            language=run_config.language,
        )
        try:
            output = await run_review(orchestrator, source)
        except RuntimeError as exc:
            raise HTTPException(status_code=502, detail=str(exc)) from exc
        return ReviewResponse(result=output)

    return app


logging.basicConfig(level=os.environ.get("LOG_LEVEL", "INFO"), format="%(asctime)s %(levelname)s %(name)s: %(message)s")

# Uvicorn 默认会从模块级变量 `app` 读取 ASGI 应用
app = build_app()
