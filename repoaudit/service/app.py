"""FastAPI application entrypoint for repoaudit service mode."""

from __future__ import annotations

import asyncio
import math
import threading
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, AsyncIterator, Callable, Dict, List, Optional

from fastapi import Depends, FastAPI
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from ..config import load_config
from ..errors import (
    AuditError,
    AuthenticationError,
    NotFoundError,
    PrivateRepoError,
    RateLimitError,
    ValidationError,
)
from ..estimator import estimate_all_tiers, quote_price
from ..manifest import manifest_from_dict
from ..models import AuditReport
from ..orchestrator import AuditOrchestrator, AuditPlan
from ..stores.archive_cache import RepoArchiveCache
from ..stores.archive_store import ArchiveStore
from ..stores.report_store import ReportStore


class EstimateRequest(BaseModel):
    manifest: Dict[str, Any]
    tier: str = "shape"


class TierQuote(BaseModel):
    tier: str
    estimated_tokens: int
    max_tokens: int
    formatted_tokens: str
    price_cents: int
    price: str


class EstimateResponse(BaseModel):
    repo_id: str
    tier: str
    estimated_tokens: int
    max_tokens: int
    price_cents: int
    price: str
    tiers: List[TierQuote]


class PlanRequest(BaseModel):
    manifest: Dict[str, Any]
    tier: str = "shape"


class ChunkView(BaseModel):
    id: str
    name: str
    priority: int
    total_tokens: int
    files: List[str]


class PlanResponse(BaseModel):
    repo_id: str
    tier: str
    chunk_budget: int
    chunks: List[ChunkView]


class AuditRequest(BaseModel):
    manifest: Dict[str, Any]
    tier: str = "shape"
    declared_tokens: Optional[int] = None
    prepare_archive: bool = False


class HealthResponse(BaseModel):
    status: str


_STATUS_BY_ERROR = (
    (ValidationError, 400),
    (AuthenticationError, 401),
    (PrivateRepoError, 403),
    (NotFoundError, 404),
    (RateLimitError, 429),
)


def status_for_error(exc: AuditError) -> int:
    for error_type, status in _STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            return status
    return 500


class ArchiveBackedOrchestratorFactory:
    """Builds a fresh orchestrator per request around one shared archive cache.

    The archive database is opened on first use and stays open until
    ``close`` so that ``prepare_archive`` requests reuse the same store.
    """

    def __init__(self, root: Path | None = None) -> None:
        self.config = load_config(root or Path.cwd())
        self._store: ArchiveStore | None = None
        self._archive: RepoArchiveCache | None = None
        self._lock = threading.Lock()

    def __call__(self) -> AuditOrchestrator:
        with self._lock:
            if self._archive is None:
                self._store = ArchiveStore(self.config.archive_path)
                self._archive = RepoArchiveCache(self._store)
            archive = self._archive
        return AuditOrchestrator(self.config, archive=archive)

    def close(self) -> None:
        with self._lock:
            if self._archive is not None:
                self._archive.close()
            if self._store is not None:
                self._store.close()
            self._archive = None
            self._store = None


def create_app(
    orchestrator_factory: Callable[[], AuditOrchestrator] | None = None,
    report_store: ReportStore | None = None,
) -> FastAPI:
    """Create the FastAPI application exposing repoaudit operations."""

    owned_factory: ArchiveBackedOrchestratorFactory | None = None
    if orchestrator_factory is None:
        owned_factory = ArchiveBackedOrchestratorFactory()
        orchestrator_factory = owned_factory
    factory = orchestrator_factory

    @asynccontextmanager
    async def lifespan(_: FastAPI) -> AsyncIterator[None]:
        yield
        if owned_factory is not None:
            owned_factory.close()

    app = FastAPI(title="RepoAudit Service", version="1.0.0", lifespan=lifespan)

    async def get_orchestrator() -> AuditOrchestrator:
        # Fresh per request: cancellation state belongs to a single run.
        return factory()

    @app.get("/health", response_model=HealthResponse)
    async def health() -> HealthResponse:
        return HealthResponse(status="ok")

    @app.post("/estimate", response_model=EstimateResponse)
    async def estimate(
        payload: EstimateRequest,
        orchestrator: AuditOrchestrator = Depends(get_orchestrator),
    ) -> EstimateResponse:
        manifest = manifest_from_dict(payload.manifest)
        plan = orchestrator.plan(manifest, payload.tier)
        quote = quote_price(plan.estimated_tokens)
        tiers = []
        for item in estimate_all_tiers(plan.fingerprint).values():
            tier_quote = quote_price(item.estimated_tokens)
            tiers.append(
                TierQuote(
                    tier=item.tier,
                    estimated_tokens=item.estimated_tokens,
                    max_tokens=item.max_tokens,
                    formatted_tokens=item.formatted,
                    price_cents=tier_quote.total_cents,
                    price=tier_quote.formatted,
                )
            )
        return EstimateResponse(
            repo_id=manifest.repo_id,
            tier=plan.tier,
            estimated_tokens=plan.estimated_tokens,
            max_tokens=plan.max_tokens,
            price_cents=quote.total_cents,
            price=quote.formatted,
            tiers=tiers,
        )

    @app.post("/plan", response_model=PlanResponse)
    async def plan_audit(
        payload: PlanRequest,
        orchestrator: AuditOrchestrator = Depends(get_orchestrator),
    ) -> PlanResponse:
        manifest = manifest_from_dict(payload.manifest)
        plan: AuditPlan = orchestrator.plan(manifest, payload.tier)
        return PlanResponse(
            repo_id=manifest.repo_id,
            tier=plan.tier,
            chunk_budget=plan.chunk_budget,
            chunks=[
                ChunkView(
                    id=chunk.id,
                    name=chunk.name,
                    priority=chunk.priority,
                    total_tokens=chunk.total_tokens,
                    files=chunk.paths,
                )
                for chunk in plan.chunks
            ],
        )

    @app.post("/audit")
    async def run_audit(
        payload: AuditRequest,
        orchestrator: AuditOrchestrator = Depends(get_orchestrator),
    ) -> Dict[str, Any]:
        manifest = manifest_from_dict(payload.manifest)

        def _run_audit() -> AuditReport:
            return orchestrator.run(
                manifest,
                payload.tier,
                declared_tokens=payload.declared_tokens,
                prepare_archive=payload.prepare_archive,
            )

        loop = asyncio.get_running_loop()
        report = await loop.run_in_executor(None, _run_audit)
        if report_store is not None:
            report_store.save(report)
        return report.to_dict()

    @app.exception_handler(AuditError)
    async def audit_error_handler(_: Any, exc: AuditError) -> JSONResponse:
        status = status_for_error(exc)
        headers: Dict[str, str] = {}
        if isinstance(exc, RateLimitError) and exc.retry_after is not None:
            headers["Retry-After"] = str(math.ceil(exc.retry_after))
        detail = exc.message if status < 500 else "Internal error while running the audit"
        return JSONResponse(
            status_code=status,
            content={"detail": detail, "code": exc.code, "retryable": exc.retryable},
            headers=headers,
        )

    return app


def run_service(
    host: str = "0.0.0.0", port: int = 8000
) -> None:  # pragma: no cover - integration path
    import uvicorn

    app = create_app()
    uvicorn.run(app, host=host, port=port)
