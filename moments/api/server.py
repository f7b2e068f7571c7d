"""
Moments Intelligence Engine: API Server
=======================================

HTTP surface over the MomentsEngine: catalog browsing, stored moments,
incremental analysis runs and provider status.

Endpoints:
- GET    /health
- GET    /api/v1/catalog/status
- GET    /api/v1/companies
- GET    /api/v1/technologies
- GET    /api/v1/moments
- GET    /api/v1/moments/status
- GET    /api/v1/moments/entities/report
- GET    /api/v1/moments/{moment_id}
- DELETE /api/v1/moments/{moment_id}
- POST   /api/v1/moments/analyze
- DELETE /api/v1/moments/hashes
- GET    /api/v1/providers/status
- POST   /api/v1/providers/switch
- GET    /api/v1/audit

Handlers touching the filesystem or a provider are plain functions, so
FastAPI runs them in its threadpool. Analysis runs one at a time, each in
a worker thread.

Usage:
    uvicorn moments.api.server:app --reload
"""
import asyncio
import os
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Optional

from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field

from ..analysis import IncrementalOptions
from ..config import ConfigurationError, load_config
from ..contracts import AnalysisScope, MomentAnalysisResult
from ..engine import MomentsEngine
from ..storage import StorageError


# =============================================================================
# REQUEST MODELS
# =============================================================================

class AnalyzeRequest(BaseModel):
    scope: AnalysisScope = AnalysisScope.ALL
    force_full_analysis: bool = False
    temporal_window_days: Optional[int] = Field(default=None, ge=1)
    correlation_threshold: Optional[float] = Field(default=None, ge=0.0, le=1.0)


class SwitchProviderRequest(BaseModel):
    provider: str


# =============================================================================
# INFRASTRUCTURE SETUP
# =============================================================================

def _build_engine() -> MomentsEngine:
    config = load_config()
    print(f"[*] Initializing Moments Engine (data dir: {config.storage.data_dir})")
    engine = MomentsEngine(config, use_failover=os.environ.get("MOMENTS_USE_FAILOVER") == "1")
    print("[*] Engine initialized successfully.")
    return engine


def _run_analysis(
    engine: MomentsEngine,
    scope: AnalysisScope,
    options: IncrementalOptions
) -> MomentAnalysisResult:
    return asyncio.run(engine.analyze(scope, options))


def create_app(engine: Optional[MomentsEngine] = None, start_monitoring: bool = False) -> FastAPI:
    """Build the app; without an engine one is created from configuration at startup."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        try:
            app.state.engine = engine or _build_engine()
        except ConfigurationError as e:
            print(f"[!] FAILED to initialize engine: {e}")
            raise
        if start_monitoring:
            app.state.engine.start_monitoring()
        yield
        print("[*] Shutting down engine.")
        app.state.engine.shutdown()
        app.state.engine = None
    analysis_lock = asyncio.Lock()

    app = FastAPI(
        title="Moments Intelligence Engine API",
        version="0.1.0",
        description="Incremental pivotal-moment analysis over the AI company and technology catalog",
        lifespan=lifespan,
    )
    app.state.engine = None

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["GET", "POST", "DELETE"],
        allow_headers=["*"],
    )

    def get_engine(request: Request) -> MomentsEngine:
        current = request.app.state.engine
        if current is None:
            raise HTTPException(status_code=503, detail="Engine not initialized")
        return current

    # =========================================================================
    # ENDPOINTS
    # =========================================================================

    @app.get("/health")
    async def health_check(request: Request):
        get_engine(request)
        return {"status": "online"}

    @app.get("/api/v1/catalog/status")
    def catalog_status(request: Request):
        return get_engine(request).catalog_status()

    @app.get("/api/v1/companies")
    def get_companies(request: Request):
        result = get_engine(request).load_catalog().companies
        return {
            "companies": [c.to_dict() for c in result.entities],
            "errors": list(result.errors),
        }

    @app.get("/api/v1/technologies")
    def get_technologies(request: Request):
        result = get_engine(request).load_catalog().technologies
        return {
            "technologies": [t.to_dict() for t in result.entities],
            "errors": list(result.errors),
        }

    @app.get("/api/v1/moments")
    def get_moments(
        request: Request,
        source: Optional[str] = None,
        min_impact: int = Query(default=0, ge=0, le=100),
        limit: int = Query(default=500, ge=1),
        offset: int = Query(default=0, ge=0)
    ):
        moments = get_engine(request).list_moments()
        if source:
            moments = [m for m in moments if m.source.name == source or m.source.id == source]
        moments = [m for m in moments if m.impact.score >= min_impact]
        return {
            "total": len(moments),
            "moments": [m.to_dict() for m in moments[offset:offset + limit]],
        }

    @app.get("/api/v1/moments/status")
    def moments_status(request: Request):
        current = get_engine(request)
        return {
            "storage": current.moments_status().to_dict(),
            "incremental": current.incremental_stats().to_dict(),
        }

    @app.get("/api/v1/moments/entities/report")
    def entity_report(
        request: Request,
        max_entities: int = Query(default=20, ge=2, le=100),
        min_cluster_size: int = Query(default=3, ge=2)
    ):
        return get_engine(request).entity_report(max_entities, min_cluster_size).to_dict()

    @app.delete("/api/v1/moments/hashes")
    def clear_hashes(request: Request):
        try:
            get_engine(request).clear_content_hashes()
        except StorageError as e:
            raise HTTPException(status_code=500, detail=str(e))
        return {"cleared": True}

    @app.get("/api/v1/moments/{moment_id}")
    def get_moment(moment_id: str, request: Request):
        try:
            moment = get_engine(request).get_moment(moment_id)
        except (OSError, ValueError, KeyError) as e:
            raise HTTPException(status_code=500, detail=f"Unreadable moment {moment_id}: {e}")
        if moment is None:
            raise HTTPException(status_code=404, detail=f"Moment not found: {moment_id}")
        return moment.to_dict()

    @app.delete("/api/v1/moments/{moment_id}")
    def delete_moment(moment_id: str, request: Request):
        if not get_engine(request).delete_moment(moment_id):
            raise HTTPException(status_code=404, detail=f"Moment not found: {moment_id}")
        return {"deleted": moment_id}

    @app.post("/api/v1/moments/analyze")
    async def analyze(body: AnalyzeRequest, request: Request):
        options = IncrementalOptions(
            temporal_window_days=body.temporal_window_days,
            correlation_threshold=body.correlation_threshold,
            force_full_analysis=body.force_full_analysis,
        )
        current = get_engine(request)
        async with analysis_lock:
            result = await run_in_threadpool(_run_analysis, current, body.scope, options)
        payload = result.to_dict()
        payload["success"] = result.success
        return payload

    @app.get("/api/v1/providers/status")
    def providers_status(request: Request, check: bool = False):
        return get_engine(request).provider_status(check=check)

    @app.post("/api/v1/providers/switch")
    def switch_provider(body: SwitchProviderRequest, request: Request):
        current = get_engine(request)
        if not current.switch_provider(body.provider):
            raise HTTPException(status_code=409, detail=f"Provider {body.provider} is not healthy")
        return {"primary": current.factory.primary_type, "fallback": current.factory.fallback_type}

    @app.get("/api/v1/audit")
    def audit(request: Request, since: Optional[datetime] = None):
        return get_engine(request).get_audit_report(since)

    return app


app = create_app(start_monitoring=os.environ.get("MOMENTS_MONITORING") == "1")
