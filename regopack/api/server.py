"""
regopack REST API Server

Exposes policy compilation over HTTP. Compiled bundles are returned as
`application/gzip` bodies.

Base URL: /api/v1
"""

from __future__ import annotations

import io
import json
import os
import time
from datetime import datetime, timezone
from functools import lru_cache
from typing import Any

import structlog
from fastapi import Depends, FastAPI, File, Form, HTTPException, Request, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse, Response
from pydantic import BaseModel, Field

from regopack.compilers.orchestrator import RegoCompiler
from regopack.core.errors import (
    BackendUnavailableError,
    CompilationFailedError,
    InvalidInputError,
    MalformedCapabilitiesError,
    RegoCompilationError,
)
from regopack.core.metrics import (
    export_metrics_json,
    export_metrics_prometheus,
    track_request,
)
from regopack.core.options import CompilerOptions

logger = structlog.get_logger(__name__)

VERSION = "1.0.0"

BUNDLE_MEDIA_TYPE = "application/gzip"

# =============================================================================
# Application Setup
# =============================================================================

app = FastAPI(
    title="regopack API",
    description="Compiles Rego policies into OPA policy bundles",
    version=VERSION,
    docs_url="/api/docs",
    redoc_url="/api/redoc",
    openapi_url="/api/openapi.json",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=os.environ.get("CORS_ORIGINS", "http://localhost:3000").split(","),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def metrics_middleware(request: Request, call_next):
    """Track request metrics."""
    start_time = time.perf_counter()
    status = 500
    try:
        response = await call_next(request)
        status = response.status_code
        return response
    finally:
        track_request(
            request.url.path, request.method, time.perf_counter() - start_time, status
        )


# =============================================================================
# Request/Response Models
# =============================================================================

class CompileSourceRequest(BaseModel):
    """Request to compile Rego source text."""
    source: str = Field(..., min_length=1, description="Rego policy source")
    entrypoints: list[str] = Field(default_factory=list, description="Decision entrypoints")


class HealthResponse(BaseModel):
    """Health check response."""
    status: str
    version: str
    backend: str
    timestamp: str


# =============================================================================
# Dependencies
# =============================================================================

@lru_cache
def get_compiler() -> RegoCompiler:
    """Dependency to get the compiler instance."""
    return RegoCompiler(CompilerOptions.from_env())


def _parse_entrypoints(raw: str) -> list[str]:
    """Accept a JSON array or a comma separated list."""
    raw = raw.strip()
    if not raw:
        return []
    if raw.startswith("["):
        try:
            values = json.loads(raw)
        except json.JSONDecodeError as e:
            raise HTTPException(status_code=400, detail=f"Invalid entrypoints: {e}") from e
        if not isinstance(values, list) or not all(isinstance(v, str) for v in values):
            raise HTTPException(status_code=400, detail="Entrypoints must be a list of strings")
        return values
    return [v.strip() for v in raw.split(",") if v.strip()]


def _bundle_response(stream) -> Response:
    with stream:
        content = stream.read()
    return Response(
        content=content,
        media_type=BUNDLE_MEDIA_TYPE,
        headers={"Content-Disposition": 'attachment; filename="bundle.tar.gz"'},
    )


# =============================================================================
# API Endpoints
# =============================================================================

@app.get("/api/v1/health", response_model=HealthResponse, tags=["Health"])
async def health_check(compiler: RegoCompiler = Depends(get_compiler)) -> HealthResponse:
    """Health check endpoint."""
    return HealthResponse(
        status="healthy",
        version=VERSION,
        backend=compiler.backend.name,
        timestamp=datetime.now(timezone.utc).isoformat(),
    )


@app.get("/api/v1/version", tags=["Compilation"])
async def compiler_version(compiler: RegoCompiler = Depends(get_compiler)) -> dict[str, Any]:
    """Version of the configured compiler backend."""
    version = await compiler.version()
    return {"backend": compiler.backend.name, **version.model_dump()}


@app.post("/api/v1/compile/source", tags=["Compilation"])
async def compile_source(
    request: CompileSourceRequest,
    compiler: RegoCompiler = Depends(get_compiler),
) -> Response:
    """Compile Rego source text into a policy bundle."""
    bundle = await compiler.compile_source(request.source, request.entrypoints)
    logger.info("source_compiled", entrypoints=request.entrypoints)
    return _bundle_response(bundle)


@app.post("/api/v1/compile/bundle", tags=["Compilation"])
async def compile_bundle(
    bundle: UploadFile = File(...),
    entrypoints: str = Form(default=""),
    capabilities: UploadFile | None = File(default=None),
    compiler: RegoCompiler = Depends(get_compiler),
) -> Response:
    """Compile an uploaded bundle archive (tar.gz)."""
    eps = _parse_entrypoints(entrypoints)
    archive = io.BytesIO(await bundle.read())
    caps = io.BytesIO(await capabilities.read()) if capabilities is not None else None

    result = await compiler.compile_stream_source(archive, eps, caps)
    logger.info("bundle_compiled", filename=bundle.filename, entrypoints=eps)
    return _bundle_response(result)


@app.get("/api/v1/metrics", tags=["Metrics"])
async def metrics_json() -> dict[str, Any]:
    """JSON metrics endpoint."""
    return export_metrics_json()


@app.get("/metrics", tags=["Metrics"])
async def metrics_prometheus() -> PlainTextResponse:
    """Prometheus metrics endpoint."""
    return PlainTextResponse(export_metrics_prometheus())


# =============================================================================
# Error Handlers
# =============================================================================

def _error_status(exc: RegoCompilationError) -> int:
    if isinstance(exc, (CompilationFailedError, InvalidInputError, MalformedCapabilitiesError)):
        return 422
    if isinstance(exc, BackendUnavailableError):
        return 503
    return 500


@app.exception_handler(RegoCompilationError)
async def compilation_exception_handler(request, exc: RegoCompilationError):
    """Map compilation errors to HTTP responses."""
    status_code = _error_status(exc)
    logger.warning(
        "request_compilation_error",
        path=request.url.path,
        error_type=type(exc).__name__,
        status_code=status_code,
    )
    return JSONResponse(
        status_code=status_code,
        content={
            "error": exc.message,
            "error_type": type(exc).__name__,
            "source": exc.source,
            "status_code": status_code,
        },
    )


@app.exception_handler(HTTPException)
async def http_exception_handler(request, exc: HTTPException):
    """Handle HTTP exceptions."""
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "error": exc.detail,
            "status_code": exc.status_code,
        },
    )


# =============================================================================
# Entry Point
# =============================================================================

def main() -> None:
    """Run the API server."""
    import uvicorn

    from regopack.core.logging import setup_logging

    setup_logging(json_output=os.environ.get("REGOPACK_LOG_JSON", "false").lower() == "true")

    uvicorn.run(
        "regopack.api.server:app",
        host=os.environ.get("HOST", "0.0.0.0"),
        port=int(os.environ.get("PORT", "8080")),
        reload=os.environ.get("RELOAD", "false").lower() == "true",
    )


if __name__ == "__main__":
    main()
