"""
Concierge - Hotel booking assistant resolution API
Run with: uvicorn main:app --reload --port 8000

Supports two modes:
- LITE MODE: No Redis - in-memory cache, sessions and escalation cases
- FULL MODE: With Redis - persistent cache tier, sessions, escalation cases, event stream

Generative and semantic stages activate when provider credentials are present.
"""

import logging
from contextlib import asynccontextmanager
from typing import Literal

from dotenv import load_dotenv
load_dotenv()  # Must be before importing config

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from concierge.config import Config
from concierge.errors import AllProvidersFailedError
from concierge.models import EscalationStatus
from concierge.runtime import Runtime

logger = logging.getLogger(__name__)

cfg = Config()  # Fresh instance after dotenv loaded

# Globals
_runtime: Runtime = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    global _runtime

    print("\n" + "="*50)
    print("  Concierge Startup")
    print("="*50 + "\n")

    _runtime = await Runtime.connect(cfg)
    await _runtime.start()

    providers = _runtime.providers.available_providers()
    print(f"  Providers: {', '.join(providers) if providers else 'none (generative stage disabled)'}")
    print(f"  Semantic search: {'enabled' if _runtime.semantic is not None else 'disabled'}")
    print(f"  Cache: {len(_runtime.cache)}/{cfg.memory_cache_size} entries, TTL {cfg.memory_cache_ttl:.0f}s")
    print(f"  Breakers: threshold {cfg.breaker_failure_threshold}, reset {cfg.breaker_reset_timeout:.0f}s")

    print("\n" + "="*50)
    print(f"  Concierge Running in {_runtime.mode} MODE")
    print("="*50)
    if _runtime.mode == "LITE":
        print("  (Set REDIS_URL in .env for persistent storage)")
    print(f"\n  API: http://localhost:8000")
    print(f"  Docs: http://localhost:8000/docs\n")

    yield

    # Shutdown
    await _runtime.stop()


app = FastAPI(title="Concierge", version="0.1.0", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Sanitized global exception handler - never exposes internal details."""
    logger.error(f"Unhandled exception: {exc}", exc_info=True)

    return JSONResponse(
        status_code=500,
        content={
            "success": False,
            "error": {
                "code": "INTERNAL_SERVER_ERROR",
                "message": "An unexpected error occurred. Please try again later."
            }
        },
        headers={"Access-Control-Allow-Origin": "*"}
    )


def _error(status_code: int, code: str, message: str) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"success": False, "error": {"code": code, "message": message}},
    )


class QueryRequest(BaseModel):
    query: str = Field(..., min_length=1, max_length=2000)
    user_id: str = Field(default="anonymous", min_length=1, max_length=128)
    language: str | None = Field(default=None, max_length=8)
    username: str | None = None
    timeout: float | None = Field(default=None, gt=0, le=120)


class ProviderPreferenceRequest(BaseModel):
    user_id: str = Field(..., min_length=1)
    provider: str = Field(..., min_length=1)


class FallbackToggleRequest(BaseModel):
    enabled: bool


class EscalationStatusRequest(BaseModel):
    status: Literal["pending", "in_progress", "resolved"]


class ImageAnalysisRequest(BaseModel):
    prompt: str = Field(..., min_length=1, max_length=2000)
    image_url: str = Field(..., min_length=1)
    user_id: str | None = None


@app.post("/api/query")
async def query(req: QueryRequest):
    context = await _runtime.sessions.get(req.user_id, req.language)
    if req.username:
        context.username = req.username
    result = await _runtime.orchestrator.resolve(
        req.query,
        req.language or context.language,
        user_id=req.user_id,
        context=context,
        timeout=req.timeout,
    )
    await _runtime.sessions.save(context)
    return {"success": True, "user_id": req.user_id, **result.to_dict()}


@app.get("/api/health")
async def health():
    return _runtime.health()


@app.get("/api/cache/stats")
async def cache_stats():
    return _runtime.cache.stats()


@app.delete("/api/cache")
async def clear_cache():
    await _runtime.cache.clear()
    return {"status": "cleared"}


@app.get("/api/breakers")
async def breakers():
    return {**_runtime.breakers.metrics(), "overall": _runtime.breakers.health_check()["overall"]}


@app.post("/api/breakers/{service_key}/reset")
async def reset_breaker(service_key: str):
    if not _runtime.breakers.reset(service_key):
        return _error(404, "NOT_FOUND", f"No circuit breaker named '{service_key}'")
    return {"success": True, "service": service_key, "state": _runtime.breakers.get(service_key).get_state()}


@app.get("/api/providers")
async def providers():
    return _runtime.providers.provider_status()


@app.put("/api/providers/preference")
async def set_provider_preference(req: ProviderPreferenceRequest):
    try:
        _runtime.providers.set_user_preference(req.user_id, req.provider)
    except ValueError as e:
        return _error(400, "UNKNOWN_PROVIDER", str(e))
    return {"success": True, "user_id": req.user_id, "provider": req.provider}


@app.put("/api/providers/fallback")
async def set_provider_fallback(req: FallbackToggleRequest):
    _runtime.providers.set_fallback_enabled(req.enabled)
    return {"success": True, "fallback_enabled": req.enabled}


@app.post("/api/image/analyze")
async def analyze_image(req: ImageAnalysisRequest):
    try:
        outcome = await _runtime.providers.analyze_image(req.prompt, req.image_url, req.user_id)
    except AllProvidersFailedError as e:
        logger.warning(f"Image analysis failed: {e}")
        return _error(503, "PROVIDERS_UNAVAILABLE", "Image analysis is temporarily unavailable.")
    return {"success": True, **outcome.to_dict()}


@app.get("/api/escalations/stats")
async def escalation_stats():
    return await _runtime.escalation.stats()


@app.patch("/api/escalations/{case_id}")
async def update_escalation(case_id: str, req: EscalationStatusRequest):
    record = await _runtime.escalation.update_status(case_id, EscalationStatus(req.status))
    if record is None:
        return _error(404, "NOT_FOUND", f"No escalation case '{case_id}'")
    return {"success": True, "case": record.to_dict()}


@app.get("/api/stats/optimization")
async def optimization_stats():
    return {
        **_runtime.usage.optimization_stats(),
        "cache": _runtime.cache.stats(),
    }


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
