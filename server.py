"""Generation Gateway — Web Server.

FastAPI backend exposing the resilient generation client: run a
generation, inspect spend and cache state, and check health.

Usage:
    python server.py
    # Then open http://localhost:8000/docs
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Any, Optional

from fastapi import FastAPI
from fastapi.responses import JSONResponse

import config
from pipeline import storage
from pipeline.client import GenerationClient, build_client
from pipeline.costs import default_tracker, get_model_pricing, get_usage_summary, match_pricing_prefix
from pipeline.errors import BudgetExceededError, GenerationError, ProviderHTTPError
from pipeline.health import HealthChecker, build_default_checker, build_unavailable_checker
from schemas.generation import GenerationRequest

logging.basicConfig(level=getattr(logging, config.LOG_LEVEL, logging.INFO), format="%(asctime)s %(levelname)s %(message)s")
logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# State
# ---------------------------------------------------------------------------

gateway_state: dict[str, Any] = {
    "client": None,  # GenerationClient, built lazily from config
    "checker": None,  # HealthChecker bound to the client
}


def _get_client() -> GenerationClient:
    """Build the client on first use. Raises GenerationError on bad provider config."""
    if gateway_state["client"] is None:
        gateway_state["client"] = build_client()
    return gateway_state["client"]


def _get_checker() -> HealthChecker:
    if gateway_state["checker"] is None:
        try:
            client = _get_client()
        except GenerationError as e:
            # Not cached, so the next call retries once config is fixed
            logger.error("Client could not be built: %s", e)
            return build_unavailable_checker(e)
        gateway_state["checker"] = build_default_checker(client)
    return gateway_state["checker"]


def _client_unavailable(e: GenerationError) -> JSONResponse:
    return JSONResponse({"error": f"Client could not be built: {e}"}, status_code=502)


def _persist_usage(entry):
    storage.save_usage_entry(entry)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    storage.init_db()
    warnings = config.check_settings()
    if warnings:
        logger.warning("=" * 60)
        logger.warning("CONFIG WARNINGS:")
        for w in warnings:
            logger.warning("  • %s", w)
        logger.warning("=" * 60)
    else:
        logger.info("Config OK: provider=%s, default_model=%s", config.PROVIDER, config.DEFAULT_MODEL)
    default_tracker.add_listener(_persist_usage)

    yield

    # Shutdown
    default_tracker.remove_listener(_persist_usage)
    client = gateway_state["client"]
    if client is not None:
        client.close()
        gateway_state["client"] = None
        gateway_state["checker"] = None


app = FastAPI(title="Generation Gateway", version="1.0.0", lifespan=lifespan)


# ---------------------------------------------------------------------------
# API Routes
# ---------------------------------------------------------------------------

@app.get("/api/health")
async def api_health():
    """Run all health checks. 503 when a critical check fails."""
    report = await asyncio.to_thread(_get_checker().run)
    body = report.model_dump(mode="json")
    if report.status == "fail":
        return JSONResponse(body, status_code=503)
    return body


@app.post("/api/generate")
async def api_generate(req: GenerationRequest):
    """Run one generation request through cache, budget and retries."""
    try:
        client = _get_client()
        result = await asyncio.to_thread(client.generate, req)
    except BudgetExceededError as e:
        return JSONResponse(
            {"error": str(e), "spent": e.spent, "estimated": e.estimated, "cap": e.cap},
            status_code=402,
        )
    except ProviderHTTPError as e:
        status = 400 if 400 <= e.status_code < 500 and e.status_code not in (408, 429) else 502
        return JSONResponse(
            {"error": str(e), "provider_status": e.status_code},
            status_code=status,
        )
    except GenerationError as e:
        return JSONResponse({"error": str(e)}, status_code=502)
    return result.model_dump(mode="json")


@app.get("/api/usage")
async def api_usage(limit: int = 50):
    """In-memory ledger: summary plus the most recent entries."""
    try:
        client = _get_client()
    except GenerationError as e:
        return _client_unavailable(e)
    entries = default_tracker.entries()[-limit:] if limit > 0 else []
    return {
        "summary": get_usage_summary(),
        "entries": [e.model_dump(mode="json") for e in reversed(entries)],
        "client": client.stats(),
    }


@app.delete("/api/usage")
async def api_reset_usage():
    """Reset the in-memory ledger (persisted history is kept)."""
    default_tracker.reset()
    return {"ok": True}


@app.get("/api/usage/history")
async def api_usage_history(limit: int = 100, model: Optional[str] = None):
    """Persisted usage history from SQLite."""
    return {
        "totals": storage.usage_totals(),
        "entries": storage.list_usage_entries(limit=limit, model=model),
    }


@app.get("/api/cache")
async def api_cache_stats():
    try:
        client = _get_client()
    except GenerationError as e:
        return _client_unavailable(e)
    if client.cache is None:
        return {"enabled": False}
    stats = client.cache.stats()
    stats["enabled"] = client.cache.enabled
    return stats


@app.delete("/api/cache")
async def api_clear_cache():
    try:
        client = _get_client()
    except GenerationError as e:
        return _client_unavailable(e)
    cleared = client.cache.clear() if client.cache is not None else 0
    return {"cleared": cleared}


@app.get("/api/pricing/{model}")
async def api_pricing(model: str):
    """Pricing applied to a model name (longest-prefix match or fallback)."""
    prefix = match_pricing_prefix(model)
    return {
        "model": model,
        "matched_prefix": prefix or None,
        "fallback": not prefix,
        "pricing": get_model_pricing(model).model_dump(),
    }


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

if __name__ == "__main__":
    import uvicorn
    print("\n  Generation Gateway")
    print(f"  http://localhost:{config.SERVER_PORT}/docs\n")
    uvicorn.run(app, host=config.SERVER_HOST, port=config.SERVER_PORT, log_level="info")
