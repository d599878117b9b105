"""Gateway configuration — provider, retry, cache, budget, paths."""

import os
from pathlib import Path
from dotenv import load_dotenv

load_dotenv()


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name, "")
    try:
        return int(raw) if raw.strip() else default
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name, "")
    try:
        return float(raw) if raw.strip() else default
    except ValueError:
        return default


def _env_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name, "").strip().lower()
    if not raw:
        return default
    return raw in {"1", "true", "yes", "on"}


# ---------------------------------------------------------------------------
# Paths
# ---------------------------------------------------------------------------
ROOT_DIR = Path(__file__).parent
DATA_DIR = ROOT_DIR / os.getenv("DATA_DIR", "data")
DB_PATH = DATA_DIR / os.getenv("USAGE_DB_NAME", "generation_gateway.db")

# ---------------------------------------------------------------------------
# Provider
#
# "mock" keeps local dev and tests offline. "http" talks to any JSON
# generation endpoint exposing POST /v1/generate and GET /health.
# ---------------------------------------------------------------------------
PROVIDER = os.getenv("PROVIDER", "mock").strip().lower()
PROVIDER_BASE_URL = os.getenv("PROVIDER_BASE_URL", "").strip().rstrip("/")
PROVIDER_API_KEY = os.getenv("PROVIDER_API_KEY", "")
FORCE_MOCK_PROVIDER = _env_bool("FORCE_MOCK_PROVIDER", False)
REQUEST_TIMEOUT_SECONDS = _env_float("REQUEST_TIMEOUT_SECONDS", 60.0)

# Used when a request doesn't name a model
DEFAULT_MODEL = os.getenv("DEFAULT_MODEL", "gemini-2.5-flash")

# ---------------------------------------------------------------------------
# Retry (exponential backoff on 429 / 5xx / connection errors)
# ---------------------------------------------------------------------------
RETRY_MAX_ATTEMPTS = max(1, _env_int("RETRY_MAX_ATTEMPTS", 3))
RETRY_WAIT_MULTIPLIER = _env_float("RETRY_WAIT_MULTIPLIER", 1.0)
RETRY_WAIT_MIN_SECONDS = _env_float("RETRY_WAIT_MIN_SECONDS", 2.0)
RETRY_WAIT_MAX_SECONDS = _env_float("RETRY_WAIT_MAX_SECONDS", 30.0)

# ---------------------------------------------------------------------------
# Response cache
# ---------------------------------------------------------------------------
CACHE_MAX_ENTRIES = _env_int("CACHE_MAX_ENTRIES", 256)
CACHE_TTL_SECONDS = _env_float("CACHE_TTL_SECONDS", 3600.0)

# ---------------------------------------------------------------------------
# Cost controls
# ---------------------------------------------------------------------------
# Hard cap for the process lifetime ledger. 0 disables the cap.
MAX_COST_USD = _env_float("MAX_COST_USD", 0.0)
BUDGET_WARN_RATIO = _env_float("BUDGET_WARN_RATIO", 0.8)

# ---------------------------------------------------------------------------
# Batch fan-out
# ---------------------------------------------------------------------------
GENERATE_MAX_WORKERS = max(1, _env_int("GENERATE_MAX_WORKERS", 4))

# ---------------------------------------------------------------------------
# Server / logging
# ---------------------------------------------------------------------------
SERVER_HOST = os.getenv("SERVER_HOST", "0.0.0.0")
SERVER_PORT = _env_int("SERVER_PORT", 8000)
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()


def check_settings() -> list[str]:
    """Return human-readable warnings about the current configuration."""
    warnings = []
    if PROVIDER not in {"mock", "http"}:
        warnings.append(f"PROVIDER is '{PROVIDER}' — expected 'mock' or 'http'")
    if PROVIDER == "http" and not FORCE_MOCK_PROVIDER:
        if not PROVIDER_BASE_URL:
            warnings.insert(0, "PROVIDER is 'http' but PROVIDER_BASE_URL is not set — generation will fail!")
        if not PROVIDER_API_KEY:
            warnings.append("PROVIDER_API_KEY is not set")
    if MAX_COST_USD < 0:
        warnings.append(f"MAX_COST_USD is negative ({MAX_COST_USD}) — treated as unlimited")
    if not 0 < BUDGET_WARN_RATIO <= 1:
        warnings.append(f"BUDGET_WARN_RATIO should be in (0, 1], got {BUDGET_WARN_RATIO}")
    if CACHE_MAX_ENTRIES <= 0:
        warnings.append("CACHE_MAX_ENTRIES <= 0 — response cache is disabled")
    return warnings
