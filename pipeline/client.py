"""Generation client — cache, budget guard, retries and cost tracking
around a single provider.

Error handling:
  - 400-level errors (bad request, auth, not found) are NOT retried (they won't fix themselves).
  - 408, 429 (rate limit) and 5xx (server errors) ARE retried with exponential backoff.
  - Connection and timeout errors ARE retried.
  - All errors are extracted into clean, readable messages.
"""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable, Sequence

import httpx
from pydantic import ValidationError
from tenacity import (
    RetryCallState,
    Retrying,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

import config
from pipeline.cache import ResponseCache, make_cache_key
from pipeline.costs import CostTracker, default_tracker
from pipeline.errors import BudgetExceededError, GenerationError, ProviderHTTPError
from pipeline.providers import ModelProvider, build_provider
from schemas.generation import GenerationRequest, GenerationResult, Usage, estimate_usage

logger = logging.getLogger(__name__)

RETRYABLE_STATUS_CODES = frozenset({408, 429, 500, 502, 503, 504, 529})


# ---------------------------------------------------------------------------
# Error helpers
# ---------------------------------------------------------------------------

def is_retryable(exc: BaseException) -> bool:
    """Return True if the error is transient and worth retrying.

    We retry on:
      - Request timeout / rate limits (408, 429)
      - Server errors (500, 502, 503, 504, 529)
      - Connection / timeout errors
    We do NOT retry on:
      - Other 4xx (bad params, bad key, unknown model)
      - Budget errors
      - Pydantic validation errors
    """
    if isinstance(exc, BudgetExceededError):
        return False
    if isinstance(exc, ProviderHTTPError):
        return exc.status_code in RETRYABLE_STATUS_CODES
    if isinstance(exc, (httpx.TimeoutException, httpx.TransportError)):
        return True
    if isinstance(exc, (ConnectionError, TimeoutError)):
        return True
    return False


def extract_error_message(exc: BaseException, provider: str, model: str) -> str:
    """Pull out a clean, human-readable error message from a provider exception."""
    msg = str(exc)

    if isinstance(exc, ProviderHTTPError):
        code = exc.status_code
        if code in (401, 403):
            return f"[{provider}] Authentication failed — check your PROVIDER_API_KEY."
        if code == 404:
            return f"[{provider}] Model '{model}' not found. Check the model name or PROVIDER_BASE_URL."
        if code == 429:
            return f"[{provider}/{model}] Rate limited: {msg}"
        if code == 400:
            return f"[{provider}/{model}] Bad request: {msg}"
        return f"[{provider}/{model}] HTTP {code}: {msg}"

    if isinstance(exc, httpx.TimeoutException):
        return f"[{provider}/{model}] Request timed out after {config.REQUEST_TIMEOUT_SECONDS:.0f}s"
    if isinstance(exc, httpx.TransportError):
        return f"[{provider}/{model}] Connection failed: {msg}"

    if isinstance(exc, ValidationError):
        n_errors = exc.error_count()
        return (
            f"[{provider}/{model}] Response didn't match the expected schema "
            f"({n_errors} validation error{'s' if n_errors != 1 else ''})."
        )

    # Generic fallback: truncate very long messages
    if len(msg) > 300:
        msg = msg[:300] + "..."
    return f"[{provider}/{model}] {msg}"


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------

class GenerationClient:
    """Provider-agnostic generation client.

    Order of operations per call: cache lookup → budget reservation → provider
    call with retries → ledger record → cache store.
    """

    def __init__(
        self,
        provider: ModelProvider,
        cache: ResponseCache | None = None,
        tracker: CostTracker | None = None,
        *,
        max_attempts: int | None = None,
        wait_multiplier: float | None = None,
        wait_min: float | None = None,
        wait_max: float | None = None,
        sleep: Callable[[float], None] | None = None,
    ):
        self.provider = provider
        self.cache = cache
        self.tracker = tracker if tracker is not None else default_tracker
        self.max_attempts = max(1, max_attempts if max_attempts is not None else config.RETRY_MAX_ATTEMPTS)
        self.wait_multiplier = wait_multiplier if wait_multiplier is not None else config.RETRY_WAIT_MULTIPLIER
        self.wait_min = wait_min if wait_min is not None else config.RETRY_WAIT_MIN_SECONDS
        self.wait_max = wait_max if wait_max is not None else config.RETRY_WAIT_MAX_SECONDS
        self._sleep = sleep or time.sleep
        self._lock = threading.Lock()
        self._calls = 0
        self._provider_calls = 0
        self._failures = 0
        self._retries = 0

    def _bump(self, field: str, amount: int = 1):
        with self._lock:
            setattr(self, field, getattr(self, field) + amount)

    def _before_sleep(self, retry_state: RetryCallState):
        self._bump("_retries")
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        wait = retry_state.next_action.sleep if retry_state.next_action else 0.0
        logger.warning(
            "Transient provider error (attempt %d/%d), retrying in %.1fs: %s",
            retry_state.attempt_number, self.max_attempts, wait, exc,
        )

    def _retrying(self) -> Retrying:
        return Retrying(
            retry=retry_if_exception(is_retryable),
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=self.wait_multiplier, min=self.wait_min, max=self.wait_max),
            before_sleep=self._before_sleep,
            sleep=self._sleep,
            reraise=True,
        )

    def _from_cache(self, key: str, request: GenerationRequest) -> GenerationResult | None:
        hit = self.cache.get(key) if self.cache is not None else None
        if hit is None:
            return None
        self.tracker.record(
            self.provider.name,
            request.model,
            request.kind,
            Usage(),
            cached=True,
            saved=hit.cost,
            metadata={"cache_key": key[:16]},
        )
        return hit.model_copy(update={"cached": True, "attempts": 0, "cost": 0.0, "latency_seconds": 0.0})

    def generate(self, request: GenerationRequest) -> GenerationResult:
        """Run one request. Raises GenerationError (or a subclass) on failure."""
        self._bump("_calls")
        provider_name = self.provider.name
        model = request.model

        key = None
        if request.use_cache and self.cache is not None and self.cache.enabled:
            key = make_cache_key(provider_name, request)
            cached = self._from_cache(key, request)
            if cached is not None:
                return cached

        estimated = self.tracker.estimate(model, estimate_usage(request))
        reserved = self.tracker.reserve(estimated, model=model)

        logger.info(
            "Generation call: provider=%s, model=%s, kind=%s, est_cost=$%.4f",
            provider_name, model, request.kind.value, estimated,
        )
        attempts = 0

        def _attempt():
            nonlocal attempts
            attempts += 1
            self._bump("_provider_calls")
            return self.provider.generate(request)

        start = time.monotonic()
        try:
            response = self._retrying()(_attempt)
        except ProviderHTTPError as exc:
            self._bump("_failures")
            self.tracker.release(reserved)
            clean_msg = extract_error_message(exc, provider_name, model)
            logger.error("Generation call failed after %d attempt(s): %s", attempts, clean_msg)
            err = ProviderHTTPError(exc.status_code, clean_msg, provider=provider_name, model=model)
            err.cause = exc
            raise err from exc
        except GenerationError:
            self._bump("_failures")
            self.tracker.release(reserved)
            raise
        except Exception as exc:
            self._bump("_failures")
            self.tracker.release(reserved)
            clean_msg = extract_error_message(exc, provider_name, model)
            logger.error("Generation call failed after %d attempt(s): %s", attempts, clean_msg)
            raise GenerationError(clean_msg, provider=provider_name, model=model, cause=exc) from exc
        latency = time.monotonic() - start

        usage = response.usage if not response.usage.is_empty() else estimate_usage(request)
        entry = self.tracker.record(
            provider_name,
            model,
            request.kind,
            usage,
            metadata={"attempts": attempts},
            reserved=reserved,
        )
        result = GenerationResult(
            provider=provider_name,
            model=model,
            kind=request.kind,
            text=response.text,
            artifacts=response.artifacts,
            usage=usage,
            cost=entry.cost,
            cached=False,
            attempts=attempts,
            latency_seconds=round(latency, 3),
            raw=response.raw,
        )
        if key is not None:
            self.cache.put(key, result)
        logger.info(
            "Generation done: %s/%s in %.1fs (%d attempt(s), $%.4f)",
            provider_name, model, latency, attempts, entry.cost,
        )
        return result

    def generate_many(
        self,
        requests: Sequence[GenerationRequest],
        max_workers: int | None = None,
    ) -> list[GenerationResult | Exception]:
        """Fan requests out over a thread pool. Output order matches input order;
        failed items hold their exception instead of a result."""
        if not requests:
            return []
        workers = max(1, min(max_workers or config.GENERATE_MAX_WORKERS, len(requests)))

        def _one(req: GenerationRequest) -> GenerationResult | Exception:
            try:
                return self.generate(req)
            except Exception as exc:
                return exc

        with ThreadPoolExecutor(max_workers=workers) as pool:
            return list(pool.map(_one, requests))

    def close(self):
        """Release provider resources (the HTTP provider's connection pool)."""
        close = getattr(self.provider, "close", None)
        if callable(close):
            close()

    def stats(self) -> dict[str, Any]:
        with self._lock:
            return {
                "calls": self._calls,
                "provider_calls": self._provider_calls,
                "failures": self._failures,
                "retries": self._retries,
            }


def build_client(provider_name: str | None = None) -> GenerationClient:
    """Wire the configured provider, a fresh cache and the default ledger."""
    return GenerationClient(
        build_provider(provider_name),
        cache=ResponseCache(
            max_entries=config.CACHE_MAX_ENTRIES,
            ttl_seconds=config.CACHE_TTL_SECONDS,
        ),
        tracker=default_tracker,
    )
