"""Health checks for the gateway: config, provider, cache, budget, storage.

Each check is a callable returning a details dict (optionally carrying
``"status": "degraded"``) or raising. Critical failures make the overall
report ``fail``; anything else that isn't clean makes it ``degraded``.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Callable, Literal

from pydantic import BaseModel, Field

import config
from pipeline import storage

if TYPE_CHECKING:
    from pipeline.client import GenerationClient

logger = logging.getLogger(__name__)

CheckStatus = Literal["ok", "degraded", "fail"]


class CheckResult(BaseModel):
    name: str
    status: CheckStatus
    critical: bool = True
    latency_seconds: float = 0.0
    details: dict[str, Any] = Field(default_factory=dict)
    error: str = ""


class HealthReport(BaseModel):
    status: CheckStatus
    checks: list[CheckResult] = Field(default_factory=list)
    checked_at: float

    @property
    def ok(self) -> bool:
        return self.status == "ok"


@dataclass
class HealthCheck:
    name: str
    fn: Callable[[], dict[str, Any]]
    critical: bool = True


class HealthChecker:
    def __init__(self):
        self._checks: list[HealthCheck] = []

    def register(self, name: str, fn: Callable[[], dict[str, Any]], critical: bool = True):
        self._checks = [c for c in self._checks if c.name != name]
        self._checks.append(HealthCheck(name=name, fn=fn, critical=critical))

    @property
    def names(self) -> list[str]:
        return [c.name for c in self._checks]

    def _run_one(self, check: HealthCheck) -> CheckResult:
        start = time.monotonic()
        try:
            details = check.fn() or {}
        except Exception as exc:
            logger.warning("Health check '%s' failed: %s", check.name, exc)
            return CheckResult(
                name=check.name,
                status="fail",
                critical=check.critical,
                latency_seconds=round(time.monotonic() - start, 4),
                error=str(exc) or type(exc).__name__,
            )
        details = dict(details)
        status = details.pop("status", "ok")
        if status not in ("ok", "degraded", "fail"):
            status = "degraded"
        return CheckResult(
            name=check.name,
            status=status,
            critical=check.critical,
            latency_seconds=round(time.monotonic() - start, 4),
            details=details,
        )

    def run(self) -> HealthReport:
        results = [self._run_one(c) for c in self._checks]
        overall: CheckStatus = "ok"
        for r in results:
            if r.status == "fail" and r.critical:
                overall = "fail"
                break
            if r.status != "ok":
                overall = "degraded"
        return HealthReport(status=overall, checks=results, checked_at=time.time())


# ---------------------------------------------------------------------------
# Built-in checks
# ---------------------------------------------------------------------------

def check_config() -> dict[str, Any]:
    warnings = config.check_settings()
    blocking = [w for w in warnings if "will fail" in w]
    if blocking:
        raise RuntimeError(blocking[0])
    return {
        "provider": config.PROVIDER,
        "default_model": config.DEFAULT_MODEL,
        "warnings": warnings,
        "status": "degraded" if warnings else "ok",
    }


def build_unavailable_checker(error: Exception) -> HealthChecker:
    """Checks to report when the client itself could not be built."""
    checker = HealthChecker()
    checker.register("config", check_config, critical=True)

    def check_provider() -> dict[str, Any]:
        raise RuntimeError(f"provider could not be built: {error}")

    checker.register("provider", check_provider, critical=True)
    checker.register("storage", storage.ping, critical=False)
    return checker


def build_default_checker(client: "GenerationClient") -> HealthChecker:
    """Register the standard checks against a live client."""
    checker = HealthChecker()
    checker.register("config", check_config, critical=True)

    def check_provider() -> dict[str, Any]:
        result = client.provider.ping()
        if not result.get("ok"):
            raise RuntimeError(
                result.get("error") or f"provider ping returned status {result.get('status_code')}"
            )
        return result

    def check_cache() -> dict[str, Any]:
        if client.cache is None:
            return {"enabled": False, "status": "degraded"}
        stats = client.cache.stats()
        stats["enabled"] = client.cache.enabled
        if not client.cache.enabled:
            stats["status"] = "degraded"
        return stats

    def check_budget() -> dict[str, Any]:
        tracker = client.tracker
        spent = round(tracker.spent(), 4)
        cap = tracker.max_cost_usd
        if cap is None:
            return {"spent_usd": spent, "budget_usd": None}
        remaining = tracker.remaining() or 0.0
        if remaining <= 0:
            raise RuntimeError(f"budget exhausted: ${spent:.4f} of ${cap:.2f}")
        details: dict[str, Any] = {
            "spent_usd": spent,
            "budget_usd": cap,
            "remaining_usd": round(remaining, 4),
        }
        if spent >= cap * tracker.warn_ratio:
            details["status"] = "degraded"
        return details

    checker.register("provider", check_provider, critical=True)
    checker.register("cache", check_cache, critical=False)
    checker.register("budget", check_budget, critical=False)
    checker.register("storage", storage.ping, critical=False)
    return checker
