"""Cost tracking — every generation call records billable usage and cost.

Prices are looked up per model by longest-prefix match, so
"veo-3.0-fast-generate-001" matches "veo-3.0-fast" before "veo-3.0".
Unknown models fall back to a conservative price and log a warning.

The module keeps a process-wide default tracker; use reset_usage(),
get_usage_log() and get_usage_summary() to access its data.
"""

from __future__ import annotations

import logging
import threading
import time as _time
from typing import Any, Callable

from schemas.generation import GenerationKind, Usage
from schemas.usage import ModelPrice, ModelTotals, UsageEntry, UsageSummary
from pipeline.errors import BudgetExceededError

import config

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Pricing
# ---------------------------------------------------------------------------

# Update these when pricing changes. Used only for cost estimation.
MODEL_PRICING: dict[str, ModelPrice] = {
    # Gemini (per 1M tokens)
    "gemini-3.0-pro":       ModelPrice(input_per_1m=1.25, output_per_1m=10.00),
    "gemini-2.5-pro":       ModelPrice(input_per_1m=1.25, output_per_1m=10.00),
    "gemini-2.5-flash":     ModelPrice(input_per_1m=0.15, output_per_1m=0.60),
    "gemini-2.0-flash":     ModelPrice(input_per_1m=0.10, output_per_1m=0.40),
    "gemini-1.5-pro":       ModelPrice(input_per_1m=1.25, output_per_1m=5.00),
    "gemini-1.5-flash":     ModelPrice(input_per_1m=0.075, output_per_1m=0.30),
    # Other text models
    "gpt-4o-mini":          ModelPrice(input_per_1m=0.15, output_per_1m=0.60),
    "gpt-4o":               ModelPrice(input_per_1m=2.50, output_per_1m=10.00),
    "gpt-4.1-mini":         ModelPrice(input_per_1m=0.40, output_per_1m=1.60),
    "gpt-4.1":              ModelPrice(input_per_1m=2.00, output_per_1m=8.00),
    "claude-opus-4":        ModelPrice(input_per_1m=15.00, output_per_1m=75.00),
    "claude-sonnet-4":      ModelPrice(input_per_1m=3.00, output_per_1m=15.00),
    "claude-3-haiku":       ModelPrice(input_per_1m=0.25, output_per_1m=1.25),
    # Imagen (per image)
    "imagen-4.0-ultra":     ModelPrice(per_image=0.06),
    "imagen-4.0-fast":      ModelPrice(per_image=0.02),
    "imagen-4.0":           ModelPrice(per_image=0.04),
    "imagen-3.0":           ModelPrice(per_image=0.04),
    # Veo (per generated second)
    "veo-3.0-fast":         ModelPrice(per_video_second=0.40),
    "veo-3.0":              ModelPrice(per_video_second=0.75),
    "veo-2.0":              ModelPrice(per_video_second=0.50),
    # Text-to-Speech (per 1M characters)
    "tts-standard":         ModelPrice(per_1m_characters=4.00),
    "tts-wavenet":          ModelPrice(per_1m_characters=16.00),
    "tts-neural2":          ModelPrice(per_1m_characters=16.00),
    "tts-chirp3-hd":        ModelPrice(per_1m_characters=30.00),
    # Speech-to-Text (per audio minute)
    "stt-chirp":            ModelPrice(per_audio_minute=0.016),
    "stt-standard":         ModelPrice(per_audio_minute=0.024),
    # Translation (per 1M characters)
    "translation-nmt":      ModelPrice(per_1m_characters=20.00),
    "translation-llm":      ModelPrice(per_1m_characters=10.00),
    # Local stand-in
    "mock":                 ModelPrice(),
}

# Fallback pricing if a model isn't in the table (conservative estimate)
FALLBACK_PRICING = ModelPrice(
    input_per_1m=2.50,
    output_per_1m=10.00,
    per_image=0.06,
    per_video_second=0.75,
    per_1m_characters=30.00,
    per_audio_minute=0.024,
)

_warned_models: set[str] = set()
_warned_lock = threading.Lock()


def match_pricing_prefix(model: str) -> str:
    """Return the longest MODEL_PRICING prefix matching ``model`` ('' if none)."""
    best_match = ""
    for prefix in MODEL_PRICING:
        if model.startswith(prefix) and len(prefix) > len(best_match):
            best_match = prefix
    return best_match


def get_pricing(model: str) -> ModelPrice:
    """Find pricing for a model by longest-prefix match."""
    best_match = match_pricing_prefix(model)
    if best_match:
        return MODEL_PRICING[best_match]
    with _warned_lock:
        first_time = model not in _warned_models
        _warned_models.add(model)
    if first_time:
        logger.warning("No pricing found for model '%s' — using fallback pricing", model)
    return FALLBACK_PRICING


# ---------------------------------------------------------------------------
# Ledger
# ---------------------------------------------------------------------------

UsageListener = Callable[[UsageEntry], Any]


class CostTracker:
    """Thread-safe cost ledger with an optional hard budget cap.

    ``max_cost_usd`` of None or <= 0 means unlimited. ``warn_ratio`` is the
    fraction of the cap at which a single warning is logged.

    In-flight calls hold a reservation (``reserve``) that counts against
    the cap until ``record`` settles it or ``release`` drops it.
    """

    def __init__(self, max_cost_usd: float | None = None, warn_ratio: float = 0.8):
        self.max_cost_usd = max_cost_usd if max_cost_usd and max_cost_usd > 0 else None
        self.warn_ratio = warn_ratio
        self._lock = threading.Lock()
        self._entries: list[UsageEntry] = []
        self._spent = 0.0
        self._pending = 0.0
        self._warned = False
        self._listeners: list[UsageListener] = []

    # -- listeners ---------------------------------------------------------

    def add_listener(self, listener: UsageListener):
        with self._lock:
            if listener not in self._listeners:
                self._listeners.append(listener)

    def remove_listener(self, listener: UsageListener):
        with self._lock:
            if listener in self._listeners:
                self._listeners.remove(listener)

    # -- cost --------------------------------------------------------------

    def estimate(self, model: str, usage: Usage) -> float:
        return get_pricing(model).cost_of(usage)

    def record(
        self,
        provider: str,
        model: str,
        kind: GenerationKind = GenerationKind.TEXT,
        usage: Usage | None = None,
        *,
        cost: float | None = None,
        cached: bool = False,
        saved: float = 0.0,
        metadata: dict[str, Any] | None = None,
        reserved: float = 0.0,
    ) -> UsageEntry:
        """Record a single call's usage and cost.

        If cost is None it is computed from the pricing table. Cache hits
        are recorded with zero cost and the avoided spend in ``saved``.
        ``reserved`` is the amount taken by ``reserve`` for this call; it is
        released in the same locked step that adds the real cost.
        """
        usage = usage or Usage()
        if cost is None:
            cost = 0.0 if cached else self.estimate(model, usage)
        entry = UsageEntry(
            provider=provider,
            model=model,
            kind=kind,
            usage=usage,
            cost=float(cost),
            cached=cached,
            saved=float(saved),
            timestamp=_time.time(),
            metadata=metadata or {},
        )

        crossed_warning = False
        with self._lock:
            self._entries.append(entry)
            self._spent += entry.cost
            if reserved > 0:
                self._pending = max(0.0, self._pending - reserved)
            if (
                self.max_cost_usd is not None
                and not self._warned
                and self._spent >= self.max_cost_usd * self.warn_ratio
            ):
                self._warned = True
                crossed_warning = True
            spent = self._spent
            listeners = list(self._listeners)

        if cached:
            logger.info("Cache hit: %s/%s — saved $%.4f", provider, model, entry.saved)
        else:
            logger.info(
                "Usage: %s/%s [%s] — in=%d out=%d images=%d video=%.1fs chars=%d audio=%.1fs cost=$%.4f",
                provider, model, entry.kind.value,
                usage.input_tokens, usage.output_tokens, usage.images,
                usage.video_seconds, usage.characters, usage.audio_seconds, entry.cost,
            )
        if crossed_warning:
            logger.warning(
                "Spend $%.4f has reached %.0f%% of the $%.2f budget",
                spent, self.warn_ratio * 100, self.max_cost_usd,
            )

        for listener in listeners:
            try:
                listener(entry)
            except Exception:
                logger.exception("Usage listener %r failed", listener)
        return entry

    # -- budget ------------------------------------------------------------

    def spent(self) -> float:
        with self._lock:
            return self._spent

    def remaining(self) -> float | None:
        if self.max_cost_usd is None:
            return None
        return max(0.0, self.max_cost_usd - self.spent())

    def pending(self) -> float:
        with self._lock:
            return self._pending

    def check_budget(self, estimated_cost: float = 0.0, model: str = ""):
        """Raise BudgetExceededError if the estimated call would break the cap."""
        if self.max_cost_usd is None:
            return
        with self._lock:
            committed = self._spent + self._pending
        if committed + estimated_cost > self.max_cost_usd:
            raise BudgetExceededError(committed, estimated_cost, self.max_cost_usd, model=model)

    def reserve(self, estimated_cost: float, model: str = "") -> float:
        """Check the cap and hold ``estimated_cost`` against it in one step.

        Returns the amount held (0.0 when unlimited), to be passed back to
        ``record(reserved=...)`` or ``release``.
        """
        if self.max_cost_usd is None or estimated_cost <= 0:
            return 0.0
        with self._lock:
            committed = self._spent + self._pending
            if committed + estimated_cost > self.max_cost_usd:
                raise BudgetExceededError(committed, estimated_cost, self.max_cost_usd, model=model)
            self._pending += estimated_cost
        return estimated_cost

    def release(self, amount: float):
        """Drop a reservation whose call failed."""
        if amount <= 0:
            return
        with self._lock:
            self._pending = max(0.0, self._pending - amount)

    # -- reporting ---------------------------------------------------------

    def entries(self) -> list[UsageEntry]:
        with self._lock:
            return list(self._entries)

    def reset(self):
        """Clear all accumulated usage data."""
        with self._lock:
            self._entries.clear()
            self._spent = 0.0
            self._pending = 0.0
            self._warned = False

    def summary(self) -> UsageSummary:
        entries = self.entries()
        total = Usage()
        by_model: dict[str, ModelTotals] = {}
        for e in entries:
            total = total + e.usage
            totals = by_model.setdefault(e.model, ModelTotals())
            totals.calls += 1
            totals.cost = round(totals.cost + e.cost, 6)
        total_cost = sum(e.cost for e in entries)
        remaining = self.remaining()
        return UsageSummary(
            calls=len(entries),
            cache_hits=sum(1 for e in entries if e.cached),
            total_input_tokens=total.input_tokens,
            total_output_tokens=total.output_tokens,
            total_tokens=total.input_tokens + total.output_tokens,
            total_images=total.images,
            total_video_seconds=round(total.video_seconds, 3),
            total_characters=total.characters,
            total_audio_seconds=round(total.audio_seconds, 3),
            total_cost=round(total_cost, 4),
            total_saved=round(sum(e.saved for e in entries), 4),
            budget_usd=self.max_cost_usd,
            remaining_usd=round(remaining, 4) if remaining is not None else None,
            by_model=by_model,
        )


# ---------------------------------------------------------------------------
# Process-wide default ledger
# ---------------------------------------------------------------------------

default_tracker = CostTracker(
    max_cost_usd=config.MAX_COST_USD,
    warn_ratio=config.BUDGET_WARN_RATIO,
)


def get_model_pricing(model: str) -> ModelPrice:
    """Public helper for model pricing lookup."""
    return get_pricing(model)


def record_usage(
    provider: str,
    model: str,
    kind: GenerationKind = GenerationKind.TEXT,
    usage: Usage | None = None,
    cost: float | None = None,
    metadata: dict[str, Any] | None = None,
) -> UsageEntry:
    """Record externally computed usage on the default ledger."""
    return default_tracker.record(provider, model, kind, usage, cost=cost, metadata=metadata)


def reset_usage():
    """Clear all accumulated usage data on the default ledger."""
    default_tracker.reset()


def get_usage_log() -> list[dict[str, Any]]:
    """Return a copy of the default ledger as plain dicts."""
    return [e.model_dump(mode="json") for e in default_tracker.entries()]


def get_usage_summary() -> dict[str, Any]:
    """Return aggregated cost and usage totals for the default ledger."""
    return default_tracker.summary().model_dump(mode="json")
