"""Pricing and cost-ledger schemas."""

from __future__ import annotations

from typing import Any, Optional

from pydantic import BaseModel, Field

from schemas.generation import GenerationKind, Usage


class ModelPrice(BaseModel):
    """USD prices for one model family. Unused units stay at 0."""
    input_per_1m: float = 0.0
    output_per_1m: float = 0.0
    per_image: float = 0.0
    per_video_second: float = 0.0
    per_1m_characters: float = 0.0
    per_audio_minute: float = 0.0

    def cost_of(self, usage: Usage) -> float:
        return (
            usage.input_tokens * self.input_per_1m / 1_000_000
            + usage.output_tokens * self.output_per_1m / 1_000_000
            + usage.images * self.per_image
            + usage.video_seconds * self.per_video_second
            + usage.characters * self.per_1m_characters / 1_000_000
            + usage.audio_seconds / 60 * self.per_audio_minute
        )


class UsageEntry(BaseModel):
    provider: str
    model: str
    kind: GenerationKind = GenerationKind.TEXT
    usage: Usage = Field(default_factory=Usage)
    cost: float = 0.0
    cached: bool = False
    saved: float = 0.0
    timestamp: float
    metadata: dict[str, Any] = Field(default_factory=dict)


class ModelTotals(BaseModel):
    calls: int = 0
    cost: float = 0.0


class UsageSummary(BaseModel):
    calls: int = 0
    cache_hits: int = 0
    total_input_tokens: int = 0
    total_output_tokens: int = 0
    total_tokens: int = 0
    total_images: int = 0
    total_video_seconds: float = 0.0
    total_characters: int = 0
    total_audio_seconds: float = 0.0
    total_cost: float = 0.0
    total_saved: float = 0.0
    budget_usd: Optional[float] = None
    remaining_usd: Optional[float] = None
    by_model: dict[str, ModelTotals] = Field(default_factory=dict)
