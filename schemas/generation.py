"""Generation request/response schemas shared by the client, server and CLI."""

from __future__ import annotations

from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, field_validator, model_validator


class GenerationKind(str, Enum):
    TEXT = "text"
    IMAGE = "image"
    VIDEO = "video"
    SPEECH = "speech"
    TRANSCRIPTION = "transcription"
    TRANSLATION = "translation"


DEFAULT_MAX_OUTPUT_TOKENS = 1024
DEFAULT_VIDEO_SECONDS = 8.0
DEFAULT_AUDIO_SECONDS = 60.0


class Usage(BaseModel):
    """Billable units consumed by one call (or a sum of calls)."""
    input_tokens: int = Field(default=0, ge=0)
    output_tokens: int = Field(default=0, ge=0)
    images: int = Field(default=0, ge=0)
    video_seconds: float = Field(default=0.0, ge=0)
    characters: int = Field(default=0, ge=0)
    audio_seconds: float = Field(default=0.0, ge=0)

    def __add__(self, other: "Usage") -> "Usage":
        if not isinstance(other, Usage):
            return NotImplemented
        return Usage(
            input_tokens=self.input_tokens + other.input_tokens,
            output_tokens=self.output_tokens + other.output_tokens,
            images=self.images + other.images,
            video_seconds=self.video_seconds + other.video_seconds,
            characters=self.characters + other.characters,
            audio_seconds=self.audio_seconds + other.audio_seconds,
        )

    def is_empty(self) -> bool:
        return not any((
            self.input_tokens,
            self.output_tokens,
            self.images,
            self.video_seconds,
            self.characters,
            self.audio_seconds,
        ))


class GenerationRequest(BaseModel):
    kind: GenerationKind = GenerationKind.TEXT
    model: str
    prompt: str = ""
    input_uri: str = Field(default="", description="Source media for transcription / analysis")
    params: dict[str, Any] = Field(default_factory=dict)
    use_cache: bool = True

    @field_validator("model")
    @classmethod
    def _strip_model(cls, value: str) -> str:
        value = str(value or "").strip()
        if not value:
            raise ValueError("model must not be empty")
        return value

    @model_validator(mode="after")
    def _validate_prompt(self) -> "GenerationRequest":
        if self.kind == GenerationKind.TRANSCRIPTION:
            if not self.input_uri.strip():
                raise ValueError("input_uri is required when kind=transcription")
        elif not self.prompt.strip():
            raise ValueError(f"prompt is required when kind={self.kind.value}")
        return self


class GenerationResult(BaseModel):
    provider: str
    model: str
    kind: GenerationKind
    text: str = ""
    artifacts: list[str] = Field(default_factory=list)
    usage: Usage = Field(default_factory=Usage)
    cost: float = 0.0
    cached: bool = False
    attempts: int = Field(default=1, ge=0)
    latency_seconds: float = 0.0
    raw: dict[str, Any] = Field(default_factory=dict)


def _param_number(params: dict[str, Any], key: str, default: float) -> float:
    try:
        value = float(params.get(key, default))
    except (TypeError, ValueError):
        return default
    return value if value >= 0 else default


def estimate_usage(request: GenerationRequest) -> Usage:
    """Pre-call usage estimate used for budget checks.

    Token counts use the usual ~4 characters per token heuristic; media
    kinds read their size from ``params`` with per-kind defaults.
    """
    params = request.params or {}
    kind = request.kind
    if kind == GenerationKind.TEXT:
        return Usage(
            input_tokens=max(1, len(request.prompt) // 4),
            output_tokens=int(_param_number(params, "max_output_tokens", DEFAULT_MAX_OUTPUT_TOKENS)),
        )
    if kind == GenerationKind.IMAGE:
        return Usage(images=max(1, int(_param_number(params, "number_of_images", 1))))
    if kind == GenerationKind.VIDEO:
        return Usage(video_seconds=_param_number(params, "duration_seconds", DEFAULT_VIDEO_SECONDS))
    if kind in (GenerationKind.SPEECH, GenerationKind.TRANSLATION):
        return Usage(characters=len(request.prompt))
    return Usage(audio_seconds=_param_number(params, "duration_seconds", DEFAULT_AUDIO_SECONDS))
