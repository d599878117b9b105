"""Provider adapters for the generation gateway (mock / HTTP JSON endpoint)."""

from __future__ import annotations

import hashlib
import logging
import threading
import time
from typing import Any, Protocol

import httpx
from pydantic import BaseModel, Field, ValidationError

import config
from pipeline.errors import GenerationError, ProviderHTTPError
from schemas.generation import GenerationKind, GenerationRequest, Usage, estimate_usage

logger = logging.getLogger(__name__)


class ProviderResponse(BaseModel):
    text: str = ""
    artifacts: list[str] = Field(default_factory=list)
    usage: Usage = Field(default_factory=Usage)
    raw: dict[str, Any] = Field(default_factory=dict)


class ModelProvider(Protocol):
    name: str

    def generate(self, request: GenerationRequest) -> ProviderResponse:
        """Run one generation call. Raise on failure; the client decides on retries."""

    def ping(self) -> dict[str, Any]:
        """Return at least {"ok": bool} describing provider reachability."""


def _prompt_digest(request: GenerationRequest) -> str:
    seed = f"{request.kind.value}|{request.model}|{request.prompt}|{request.input_uri}"
    return hashlib.sha256(seed.encode("utf-8")).hexdigest()[:12]


class MockProvider:
    """Deterministic offline stand-in for local testing."""

    name = "mock"

    def __init__(self):
        self.calls = 0
        self._lock = threading.Lock()

    def generate(self, request: GenerationRequest) -> ProviderResponse:
        with self._lock:
            self.calls += 1
        digest = _prompt_digest(request)
        usage = estimate_usage(request)
        text = ""
        artifacts: list[str] = []

        if request.kind == GenerationKind.TEXT:
            text = f"mock response {digest}: {request.prompt[:80]}"
            usage = usage.model_copy(update={"output_tokens": max(1, len(text) // 4)})
        elif request.kind == GenerationKind.IMAGE:
            artifacts = [f"mock://image/{digest}/{i}.png" for i in range(usage.images)]
        elif request.kind == GenerationKind.VIDEO:
            artifacts = [f"mock://video/{digest}.mp4"]
        elif request.kind == GenerationKind.SPEECH:
            artifacts = [f"mock://audio/{digest}.mp3"]
        elif request.kind == GenerationKind.TRANSCRIPTION:
            text = f"mock transcript of {request.input_uri}"
        elif request.kind == GenerationKind.TRANSLATION:
            target = str(request.params.get("target_language", "en"))
            text = f"[{target}] {request.prompt}"

        return ProviderResponse(
            text=text,
            artifacts=artifacts,
            usage=usage,
            raw={"provider": self.name, "digest": digest},
        )

    def ping(self) -> dict[str, Any]:
        return {"ok": True, "provider": self.name, "latency_seconds": 0.0}


class HTTPProvider:
    """Generic JSON-over-HTTP provider.

    POST {base_url}/v1/generate with the request body; the endpoint answers
    {"text", "artifacts", "usage", ...}. GET {base_url}/health for pings.
    """

    name = "http"

    def __init__(self, base_url: str, api_key: str = "", timeout: float = 60.0, transport: httpx.BaseTransport | None = None):
        if not str(base_url or "").strip():
            raise GenerationError("PROVIDER_BASE_URL is required for the http provider.", provider=self.name)
        headers = {"Content-Type": "application/json"}
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        self.base_url = base_url.rstrip("/")
        self._client = httpx.Client(
            base_url=self.base_url,
            headers=headers,
            timeout=timeout,
            transport=transport,
        )

    def close(self):
        self._client.close()

    @staticmethod
    def _error_message(response: httpx.Response) -> str:
        try:
            body = response.json()
        except ValueError:
            body = None
        if isinstance(body, dict):
            inner = body.get("error")
            if isinstance(inner, dict) and inner.get("message"):
                return str(inner["message"])
            if isinstance(inner, str) and inner:
                return inner
            if body.get("detail"):
                return str(body["detail"])
        text = response.text.strip()
        return text[:300] if text else response.reason_phrase

    def generate(self, request: GenerationRequest) -> ProviderResponse:
        payload = request.model_dump(mode="json", exclude={"use_cache"})
        response = self._client.post("/v1/generate", json=payload)
        if response.status_code >= 400:
            raise ProviderHTTPError(
                response.status_code,
                self._error_message(response),
                provider=self.name,
                model=request.model,
            )

        try:
            data = response.json()
        except ValueError as exc:
            raise GenerationError(
                f"[{self.name}/{request.model}] Response was not JSON",
                provider=self.name,
                model=request.model,
                cause=exc,
            ) from exc
        if not isinstance(data, dict):
            raise GenerationError(
                f"[{self.name}/{request.model}] Expected a JSON object, got {type(data).__name__}",
                provider=self.name,
                model=request.model,
            )

        usage_raw = data.get("usage")
        try:
            usage = Usage.model_validate(usage_raw) if usage_raw else estimate_usage(request)
        except ValidationError:
            logger.warning("HTTP provider returned malformed usage %r — using estimate", usage_raw)
            usage = estimate_usage(request)
        artifacts = data.get("artifacts") or []
        if isinstance(artifacts, str):
            artifacts = [artifacts]
        elif not isinstance(artifacts, list):
            logger.warning("HTTP provider returned malformed artifacts %r — ignoring", artifacts)
            artifacts = []
        return ProviderResponse(
            text=str(data.get("text") or ""),
            artifacts=[str(a) for a in artifacts if a],
            usage=usage,
            raw=data,
        )

    def ping(self) -> dict[str, Any]:
        start = time.monotonic()
        try:
            response = self._client.get("/health")
        except httpx.HTTPError as exc:
            return {
                "ok": False,
                "provider": self.name,
                "error": str(exc),
                "latency_seconds": round(time.monotonic() - start, 3),
            }
        return {
            "ok": response.status_code < 400,
            "provider": self.name,
            "status_code": response.status_code,
            "latency_seconds": round(time.monotonic() - start, 3),
        }


_PROVIDER_NAMES = ("mock", "http")


def build_provider(name: str | None = None) -> ModelProvider:
    """Build the configured provider. FORCE_MOCK_PROVIDER wins over everything."""
    if config.FORCE_MOCK_PROVIDER:
        return MockProvider()
    key = str(name or config.PROVIDER or "mock").strip().lower()
    if key == "mock":
        return MockProvider()
    if key == "http":
        return HTTPProvider(
            config.PROVIDER_BASE_URL,
            api_key=config.PROVIDER_API_KEY,
            timeout=config.REQUEST_TIMEOUT_SECONDS,
        )
    raise GenerationError(
        f"Unknown provider: '{key}'. Available: {list(_PROVIDER_NAMES)}",
        provider=key,
    )
