from __future__ import annotations

import threading
import time
import unittest

import httpx

from pipeline.cache import ResponseCache
from pipeline.client import GenerationClient, extract_error_message, is_retryable
from pipeline.costs import CostTracker
from pipeline.errors import BudgetExceededError, GenerationError, ProviderHTTPError
from pipeline.providers import MockProvider, ProviderResponse
from schemas.generation import GenerationKind, GenerationRequest, Usage


class ScriptedProvider:
    """Raises the scripted exceptions in order, then answers normally."""

    name = "scripted"

    def __init__(self, failures=(), usage: Usage | None = None):
        self.failures = list(failures)
        self.usage = usage if usage is not None else Usage(input_tokens=100, output_tokens=50)
        self.calls = 0
        self._lock = threading.Lock()

    def generate(self, request: GenerationRequest) -> ProviderResponse:
        with self._lock:
            self.calls += 1
            failure = self.failures.pop(0) if self.failures else None
        if failure is not None:
            raise failure
        return ProviderResponse(text=f"answer to {request.prompt}", usage=self.usage)

    def ping(self):
        return {"ok": True}


def make_client(provider, cache=None, tracker=None, max_attempts=3) -> GenerationClient:
    return GenerationClient(
        provider,
        cache=cache,
        tracker=tracker or CostTracker(),
        max_attempts=max_attempts,
        wait_multiplier=0,
        wait_min=0,
        wait_max=0,
        sleep=lambda _seconds: None,
    )


def text_request(prompt: str = "tagline please", **kwargs) -> GenerationRequest:
    return GenerationRequest(model="gemini-2.5-pro", prompt=prompt, **kwargs)


class RetryClassificationTests(unittest.TestCase):
    def test_transient_errors_are_retryable(self):
        for code in (408, 429, 500, 502, 503, 504, 529):
            self.assertTrue(is_retryable(ProviderHTTPError(code, "x")), code)
        self.assertTrue(is_retryable(httpx.ConnectError("refused")))
        self.assertTrue(is_retryable(httpx.ReadTimeout("slow")))
        self.assertTrue(is_retryable(ConnectionResetError()))
        self.assertTrue(is_retryable(TimeoutError()))

    def test_permanent_errors_are_not_retryable(self):
        for code in (400, 401, 403, 404, 422):
            self.assertFalse(is_retryable(ProviderHTTPError(code, "x")), code)
        self.assertFalse(is_retryable(BudgetExceededError(1.0, 1.0, 1.5)))
        self.assertFalse(is_retryable(ValueError("bad")))

    def test_error_messages_are_readable(self):
        self.assertIn("Authentication failed", extract_error_message(ProviderHTTPError(401, "nope"), "http", "m"))
        self.assertIn("Model 'm' not found", extract_error_message(ProviderHTTPError(404, "nope"), "http", "m"))
        self.assertIn("Rate limited", extract_error_message(ProviderHTTPError(429, "slow down"), "http", "m"))
        long_msg = extract_error_message(RuntimeError("x" * 1000), "http", "m")
        self.assertTrue(long_msg.endswith("..."))
        self.assertLess(len(long_msg), 330)


class GenerationClientTests(unittest.TestCase):
    def test_retries_transient_failures_then_succeeds(self):
        provider = ScriptedProvider(failures=[ProviderHTTPError(429, "slow"), ProviderHTTPError(503, "busy")])
        tracker = CostTracker()
        client = make_client(provider, tracker=tracker)

        result = client.generate(text_request())

        self.assertEqual(provider.calls, 3)
        self.assertEqual(result.attempts, 3)
        self.assertFalse(result.cached)
        self.assertEqual(result.text, "answer to tagline please")
        self.assertEqual(client.stats()["retries"], 2)
        # Only the successful attempt is billed
        self.assertEqual(len(tracker.entries()), 1)
        self.assertAlmostEqual(result.cost, (100 * 1.25 + 50 * 10.0) / 1_000_000)

    def test_bad_request_is_not_retried(self):
        provider = ScriptedProvider(failures=[ProviderHTTPError(400, "prompt too long")])
        client = make_client(provider)

        with self.assertRaises(ProviderHTTPError) as ctx:
            client.generate(text_request())

        self.assertEqual(provider.calls, 1)
        self.assertEqual(ctx.exception.status_code, 400)
        self.assertIn("Bad request: prompt too long", str(ctx.exception))
        self.assertIsInstance(ctx.exception.cause, ProviderHTTPError)
        self.assertEqual(client.stats()["failures"], 1)

    def test_gives_up_after_max_attempts(self):
        provider = ScriptedProvider(failures=[ProviderHTTPError(503, "busy")] * 5)
        tracker = CostTracker()
        client = make_client(provider, tracker=tracker, max_attempts=3)

        with self.assertRaises(ProviderHTTPError) as ctx:
            client.generate(text_request())

        self.assertEqual(provider.calls, 3)
        self.assertEqual(ctx.exception.status_code, 503)
        self.assertEqual(tracker.entries(), [])

    def test_connection_errors_are_retried_and_wrapped(self):
        provider = ScriptedProvider(failures=[httpx.ConnectError("refused")] * 2)
        client = make_client(provider, max_attempts=2)

        with self.assertRaises(GenerationError) as ctx:
            client.generate(text_request())

        self.assertEqual(provider.calls, 2)
        self.assertIn("Connection failed", str(ctx.exception))
        self.assertIsInstance(ctx.exception.cause, httpx.ConnectError)

    def test_unexpected_errors_are_wrapped_without_retry(self):
        provider = ScriptedProvider(failures=[KeyError("text")])
        client = make_client(provider)

        with self.assertRaises(GenerationError) as ctx:
            client.generate(text_request())

        self.assertEqual(provider.calls, 1)
        self.assertEqual(ctx.exception.provider, "scripted")
        self.assertEqual(ctx.exception.model, "gemini-2.5-pro")

    def test_cache_hit_skips_provider_and_records_savings(self):
        provider = ScriptedProvider()
        tracker = CostTracker()
        client = make_client(provider, cache=ResponseCache(max_entries=8), tracker=tracker)

        first = client.generate(text_request())
        second = client.generate(text_request())

        self.assertEqual(provider.calls, 1)
        self.assertFalse(first.cached)
        self.assertTrue(second.cached)
        self.assertEqual(second.attempts, 0)
        self.assertEqual(second.cost, 0.0)
        self.assertEqual(second.text, first.text)

        summary = tracker.summary()
        self.assertEqual(summary.calls, 2)
        self.assertEqual(summary.cache_hits, 1)
        self.assertAlmostEqual(summary.total_cost, round(first.cost, 4))
        self.assertAlmostEqual(summary.total_saved, round(first.cost, 4))

    def test_use_cache_false_bypasses_cache(self):
        provider = ScriptedProvider()
        cache = ResponseCache(max_entries=8)
        client = make_client(provider, cache=cache)

        client.generate(text_request(use_cache=False))
        client.generate(text_request(use_cache=False))

        self.assertEqual(provider.calls, 2)
        self.assertEqual(len(cache), 0)

    def test_failed_calls_are_not_cached(self):
        provider = ScriptedProvider(failures=[ProviderHTTPError(400, "bad")])
        cache = ResponseCache(max_entries=8)
        client = make_client(provider, cache=cache)

        with self.assertRaises(ProviderHTTPError):
            client.generate(text_request())
        result = client.generate(text_request())

        self.assertFalse(result.cached)
        self.assertEqual(provider.calls, 2)

    def test_budget_is_checked_before_calling_provider(self):
        provider = ScriptedProvider()
        tracker = CostTracker(max_cost_usd=1.0)
        client = make_client(provider, tracker=tracker)
        video = GenerationRequest(
            kind=GenerationKind.VIDEO,
            model="veo-3.0-generate-001",
            prompt="product orbit shot",
            params={"duration_seconds": 8},
        )

        with self.assertRaises(BudgetExceededError) as ctx:
            client.generate(video)

        self.assertEqual(provider.calls, 0)
        self.assertAlmostEqual(ctx.exception.estimated, 6.0)

    def test_parallel_calls_cannot_overshoot_budget(self):
        class SlowImageProvider(ScriptedProvider):
            def generate(self, request):
                time.sleep(0.2)
                return super().generate(request)

        provider = SlowImageProvider(usage=Usage(images=10))
        tracker = CostTracker(max_cost_usd=1.0)
        client = make_client(provider, tracker=tracker)
        requests = [
            GenerationRequest(
                kind=GenerationKind.IMAGE,
                model="imagen-4.0-ultra-generate-001",
                prompt=f"hero shot {i}",
                params={"number_of_images": 10},
            )
            for i in range(4)
        ]

        results = client.generate_many(requests, max_workers=4)

        succeeded = [r for r in results if not isinstance(r, Exception)]
        rejected = [r for r in results if isinstance(r, BudgetExceededError)]
        self.assertEqual(len(succeeded), 1)
        self.assertEqual(len(rejected), 3)
        self.assertEqual(provider.calls, 1)
        self.assertLessEqual(tracker.spent(), 1.0)
        self.assertEqual(tracker.pending(), 0.0)

    def test_failed_call_releases_its_reservation(self):
        provider = ScriptedProvider(failures=[ProviderHTTPError(400, "bad")])
        tracker = CostTracker(max_cost_usd=1.0)
        client = make_client(provider, tracker=tracker)
        request = GenerationRequest(
            kind=GenerationKind.IMAGE,
            model="imagen-4.0-ultra-generate-001",
            prompt="hero",
            params={"number_of_images": 10},
        )

        with self.assertRaises(ProviderHTTPError):
            client.generate(request)
        self.assertEqual(tracker.pending(), 0.0)

        provider.usage = Usage(images=10)
        result = client.generate(request)
        self.assertAlmostEqual(result.cost, 0.6)
        self.assertEqual(tracker.pending(), 0.0)

    def test_empty_provider_usage_falls_back_to_estimate(self):
        provider = ScriptedProvider(usage=Usage())
        client = make_client(provider)
        request = GenerationRequest(kind=GenerationKind.IMAGE, model="imagen-4.0-generate-001", prompt="bottle", params={"number_of_images": 3})

        result = client.generate(request)

        self.assertEqual(result.usage.images, 3)
        self.assertAlmostEqual(result.cost, 0.12)

    def test_generate_many_preserves_order_and_isolates_failures(self):
        requests = [text_request(f"prompt {i}") for i in range(6)]
        requests.insert(3, GenerationRequest(model="gemini-2.5-pro", prompt="fails", params={"x": 1}))

        class FailingOnMarker(MockProvider):
            def generate(self, request):
                if request.prompt == "fails":
                    raise ProviderHTTPError(400, "rejected")
                return super().generate(request)

        client = make_client(FailingOnMarker())
        results = client.generate_many(requests, max_workers=3)

        self.assertEqual(len(results), 7)
        self.assertIsInstance(results[3], ProviderHTTPError)
        for i, res in enumerate(results):
            if i == 3:
                continue
            self.assertIn(requests[i].prompt, res.text)
        self.assertEqual(client.generate_many([]), [])


if __name__ == "__main__":
    unittest.main()
