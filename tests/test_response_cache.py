from __future__ import annotations

import threading
import unittest

from pipeline.cache import ResponseCache, make_cache_key
from schemas.generation import GenerationRequest, GenerationResult


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


def make_result(text: str) -> GenerationResult:
    return GenerationResult(provider="mock", model="gemini-2.5-flash", kind="text", text=text, cost=0.01)


class CacheKeyTests(unittest.TestCase):
    def test_key_ignores_param_order_and_cache_flag(self):
        a = GenerationRequest(model="gemini-2.5-flash", prompt="hi", params={"a": 1, "b": 2})
        b = GenerationRequest(model="gemini-2.5-flash", prompt="hi", params={"b": 2, "a": 1}, use_cache=False)
        self.assertEqual(make_cache_key("mock", a), make_cache_key("mock", b))

    def test_key_changes_with_provider_model_and_prompt(self):
        base = GenerationRequest(model="gemini-2.5-flash", prompt="hi")
        key = make_cache_key("mock", base)
        self.assertNotEqual(key, make_cache_key("http", base))
        self.assertNotEqual(key, make_cache_key("mock", base.model_copy(update={"model": "gemini-2.5-pro"})))
        self.assertNotEqual(key, make_cache_key("mock", base.model_copy(update={"prompt": "hello"})))


class ResponseCacheTests(unittest.TestCase):
    def test_evicts_least_recently_used(self):
        cache = ResponseCache(max_entries=2)
        cache.put("a", make_result("A"))
        cache.put("b", make_result("B"))
        self.assertIsNotNone(cache.get("a"))  # a becomes most recent
        cache.put("c", make_result("C"))

        self.assertIn("a", cache)
        self.assertNotIn("b", cache)
        self.assertIn("c", cache)
        self.assertEqual(cache.stats()["evictions"], 1)

    def test_put_existing_key_refreshes_without_growing(self):
        cache = ResponseCache(max_entries=2)
        cache.put("a", make_result("A1"))
        cache.put("a", make_result("A2"))
        self.assertEqual(len(cache), 1)
        self.assertEqual(cache.get("a").text, "A2")

    def test_entries_expire_after_ttl(self):
        clock = FakeClock()
        cache = ResponseCache(max_entries=4, ttl_seconds=10, clock=clock)
        cache.put("a", make_result("A"))

        clock.advance(9.9)
        self.assertIsNotNone(cache.get("a"))
        clock.advance(0.2)
        self.assertIsNone(cache.get("a"))

        stats = cache.stats()
        self.assertEqual(stats["expirations"], 1)
        self.assertEqual(stats["hits"], 1)
        self.assertEqual(stats["misses"], 1)
        self.assertEqual(len(cache), 0)

    def test_zero_ttl_never_expires(self):
        clock = FakeClock()
        cache = ResponseCache(max_entries=4, ttl_seconds=0, clock=clock)
        cache.put("a", make_result("A"))
        clock.advance(10_000_000)
        self.assertIsNotNone(cache.get("a"))

    def test_disabled_cache_stores_nothing(self):
        cache = ResponseCache(max_entries=0)
        self.assertFalse(cache.enabled)
        cache.put("a", make_result("A"))
        self.assertIsNone(cache.get("a"))
        self.assertEqual(len(cache), 0)

    def test_returned_values_are_copies(self):
        cache = ResponseCache(max_entries=4)
        original = make_result("A")
        cache.put("a", original)
        original.text = "mutated after put"

        first = cache.get("a")
        first.text = "mutated after get"
        self.assertEqual(cache.get("a").text, "A")

    def test_invalidate_clear_and_hit_rate(self):
        cache = ResponseCache(max_entries=4)
        cache.put("a", make_result("A"))
        cache.put("b", make_result("B"))
        self.assertTrue(cache.invalidate("a"))
        self.assertFalse(cache.invalidate("a"))

        cache.get("b")
        cache.get("missing")
        self.assertEqual(cache.stats()["hit_rate"], 0.5)

        self.assertEqual(cache.clear(), 1)
        self.assertEqual(len(cache), 0)

    def test_concurrent_puts_respect_capacity(self):
        cache = ResponseCache(max_entries=16)

        def writer(offset: int):
            for i in range(200):
                cache.put(f"{offset}-{i}", make_result(str(i)))

        threads = [threading.Thread(target=writer, args=(n,)) for n in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        self.assertEqual(len(cache), 16)
        self.assertEqual(cache.stats()["evictions"], 800 - 16)


if __name__ == "__main__":
    unittest.main()
