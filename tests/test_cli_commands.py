from __future__ import annotations

import argparse
import json
import tempfile
import unittest
from pathlib import Path
from unittest.mock import patch

import main
from pipeline import storage as storage_mod
from pipeline.cache import ResponseCache
from pipeline.client import GenerationClient
from pipeline.costs import default_tracker
from pipeline.errors import GenerationError
from pipeline.providers import MockProvider


class CliCommandTests(unittest.TestCase):
    def setUp(self):
        self.tmpdir = tempfile.TemporaryDirectory()
        self.addCleanup(self.tmpdir.cleanup)
        self._old_db_path = storage_mod.DB_PATH
        storage_mod.reset_storage_connection_for_tests()
        storage_mod.DB_PATH = Path(self.tmpdir.name) / "cli_test.db"
        default_tracker.reset()

        self.client = GenerationClient(MockProvider(), cache=ResponseCache(max_entries=8), tracker=default_tracker)
        patcher = patch.object(main, "build_client", return_value=self.client)
        patcher.start()
        self.addCleanup(patcher.stop)

    def tearDown(self):
        default_tracker.remove_listener(storage_mod.save_usage_entry)
        default_tracker.reset()
        storage_mod.reset_storage_connection_for_tests()
        storage_mod.DB_PATH = self._old_db_path

    def _generate_args(self, **overrides) -> argparse.Namespace:
        values = {
            "kind": "text",
            "model": "gemini-2.5-flash",
            "prompt": "Name three hooks",
            "input_uri": None,
            "params": None,
            "no_cache": False,
        }
        values.update(overrides)
        return argparse.Namespace(**values)

    def test_generate_persists_usage(self):
        self.assertEqual(main.run_generate(self._generate_args()), 0)
        self.assertEqual(storage_mod.usage_totals()["calls"], 1)

    def test_generate_rejects_invalid_request(self):
        self.assertEqual(main.run_generate(self._generate_args(prompt="")), 1)

    def test_bad_provider_config_exits_cleanly(self):
        broken = GenerationError("Unknown provider: 'nope'. Available: ['mock', 'http']", provider="nope")
        path = Path(self.tmpdir.name) / "requests.json"
        path.write_text(json.dumps([{"model": "gemini-2.5-flash", "prompt": "one"}]), encoding="utf-8")

        with patch.object(main, "build_client", side_effect=broken):
            self.assertEqual(main.run_generate(self._generate_args()), 1)
            self.assertEqual(main.run_batch(argparse.Namespace(input=str(path), workers=2)), 1)
            self.assertEqual(main.run_health(argparse.Namespace()), 1)

        self.assertEqual(self.client.stats()["calls"], 0)
        default_tracker.record("mock", "gemini-2.5-flash", cost=0.01)
        storage_mod.init_db()
        self.assertEqual(storage_mod.usage_totals()["calls"], 0)

    def test_batch_runs_every_request(self):
        path = Path(self.tmpdir.name) / "requests.json"
        path.write_text(json.dumps([
            {"model": "gemini-2.5-flash", "prompt": "one"},
            {"kind": "image", "model": "imagen-4.0-generate-001", "prompt": "two"},
        ]), encoding="utf-8")

        code = main.run_batch(argparse.Namespace(input=str(path), workers=2))

        self.assertEqual(code, 0)
        self.assertEqual(self.client.stats()["provider_calls"], 2)

    def test_batch_rejects_non_list_input(self):
        path = Path(self.tmpdir.name) / "requests.json"
        path.write_text(json.dumps({"model": "x"}), encoding="utf-8")
        self.assertEqual(main.run_batch(argparse.Namespace(input=str(path), workers=2)), 1)

        missing = Path(self.tmpdir.name) / "missing.json"
        self.assertEqual(main.run_batch(argparse.Namespace(input=str(missing), workers=2)), 1)

    def test_pricing_and_usage_commands(self):
        self.assertEqual(main.run_pricing(argparse.Namespace(model="veo-3.0-fast-generate-001")), 0)
        main.run_generate(self._generate_args())
        self.assertEqual(main.run_usage(argparse.Namespace(limit=5, model=None)), 0)


if __name__ == "__main__":
    unittest.main()
