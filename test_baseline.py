"""Unit tests for perfgate.baseline."""

from __future__ import annotations

import json
import tempfile
import unittest
from pathlib import Path

from perfgate.baseline import BaselineConfig, index_baseline, load_baseline_file, parse_baseline, resolve_baseline
from perfgate.errors import BaselineError

# ---------------------------------------------------------------------------
# Shared Fixtures
# ---------------------------------------------------------------------------

BASELINE_DATA = {
    "version": "1",
    "generatedAt": "2026-10-01T00:00:00Z",
    "targets": [
        {"id": "home", "url": "https://example.com/", "metrics": {"lcp": 2000, "performance_score": 90}},
        {"id": "about", "url": "https://example.com/about", "metrics": {"lcp": 1500}},
        {"id": "home", "url": "https://example.com/dup", "metrics": {"lcp": 9999}},
    ],
}


# ===================================================================
# 1. TestParseBaseline
# ===================================================================


class TestParseBaseline(unittest.TestCase):

    def test_valid_document(self):
        baseline = parse_baseline(BASELINE_DATA)
        self.assertEqual(baseline.version, "1")
        self.assertEqual(baseline.generated_at, "2026-10-01T00:00:00Z")
        self.assertEqual(len(baseline.targets), 3)
        self.assertEqual(baseline.targets[0].metrics["lcp"], 2000.0)

    def test_non_numeric_metrics_dropped(self):
        baseline = parse_baseline({
            "version": "1",
            "targets": [{"id": "a", "url": "https://a.test/", "metrics": {"lcp": "fast", "cls": 0.1, "ok": True}}],
        })
        self.assertEqual(baseline.targets[0].metrics, {"cls": 0.1})

    def test_invalid_documents(self):
        for data in (
            [],
            {"targets": []},
            {"version": "1", "targets": {}},
            {"version": "1", "targets": [{"id": "a"}]},
            {"version": "1", "targets": [{"id": "a", "url": "https://a.test/", "metrics": "fast"}]},
        ):
            with self.subTest(data=data):
                with self.assertRaises(BaselineError):
                    parse_baseline(data)


# ===================================================================
# 2. TestIndexAndResolve
# ===================================================================


class TestIndexAndResolve(unittest.TestCase):

    def test_first_entry_wins(self):
        index = index_baseline(parse_baseline(BASELINE_DATA), "id")
        self.assertEqual(index["home"]["lcp"], 2000.0)

    def test_match_by_url(self):
        resolved = resolve_baseline(BaselineConfig(data=BASELINE_DATA, match_by="url"))
        self.assertEqual(resolved.metrics_for("whatever", "https://example.com/about"), {"lcp": 1500.0})
        self.assertIsNone(resolved.metrics_for("about", "https://other.test/"))

    def test_load_from_file_relative_to_base_dir(self):
        with tempfile.TemporaryDirectory() as tmp:
            Path(tmp, "baseline.json").write_text(json.dumps(BASELINE_DATA))
            resolved = resolve_baseline(BaselineConfig(file="baseline.json"), base_dir=Path(tmp))
        self.assertEqual(resolved.metrics_for("about", ""), {"lcp": 1500.0})

    def test_missing_file_returns_none(self):
        with self.assertLogs("perfgate.baseline", level="WARNING") as logs:
            resolved = resolve_baseline(BaselineConfig(file="/nonexistent/baseline.json"))
        self.assertIsNone(resolved)
        self.assertIn("delta assertions disabled", logs.output[0])

    def test_invalid_match_key_returns_none(self):
        with self.assertLogs("perfgate.baseline", level="WARNING"):
            self.assertIsNone(resolve_baseline(BaselineConfig(data=BASELINE_DATA, match_by="name")))

    def test_malformed_json(self):
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp, "baseline.json")
            path.write_text("{not json")
            with self.assertRaises(BaselineError):
                load_baseline_file(path)


if __name__ == "__main__":
    unittest.main()
