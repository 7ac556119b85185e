"""Metric extraction from Lighthouse results and multi-run aggregation."""

from __future__ import annotations

import re
from typing import Any

import pandas as pd

from perfgate.errors import MetricExtractionError

PERFORMANCE_CATEGORY = "performance"

# Normalized metric name -> Lighthouse audit id
AUDIT_IDS = {
    "lcp": "largest-contentful-paint",
    "cls": "cumulative-layout-shift",
    "fid": "max-potential-fid",
    "inp": "interaction-to-next-paint",
    "tbt": "total-blocking-time",
    "fcp": "first-contentful-paint",
}

TIMING_METRICS = ("lcp", "fid", "inp", "tbt", "fcp")

DISPLAY_VALUE_PATTERN = re.compile(r"^([\d.]+)")


def _audit_value(audit: dict[str, Any]) -> float | None:
    value = audit.get("numericValue")
    if isinstance(value, (int, float)):
        return float(value)

    # Fall back to the display string, e.g. "1.2 s" -> 1200
    display_value = audit.get("displayValue")
    if isinstance(display_value, str):
        match = DISPLAY_VALUE_PATTERN.match(display_value)
        if match:
            try:
                parsed = float(match.group(1))
            except ValueError:
                return None
            if " s" in display_value:
                parsed *= 1000
            return parsed
    return None


def _round_metric(name: str, value: float) -> float:
    if name == "cls":
        return round(value, 4)
    return round(value)


def extract_metrics(lhr: dict[str, Any], audit_mappings: dict[str, str] | None = None) -> dict[str, float]:
    """Normalize a Lighthouse result into a flat metric dict.

    Metrics the audit did not produce are left out.
    """
    if not isinstance(lhr, dict) or not isinstance(lhr.get("audits"), dict):
        raise MetricExtractionError("Invalid Lighthouse result: missing audits data")

    audit_mappings = audit_mappings or {}
    audits = lhr["audits"]
    metrics: dict[str, float] = {}

    for name, audit_id in AUDIT_IDS.items():
        audit = audits.get(audit_mappings.get(audit_id, audit_id))
        if not isinstance(audit, dict):
            continue
        value = _audit_value(audit)
        if value is not None:
            metrics[name] = _round_metric(name, value)

    performance = (lhr.get("categories") or {}).get(PERFORMANCE_CATEGORY) or {}
    score = performance.get("score")
    if isinstance(score, (int, float)):
        metrics["performance_score"] = round(score * 100)

    return metrics


def validate_metrics(metrics: dict[str, float]) -> bool:
    """Check value ranges: CLS 0-1, score 0-100, timings non-negative."""
    cls = metrics.get("cls")
    if cls is not None and not 0 <= cls <= 1:
        return False
    score = metrics.get("performance_score")
    if score is not None and not 0 <= score <= 100:
        return False
    return all(metrics[name] >= 0 for name in TIMING_METRICS if name in metrics)


def median_metrics(runs: list[dict[str, float]]) -> dict[str, float]:
    """Median of each metric across runs, ignoring runs that lack it."""
    if not runs:
        return {}
    if len(runs) == 1:
        return dict(runs[0])

    dataframe = pd.DataFrame(runs)
    medians: dict[str, float] = {}
    for column in dataframe.columns:
        values = pd.to_numeric(dataframe[column], errors="coerce").dropna()
        if len(values) > 0:
            medians[column] = float(values.median())
    return medians
