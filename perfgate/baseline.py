"""Baseline loading and lookup for regression (delta) assertions."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from perfgate.errors import BaselineError
from perfgate.models import Baseline, BaselineTarget

logger = logging.getLogger(__name__)

VALID_MATCH_KEYS = ("id", "url")


@dataclass(frozen=True)
class BaselineConfig:
    file: str | None = None
    data: dict[str, Any] | None = None
    match_by: str = "id"


@dataclass
class ResolvedBaseline:
    baseline: Baseline
    match_by: str
    index: dict[str, dict[str, float]] = field(default_factory=dict)

    def metrics_for(self, target_id: str, target_url: str) -> dict[str, float] | None:
        key = target_id if self.match_by == "id" else target_url
        return self.index.get(key)


def parse_baseline(data: Any) -> Baseline:
    """Validate a baseline document and build a Baseline."""
    if not isinstance(data, dict):
        raise BaselineError("Invalid baseline data: expected an object")
    version = data.get("version")
    if not isinstance(version, str):
        raise BaselineError("Invalid baseline data: 'version' must be a string")
    raw_targets = data.get("targets")
    if not isinstance(raw_targets, list):
        raise BaselineError("Invalid baseline data: 'targets' must be a list")

    targets = []
    for position, entry in enumerate(raw_targets):
        if not isinstance(entry, dict) or not isinstance(entry.get("id"), str) or not isinstance(entry.get("url"), str):
            raise BaselineError(f"Invalid baseline target at index {position}: 'id' and 'url' are required")
        raw_metrics = entry.get("metrics") or {}
        if not isinstance(raw_metrics, dict):
            raise BaselineError(f"Invalid baseline target {entry['id']}: 'metrics' must be an object")
        metrics = {
            name: float(value)
            for name, value in raw_metrics.items()
            if isinstance(value, (int, float)) and not isinstance(value, bool)
        }
        targets.append(BaselineTarget(id=entry["id"], url=entry["url"], metrics=metrics))

    return Baseline(version=version, targets=targets, generated_at=data.get("generatedAt"))


def load_baseline_file(path: Path) -> Baseline:
    try:
        with open(path, encoding="utf-8") as fh:
            data = json.load(fh)
    except (OSError, json.JSONDecodeError) as exc:
        raise BaselineError(f"Failed to load baseline file {path}: {exc}") from exc
    return parse_baseline(data)


def index_baseline(baseline: Baseline, match_by: str = "id") -> dict[str, dict[str, float]]:
    """Map match key -> metrics. The first entry wins on duplicate keys."""
    index: dict[str, dict[str, float]] = {}
    for target in baseline.targets:
        key = target.id if match_by == "id" else target.url
        index.setdefault(key, target.metrics)
    return index


def resolve_baseline(config: BaselineConfig, base_dir: Path | None = None) -> ResolvedBaseline | None:
    """Load and index the configured baseline.

    Returns None (and logs a warning) when the baseline cannot be loaded, so a
    broken baseline never aborts a run.
    """
    try:
        if config.match_by not in VALID_MATCH_KEYS:
            raise BaselineError(f"Invalid baseline match key: {config.match_by}")
        if config.data is not None:
            baseline = parse_baseline(config.data)
        elif config.file:
            path = Path(config.file)
            if base_dir is not None and not path.is_absolute():
                path = base_dir / path
            baseline = load_baseline_file(path)
        else:
            raise BaselineError("No baseline source provided (neither file nor data)")
    except BaselineError as exc:
        logger.warning("Baseline unavailable, delta assertions disabled: %s", exc)
        return None

    return ResolvedBaseline(
        baseline=baseline,
        match_by=config.match_by,
        index=index_baseline(baseline, config.match_by),
    )
