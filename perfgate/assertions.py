"""Budget assertions: threshold resolution and metric/baseline-delta evaluation."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace

from perfgate.models import AssertionResult, AssertionVerdict, DeltaRules, Target, Threshold

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AssertionConfig:
    """Thresholds per metric, plus tag- and target-keyed overrides."""

    metrics: dict[str, Threshold] = field(default_factory=dict)
    delta: DeltaRules | None = None
    tags: dict[str, dict[str, Threshold]] = field(default_factory=dict)
    targets: dict[str, dict[str, Threshold]] = field(default_factory=dict)


def merge_thresholds(base: dict[str, Threshold], override: dict[str, Threshold]) -> dict[str, Threshold]:
    """Merge per metric; only the fields set in the override replace the base."""
    merged = dict(base)
    for metric, threshold in override.items():
        current = merged.get(metric)
        if current is None:
            merged[metric] = threshold
            continue
        updates = {}
        if threshold.min is not None:
            updates["min"] = threshold.min
        if threshold.max is not None:
            updates["max"] = threshold.max
        merged[metric] = replace(current, **updates)
    return merged


def resolve_thresholds(config: AssertionConfig, target: Target) -> dict[str, Threshold]:
    """Effective thresholds for a target.

    Resolution order (later wins):
      1. Global metric thresholds
      2. Tag overrides, in the order the target lists its tags
      3. Target-id overrides
    """
    resolved = dict(config.metrics)
    for tag in target.tags:
        if tag in config.tags:
            logger.debug("Applying tag override %s for target %s", tag, target.id)
            resolved = merge_thresholds(resolved, config.tags[tag])
    if target.id in config.targets:
        logger.debug("Applying target override for %s", target.id)
        resolved = merge_thresholds(resolved, config.targets[target.id])
    return resolved


def evaluate_metric(metric: str, actual: float, threshold: Threshold) -> AssertionResult:
    failures = []
    if threshold.min is not None and actual < threshold.min:
        failures.append(f"below minimum threshold of {threshold.min}")
    if threshold.max is not None and actual > threshold.max:
        failures.append(f"above maximum threshold of {threshold.max}")

    return AssertionResult(
        metric=metric,
        passed=not failures,
        actual=actual,
        expected=threshold,
        details=f"{metric} = {actual} is {' and '.join(failures)}" if failures else None,
    )


def evaluate_metrics(metrics: dict[str, float], thresholds: dict[str, Threshold]) -> list[AssertionResult]:
    """Check every metric present in both the result and the thresholds."""
    return [
        evaluate_metric(metric, metrics[metric], threshold)
        for metric, threshold in thresholds.items()
        if metrics.get(metric) is not None
    ]


def evaluate_delta(metric: str, actual: float, baseline: float, rules: DeltaRules) -> AssertionResult | None:
    if rules.is_empty():
        return None

    change = actual - baseline
    change_pct = change / baseline * 100 if baseline != 0 else 0.0

    failures = []
    if rules.delta_max_pct is not None and change_pct > rules.delta_max_pct:
        failures.append(f"increased by {change_pct:.1f}% (max allowed: {rules.delta_max_pct}%)")
    if rules.delta_min is not None and change < rules.delta_min:
        failures.append(f"changed by {change:.1f} (min required: {rules.delta_min})")
    if rules.delta_max_ms is not None and change > rules.delta_max_ms:
        failures.append(f"increased by {change:.1f}ms (max allowed: {rules.delta_max_ms}ms)")

    return AssertionResult(
        metric=f"{metric}_delta",
        passed=not failures,
        actual=actual,
        delta={"baseline": baseline, "change": change, "change_pct": change_pct},
        details=f"{metric} delta violation: {' and '.join(failures)}" if failures else None,
    )


def evaluate_deltas(
    metrics: dict[str, float],
    baseline: dict[str, float],
    rules: DeltaRules,
) -> list[AssertionResult]:
    """Compare each metric present in both the result and the baseline."""
    results = []
    for metric, actual in metrics.items():
        if actual is None or baseline.get(metric) is None:
            continue
        result = evaluate_delta(metric, actual, baseline[metric], rules)
        if result is not None:
            results.append(result)
    return results


def evaluate(
    metrics: dict[str, float],
    thresholds: dict[str, Threshold],
    baseline: dict[str, float] | None = None,
    delta: DeltaRules | None = None,
) -> list[AssertionResult]:
    results = evaluate_metrics(metrics, thresholds)
    if baseline and delta:
        results.extend(evaluate_deltas(metrics, baseline, delta))
    return results


class AssertionEvaluator:
    """Produces a verdict for one audited target under a fixed assertion config."""

    def __init__(self, config: AssertionConfig):
        self.config = config

    def resolve(self, target: Target) -> dict[str, Threshold]:
        return resolve_thresholds(self.config, target)

    def evaluate(
        self,
        task_id: str,
        target: Target,
        metrics: dict[str, float],
        baseline: dict[str, float] | None = None,
    ) -> AssertionVerdict:
        thresholds = self.resolve(target)
        results = evaluate(metrics, thresholds, baseline, self.config.delta)
        verdict = AssertionVerdict.from_results(task_id, target, results)
        logger.debug(
            "Assertions for %s: %s (%d/%d passed)",
            target.id,
            "PASSED" if verdict.passed else "FAILED",
            len(results) - verdict.failure_count,
            len(results),
        )
        return verdict
