"""Data records shared by the scheduler, runner and assertion evaluator."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any

# Normalized metric keys, in display order.
METRIC_NAMES = ("performance_score", "lcp", "cls", "fcp", "tbt", "inp", "fid")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class Cookie:
    name: str
    value: str
    domain: str | None = None
    path: str = "/"
    secure: bool = True
    http_only: bool = False
    same_site: str | None = None
    expires: float | None = None


@dataclass(frozen=True)
class AuthConfig:
    headers: dict[str, str] = field(default_factory=dict)
    cookies: list[Cookie] = field(default_factory=list)

    def is_empty(self) -> bool:
        return not self.headers and not self.cookies


@dataclass(frozen=True)
class Target:
    id: str
    url: str
    name: str | None = None
    tags: list[str] = field(default_factory=list)
    profile: str | None = None
    auth: AuthConfig | None = None

    @property
    def label(self) -> str:
        return self.name or self.id


@dataclass(frozen=True)
class Profile:
    id: str
    name: str | None = None
    settings: dict[str, Any] = field(default_factory=dict)
    extends: str | None = None
    auth: AuthConfig | None = None


@dataclass(frozen=True)
class Task:
    """One attempt at auditing one (target, profile) pair."""

    id: str
    target: Target
    profile_id: str
    attempt: int = 1
    created_at: datetime = field(default_factory=utc_now)
    logical_id: str = ""
    run_index: int = 0


@dataclass(frozen=True)
class AuditResult:
    task_id: str
    target: Target
    profile_id: str
    metrics: dict[str, float] = field(default_factory=dict)
    duration_ms: float = 0.0
    timestamp: datetime = field(default_factory=utc_now)
    raw: dict[str, Any] | None = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass(frozen=True)
class Threshold:
    min: float | None = None
    max: float | None = None


@dataclass(frozen=True)
class DeltaRules:
    delta_max_pct: float | None = None
    delta_min: float | None = None
    delta_max_ms: float | None = None

    def is_empty(self) -> bool:
        return self.delta_max_pct is None and self.delta_min is None and self.delta_max_ms is None


@dataclass(frozen=True)
class AssertionResult:
    metric: str
    passed: bool
    actual: float | None = None
    expected: Threshold | None = None
    delta: dict[str, float] | None = None
    details: str | None = None


@dataclass(frozen=True)
class AssertionVerdict:
    task_id: str
    target: Target
    results: list[AssertionResult]
    passed: bool
    failure_count: int

    @classmethod
    def from_results(cls, task_id: str, target: Target, results: list[AssertionResult]) -> AssertionVerdict:
        failures = sum(1 for result in results if not result.passed)
        return cls(task_id=task_id, target=target, results=results, passed=failures == 0, failure_count=failures)


@dataclass(frozen=True)
class BaselineTarget:
    id: str
    url: str
    metrics: dict[str, float] = field(default_factory=dict)


@dataclass(frozen=True)
class Baseline:
    version: str
    targets: list[BaselineTarget]
    generated_at: str | None = None


@dataclass
class TaskResult:
    """Terminal outcome of one logical task (all runs and retries folded together)."""

    task: Task
    result: AuditResult | None = None
    verdict: AssertionVerdict | None = None
    error: str | None = None
    runs_completed: int = 0

    @property
    def completed(self) -> bool:
        return self.result is not None and self.error is None

    @property
    def failed(self) -> bool:
        return self.error is not None or (self.verdict is not None and not self.verdict.passed)


@dataclass
class RunSummary:
    start_time: datetime
    end_time: datetime
    duration_ms: float
    total_tasks: int
    completed_tasks: int
    failed_tasks: int
    passed: bool
    task_results: list[TaskResult] = field(default_factory=list)

    @classmethod
    def build(cls, start_time: datetime, end_time: datetime, task_results: list[TaskResult]) -> RunSummary:
        completed = sum(1 for task_result in task_results if task_result.completed)
        failed = sum(1 for task_result in task_results if task_result.failed)
        passed = (
            len(task_results) > 0
            and completed == len(task_results)
            and all(task_result.verdict is None or task_result.verdict.passed for task_result in task_results)
        )
        return cls(
            start_time=start_time,
            end_time=end_time,
            duration_ms=(end_time - start_time).total_seconds() * 1000,
            total_tasks=len(task_results),
            completed_tasks=completed,
            failed_tasks=failed,
            passed=passed,
            task_results=list(task_results),
        )

    def to_dict(self) -> dict[str, Any]:
        """JSON-ready representation (datetimes as ISO strings)."""
        return _jsonable(asdict(self))


def _jsonable(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, dict):
        return {key: _jsonable(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(item) for item in value]
    return value
