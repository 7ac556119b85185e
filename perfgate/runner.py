"""Runner: expands targets into tasks, drives them through the scheduler and
folds per-attempt results into one TaskResult per logical task."""

from __future__ import annotations

import logging
import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field, replace

from perfgate.assertions import AssertionEvaluator
from perfgate.auth import merge_auth, missing_env_vars
from perfgate.baseline import ResolvedBaseline, resolve_baseline
from perfgate.config import RunConfig
from perfgate.errors import AuthResolutionError, EmptyMetricsError, SchedulerError
from perfgate.metrics import extract_metrics, median_metrics, validate_metrics
from perfgate.models import AuditResult, RunSummary, Task, TaskResult, utc_now
from perfgate.pool import BrowserPool
from perfgate.profiles import ProfileRegistry
from perfgate.scheduler import Scheduler, SchedulerHooks
from perfgate.worker import AuditWorker

logger = logging.getLogger(__name__)

STOPPED_MESSAGE = "Run stopped before task completed"


@dataclass
class RunCallbacks:
    """Optional progress callbacks. Exceptions raised here are logged and ignored."""

    on_run_start: Callable[[int], None] | None = None
    on_profile_start: Callable[[str, int], None] | None = None
    on_profile_complete: Callable[[str], None] | None = None
    on_task_start: Callable[[Task], None] | None = None
    on_task_complete: Callable[[TaskResult], None] | None = None
    on_task_failed: Callable[[Task, Exception, bool], None] | None = None
    on_task_retry: Callable[[Task, int], None] | None = None
    on_run_complete: Callable[[RunSummary], None] | None = None


@dataclass
class _LogicalTask:
    task: Task
    expected_runs: int
    successes: list[AuditResult] = field(default_factory=list)
    failures: list[AuditResult] = field(default_factory=list)
    outcome: TaskResult | None = None

    @property
    def terminated_runs(self) -> int:
        return len(self.successes) + len(self.failures)


def group_by_profile(tasks: list[Task]) -> dict[str, list[Task]]:
    """Group tasks by profile id, keeping first-seen order."""
    groups: dict[str, list[Task]] = {}
    for task in tasks:
        groups.setdefault(task.profile_id, []).append(task)
    return groups


class Runner:
    """Runs every configured target under its profile and returns a RunSummary.

    Profile groups run one after another; within a group the scheduler keeps
    up to `concurrency` audits in flight.
    """

    def __init__(
        self,
        config: RunConfig,
        *,
        pool: BrowserPool | None = None,
        worker: AuditWorker | None = None,
        registry: ProfileRegistry | None = None,
        callbacks: RunCallbacks | None = None,
    ):
        self.config = config
        self.registry = registry or ProfileRegistry(config.profiles)
        self.callbacks = callbacks or RunCallbacks()

        pool_size = config.effective_pool_size
        if pool_size < config.concurrency:
            logger.warning(
                "pool_size (%d) is smaller than concurrency (%d); at most %d audits will run at once",
                pool_size,
                config.concurrency,
                pool_size,
            )
        self.pool = pool or BrowserPool(pool_size, headless=config.headless, acquire_timeout=config.timeout / 1000)
        self.worker = worker or AuditWorker(self.pool, timeout_ms=config.timeout)
        self.evaluator = AssertionEvaluator(config.assertions) if config.assertions else None

        self._baseline: ResolvedBaseline | None = None
        self._scheduler: Scheduler | None = None
        self._logical: dict[str, _LogicalTask] = {}
        self._logical_by_task: dict[str, str] = {}
        self._running = False
        self._stopped = False

    # ------------------------------------------------------------------
    # Task expansion
    # ------------------------------------------------------------------

    def expand_tasks(self) -> list[Task]:
        """One Task per (target, profile, run); ids are `<target>_<profile>_<run>_<hex>`.

        Runs of the same (target, profile) pair share a random `logical_id`.
        """
        tasks = []
        for target in self.config.targets:
            profile_id = target.profile or self.config.default_profile
            logical_id = uuid.uuid4().hex
            for run_index in range(self.config.runs_per_task):
                tasks.append(Task(
                    id=f"{target.id}_{profile_id}_{run_index}_{uuid.uuid4().hex}",
                    target=target,
                    profile_id=profile_id,
                    logical_id=logical_id,
                    run_index=run_index,
                ))
        return tasks

    # ------------------------------------------------------------------
    # Run lifecycle
    # ------------------------------------------------------------------

    async def run(self) -> RunSummary:
        if self._running:
            raise SchedulerError("Runner is already running")

        self._running = True
        self._stopped = False
        self._logical = {}
        self._logical_by_task = {}
        start_time = utc_now()
        try:
            # An unresolvable default profile aborts the whole run
            self.registry.get_profile(self.config.default_profile)

            if self.config.baseline is not None:
                self._baseline = resolve_baseline(self.config.baseline, self.config.base_dir)

            tasks = self.expand_tasks()
            for task in tasks:
                self._logical_by_task[task.id] = task.logical_id
                if task.logical_id not in self._logical:
                    self._logical[task.logical_id] = _LogicalTask(task=task, expected_runs=self.config.runs_per_task)

            self._emit(self.callbacks.on_run_start, len(self._logical))
            for profile_id, group in group_by_profile(tasks).items():
                if self._stopped:
                    break
                await self._run_group(profile_id, group)
        finally:
            self._scheduler = None
            self._running = False

        task_results = [self._outcome(state) for state in self._logical.values()]
        summary = RunSummary.build(start_time, utc_now(), task_results)
        logger.info(
            "Run finished: %d/%d task(s) completed, %d failed, %s",
            summary.completed_tasks,
            summary.total_tasks,
            summary.failed_tasks,
            "PASSED" if summary.passed else "FAILED",
        )
        self._emit(self.callbacks.on_run_complete, summary)
        return summary

    async def _run_group(self, profile_id: str, group: list[Task]) -> None:
        logger.info("Running %d task(s) with profile %s", len(group), profile_id)
        self._emit(self.callbacks.on_profile_start, profile_id, len(group))

        scheduler = Scheduler(
            concurrency=min(self.config.concurrency, self.config.effective_pool_size),
            max_retries=self.config.max_retries,
            timeout_ms=self.config.timeout,
            hooks=SchedulerHooks(
                on_start=self._on_attempt_start,
                on_complete=self._on_attempt_complete,
                on_failed=self._on_attempt_failed,
                on_retry=self._on_attempt_retry,
            ),
        )
        scheduler.set_handler(self.handle_task)
        scheduler.enqueue(group)
        self._scheduler = scheduler
        await scheduler.run()

        self._emit(self.callbacks.on_profile_complete, profile_id)

    def stop(self) -> None:
        """Stop dispatching new work. Audits already in flight finish normally."""
        self._stopped = True
        if self._scheduler is not None:
            self._scheduler.stop()

    async def shutdown(self) -> None:
        """Kill leftover audit processes and close every pooled browser."""
        await self.worker.shutdown()
        await self.pool.cleanup()

    # ------------------------------------------------------------------
    # Task handler
    # ------------------------------------------------------------------

    async def handle_task(self, task: Task) -> AuditResult:
        started = time.monotonic()
        profile = self.registry.get_profile(task.profile_id)

        auth = merge_auth(profile.auth, task.target.auth)
        if auth is not None:
            missing = missing_env_vars(auth)
            if missing:
                raise AuthResolutionError(missing)

        payload = await self.worker.run(task.target, profile, auth)
        lhr = payload.get("lhr")
        metrics = extract_metrics(lhr)
        if "performance_score" not in metrics or not validate_metrics(metrics):
            raise EmptyMetricsError(f"Audit of {task.target.url} returned no usable metrics")

        return AuditResult(
            task_id=task.id,
            target=task.target,
            profile_id=task.profile_id,
            metrics=metrics,
            duration_ms=(time.monotonic() - started) * 1000,
            timestamp=utc_now(),
            raw=lhr if self.config.output.include_raw else None,
        )

    # ------------------------------------------------------------------
    # Scheduler hooks
    # ------------------------------------------------------------------

    def _on_attempt_start(self, task: Task) -> None:
        logger.debug("Auditing %s (%s, attempt %d)", task.target.url, task.profile_id, task.attempt)
        self._emit(self.callbacks.on_task_start, task)

    def _on_attempt_retry(self, task: Task, attempt: int) -> None:
        logger.info("Retrying %s (attempt %d)", task.target.url, attempt)
        self._emit(self.callbacks.on_task_retry, task, attempt)

    def _on_attempt_failed(self, task: Task, error: Exception, will_retry: bool) -> None:
        logger.warning("Audit of %s failed (attempt %d): %s", task.target.url, task.attempt, error)
        self._emit(self.callbacks.on_task_failed, task, error, will_retry)
        if will_retry:
            return
        state = self._logical.get(task.logical_id)
        if state is None:
            return
        state.failures.append(AuditResult(
            task_id=task.id,
            target=task.target,
            profile_id=task.profile_id,
            error=str(error) or type(error).__name__,
        ))
        self._settle_if_done(state)

    def _on_attempt_complete(self, result: AuditResult) -> None:
        state = self._state_for_result(result)
        if state is None:
            return
        state.successes.append(result)
        self._settle_if_done(state)

    def _state_for_result(self, result: AuditResult) -> _LogicalTask | None:
        logical_id = self._logical_by_task.get(result.task_id)
        return self._logical.get(logical_id) if logical_id is not None else None

    # ------------------------------------------------------------------
    # Aggregation
    # ------------------------------------------------------------------

    def _settle_if_done(self, state: _LogicalTask) -> None:
        if state.outcome is not None or state.terminated_runs < state.expected_runs:
            return
        state.outcome = self._settle(state)
        self._emit(self.callbacks.on_task_complete, state.outcome)

    def _settle(self, state: _LogicalTask) -> TaskResult:
        if not state.successes:
            last_failure = state.failures[-1]
            return TaskResult(task=state.task, result=last_failure, error=last_failure.error)

        metrics = median_metrics([result.metrics for result in state.successes])
        durations = [result.duration_ms for result in state.successes]
        result = replace(
            state.successes[-1],
            metrics=metrics,
            duration_ms=sum(durations) / len(durations),
        )
        if len(state.successes) > 1:
            logger.debug(
                "Aggregated %d run(s) for %s (%s)", len(state.successes), state.task.target.id, state.task.profile_id
            )

        return TaskResult(
            task=state.task,
            result=result,
            verdict=self._evaluate(state.task, result),
            runs_completed=len(state.successes),
        )

    def _evaluate(self, task: Task, result: AuditResult):
        if self.evaluator is None:
            return None
        baseline_metrics = None
        if self._baseline is not None:
            baseline_metrics = self._baseline.metrics_for(task.target.id, task.target.url)
        try:
            return self.evaluator.evaluate(task.id, task.target, result.metrics, baseline_metrics)
        except Exception:
            logger.exception("Assertion evaluation failed for %s", task.target.id)
            return None

    def _outcome(self, state: _LogicalTask) -> TaskResult:
        if state.outcome is not None:
            return state.outcome
        # Only reachable when the run was stopped early
        return TaskResult(task=state.task, error=STOPPED_MESSAGE, runs_completed=len(state.successes))

    @staticmethod
    def _emit(callback, *args) -> None:
        if callback is None:
            return
        try:
            callback(*args)
        except Exception:
            logger.exception("Run callback %s raised", getattr(callback, "__name__", callback))
