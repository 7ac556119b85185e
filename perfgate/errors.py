"""Exception hierarchy for perfgate."""

from __future__ import annotations


class PerfgateError(Exception):
    """Base class for every error raised by perfgate."""


class ConfigError(PerfgateError):
    """Raised when a configuration file or object is invalid."""

    def __init__(self, message: str, problems: list[str] | None = None):
        self.problems = problems or []
        if self.problems:
            message = message + ":\n" + "\n".join(f"  - {problem}" for problem in self.problems)
        super().__init__(message)


# ---------------------------------------------------------------------------
# Profiles
# ---------------------------------------------------------------------------


class ProfileError(PerfgateError):
    """Raised when a profile cannot be resolved."""


class ProfileNotFoundError(ProfileError):
    def __init__(self, profile_id: str):
        self.profile_id = profile_id
        super().__init__(f"Profile not found: {profile_id}")


class ProfileCycleError(ProfileError):
    def __init__(self, chain: list[str]):
        self.chain = chain
        super().__init__(f"Circular profile inheritance: {' -> '.join(chain)}")


class BaseProfileNotFoundError(ProfileError):
    def __init__(self, base_id: str, profile_id: str):
        self.base_id = base_id
        self.profile_id = profile_id
        super().__init__(f"Base profile not found: {base_id} (extended by {profile_id})")


# ---------------------------------------------------------------------------
# Auth
# ---------------------------------------------------------------------------


class AuthResolutionError(PerfgateError):
    """Raised when auth configuration references undefined environment variables."""

    def __init__(self, missing_vars: list[str]):
        self.missing_vars = missing_vars
        super().__init__(
            "Missing required environment variables for authentication: " + ", ".join(missing_vars)
        )


# ---------------------------------------------------------------------------
# Browser pool
# ---------------------------------------------------------------------------


class PoolError(PerfgateError):
    """Raised for browser pool failures."""


class PoolExhaustedError(PoolError):
    """Raised when no browser instance frees up within the polling budget."""


class BrowserLaunchError(PoolError):
    """Raised when a browser instance cannot be started."""


# ---------------------------------------------------------------------------
# Worker boundary
# ---------------------------------------------------------------------------


class WorkerError(PerfgateError):
    """Raised when an audit child process fails."""


class WorkerSpawnError(WorkerError):
    pass


class WorkerTimeoutError(WorkerError):
    pass


class WorkerExitError(WorkerError):
    def __init__(self, message: str, returncode: int | None = None, stderr: str = ""):
        self.returncode = returncode
        self.stderr = stderr
        if stderr:
            message = f"{message}: {stderr}"
        super().__init__(message)


class EmptyResultError(WorkerError):
    """The audit finished but produced no performance score."""


# ---------------------------------------------------------------------------
# Metrics, scheduling, baseline
# ---------------------------------------------------------------------------


class MetricExtractionError(PerfgateError):
    pass


class EmptyMetricsError(PerfgateError):
    """Raised when normalized metrics are missing a score or out of range."""


class SchedulerError(PerfgateError):
    """Raised when the scheduler itself is misused or broken."""


class TaskTimeoutError(PerfgateError):
    pass


class BaselineError(PerfgateError):
    pass
