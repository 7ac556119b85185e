"""perfgate: budget-gated web performance audits driven by Lighthouse."""

from perfgate.config import RunConfig, build_run_config, load_config
from perfgate.models import AuditResult, RunSummary, Target, Task, TaskResult
from perfgate.runner import RunCallbacks, Runner

__version__ = "0.1.0"

__all__ = [
    "AuditResult",
    "RunCallbacks",
    "RunConfig",
    "RunSummary",
    "Runner",
    "Target",
    "Task",
    "TaskResult",
    "__version__",
    "build_run_config",
    "load_config",
]
