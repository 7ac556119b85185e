"""perfgate command line: run budget-gated Lighthouse audits from a TOML config.

Usage:
    perfgate run [-c perfgate.toml] [--target ID ...] [--profile ID] [--concurrency N]
    perfgate profiles [-c perfgate.toml]

Exit codes: 0 all tasks passed, 1 configuration error, 2 run failed.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from dataclasses import replace
from datetime import datetime, timezone
from pathlib import Path

import pandas as pd
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from perfgate import __version__
from perfgate.config import (
    CONFIG_FILENAMES,
    OutputConfig,
    RunConfig,
    apply_overrides,
    build_run_config,
    discover_config_path,
    load_config,
)
from perfgate.errors import ConfigError, PerfgateError, ProfileError
from perfgate.models import METRIC_NAMES, RunSummary, TaskResult
from perfgate.profiles import ProfileRegistry
from perfgate.runner import RunCallbacks, Runner

logger = logging.getLogger("perfgate")

CONFIG_ERROR_EXIT_CODE = 1
BUDGET_EXIT_CODE = 2
INTERRUPTED_EXIT_CODE = 130

stderr_console = Console(stderr=True)


# ---------------------------------------------------------------------------
# Argument parsing
# ---------------------------------------------------------------------------


def build_argument_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="perfgate",
        description="Budget-gated web performance audits with Lighthouse",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("-c", "--config", dest="config", default=None, help="Path to perfgate.toml")
    parser.add_argument("-v", "--verbose", dest="verbose", action="store_true", help="Debug logging to stderr")
    parser.add_argument("-q", "--quiet", dest="quiet", action="store_true", help="Only log warnings and errors")

    subparsers = parser.add_subparsers(dest="command")

    run_parser = subparsers.add_parser("run", help="Audit every configured target and evaluate assertions")
    run_parser.add_argument("--target", dest="targets", action="append", default=None, help="Only audit this target id (repeatable)")
    run_parser.add_argument("-p", "--profile", dest="profile", default=None, help="Run every target with this profile")
    run_parser.add_argument("--concurrency", dest="concurrency", type=int, default=None, help="Audits in flight at once")
    run_parser.add_argument("--max-retries", dest="max_retries", type=int, default=None, help="Retries per failed audit")
    run_parser.add_argument("--timeout", dest="timeout", type=int, default=None, help="Per-audit timeout in milliseconds")
    run_parser.add_argument("-n", "--runs", dest="runs", type=int, default=None, help="Runs per target for median scoring")
    run_parser.add_argument("--pool-size", dest="pool_size", type=int, default=None, help="Browser instances to launch (default: concurrency)")
    run_parser.add_argument("--output-dir", dest="output_dir", default=None, help="Directory for result files")

    subparsers.add_parser("profiles", help="List built-in and configured profiles")

    return parser


def setup_logging(verbose: bool = False, quiet: bool = False) -> None:
    level = logging.DEBUG if verbose else logging.WARNING if quiet else logging.INFO
    handler = RichHandler(console=stderr_console, show_path=verbose, rich_tracebacks=verbose)
    logging.basicConfig(level=level, format="%(message)s", datefmt="[%X]", handlers=[handler], force=True)


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


def resolve_config_path(explicit: str | None) -> Path | None:
    return Path(explicit) if explicit else discover_config_path()


def load_run_config(args: argparse.Namespace) -> RunConfig:
    """Load, override and validate the run configuration for `perfgate run`."""
    config_path = resolve_config_path(args.config)
    if config_path is None:
        raise ConfigError(f"No config file found (looked for {', '.join(CONFIG_FILENAMES)})")

    data = apply_overrides(load_config(config_path), {
        "default_profile": args.profile,
        "concurrency": args.concurrency,
        "max_retries": args.max_retries,
        "timeout": args.timeout,
        "runs_per_task": args.runs,
        "pool_size": args.pool_size,
    })
    if args.output_dir is not None:
        data["output"] = {**data.get("output", {}), "dir": args.output_dir}

    config = build_run_config(data, base_dir=config_path.parent)
    if args.targets:
        unknown = [target_id for target_id in args.targets if target_id not in {t.id for t in config.targets}]
        if unknown:
            raise ConfigError(f"Unknown target id(s): {', '.join(unknown)}")
        config = replace(config, targets=[t for t in config.targets if t.id in args.targets])
    if args.profile is not None:
        config = replace(config, targets=[replace(t, profile=args.profile) for t in config.targets])
    return config


# ---------------------------------------------------------------------------
# Output
# ---------------------------------------------------------------------------


def _status(task_result: TaskResult) -> str:
    if task_result.error is not None:
        return "error"
    if task_result.verdict is not None and not task_result.verdict.passed:
        return "fail"
    return "pass"


def summary_to_dataframe(summary: RunSummary) -> pd.DataFrame:
    """One row per logical task with its (median) metrics and verdict."""
    rows = []
    for task_result in summary.task_results:
        task = task_result.task
        metrics = task_result.result.metrics if task_result.result else {}
        row = {
            "target": task.target.id,
            "url": task.target.url,
            "profile": task.profile_id,
            "status": _status(task_result),
            "runs_completed": task_result.runs_completed,
        }
        for name in METRIC_NAMES:
            row[name] = metrics.get(name)
        row["assertion_failures"] = task_result.verdict.failure_count if task_result.verdict else None
        row["error"] = task_result.error
        rows.append(row)
    return pd.DataFrame(rows)


def generate_output_path(output_dir: str, name: str, extension: str) -> Path:
    """Generate a timestamped output file path."""
    timestamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%SZ")
    dir_path = Path(output_dir)
    dir_path.mkdir(parents=True, exist_ok=True)
    return dir_path / f"{timestamp}-{name}.{extension}"


def output_json(summary: RunSummary, output_path: Path, include_raw: bool = False) -> str:
    data = summary.to_dict()
    if not include_raw:
        for task_result in data["task_results"]:
            if task_result.get("result"):
                task_result["result"].pop("raw", None)
    output_path.parent.mkdir(parents=True, exist_ok=True)
    with open(output_path, "w", encoding="utf-8") as fh:
        json.dump(data, fh, indent=2)
    return str(output_path)


def output_csv(dataframe: pd.DataFrame, output_path: Path) -> str:
    output_path.parent.mkdir(parents=True, exist_ok=True)
    dataframe.to_csv(output_path, index=False)
    return str(output_path)


def write_result_files(summary: RunSummary, output: OutputConfig) -> list[str]:
    written: list[str] = []
    if "json" in output.formats:
        written.append(output_json(summary, generate_output_path(output.dir, "summary", "json"), output.include_raw))
    if "csv" in output.formats:
        written.append(output_csv(summary_to_dataframe(summary), generate_output_path(output.dir, "results", "csv")))
    return written


def _format_metric(name: str, value) -> str:
    if value is None or pd.isna(value):
        return "-"
    if name == "cls":
        return f"{value:.3f}"
    if name == "performance_score":
        return f"{value:.0f}"
    return f"{value:.0f}ms"


def format_summary_table(summary: RunSummary) -> Table:
    """Rich table with one row per task and a pass/fail caption."""
    table = Table(title="perfgate results", caption=_summary_caption(summary))
    table.add_column("Target", style="bold")
    table.add_column("Profile")
    table.add_column("Status")
    for name in ("performance_score", "lcp", "cls", "tbt", "fcp"):
        table.add_column("Score" if name == "performance_score" else name.upper(), justify="right")

    styles = {"pass": "green", "fail": "red", "error": "yellow"}
    for _, row in summary_to_dataframe(summary).iterrows():
        status = row["status"]
        table.add_row(
            row["target"],
            row["profile"],
            f"[{styles[status]}]{status.upper()}[/{styles[status]}]",
            *(_format_metric(name, row[name]) for name in ("performance_score", "lcp", "cls", "tbt", "fcp")),
        )
    return table


def _summary_caption(summary: RunSummary) -> str:
    verdict = "PASSED" if summary.passed else "FAILED"
    return (
        f"{verdict}: {summary.completed_tasks}/{summary.total_tasks} completed, "
        f"{summary.failed_tasks} failed in {summary.duration_ms / 1000:.1f}s"
    )


def print_assertion_failures(summary: RunSummary, console: Console) -> None:
    for task_result in summary.task_results:
        verdict = task_result.verdict
        if verdict is None or verdict.passed:
            continue
        console.print(f"[red]✗[/red] {task_result.task.target.label} ({task_result.task.profile_id})")
        for result in verdict.results:
            if not result.passed:
                console.print(f"    {result.details}")


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


def build_progress_callbacks() -> RunCallbacks:
    progress = {"done": 0, "total": 0}

    def on_run_start(count: int) -> None:
        progress["total"] = count

    def on_task_complete(task_result: TaskResult) -> None:
        progress["done"] += 1
        logger.info(
            "[%d/%d] %s (%s): %s",
            progress["done"],
            progress["total"],
            task_result.task.target.label,
            task_result.task.profile_id,
            _status(task_result).upper(),
        )

    return RunCallbacks(on_run_start=on_run_start, on_task_complete=on_task_complete)


async def execute_run(config: RunConfig, callbacks: RunCallbacks | None = None) -> RunSummary:
    runner = Runner(config, callbacks=callbacks)
    try:
        return await runner.run()
    finally:
        await runner.shutdown()


def cmd_run(args: argparse.Namespace) -> int:
    config = load_run_config(args)
    summary = asyncio.run(execute_run(config, build_progress_callbacks()))

    if "cli" in config.output.formats:
        console = Console()
        console.print(format_summary_table(summary))
        print_assertion_failures(summary, console)

    written = write_result_files(summary, config.output)
    if written:
        logger.info("Results written to: %s", ", ".join(written))

    return 0 if summary.passed else BUDGET_EXIT_CODE


def cmd_profiles(args: argparse.Namespace) -> int:
    config_path = resolve_config_path(args.config)
    custom = {}
    if config_path is not None:
        config = build_run_config(load_config(config_path), base_dir=config_path.parent)
        custom = config.profiles
    registry = ProfileRegistry(custom)

    table = Table(title="Profiles")
    table.add_column("ID", style="bold")
    table.add_column("Name")
    table.add_column("Extends")
    table.add_column("Form factor")
    for profile in registry.list_profiles():
        resolved = registry.get_profile(profile.id)
        table.add_row(
            profile.id,
            profile.name or "",
            profile.extends or "",
            str(resolved.settings.get("formFactor", "desktop")),
        )
    Console().print(table)
    return 0


def main(argv: list[str] | None = None) -> int:
    parser = build_argument_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return 0

    setup_logging(verbose=args.verbose, quiet=args.quiet)

    commands = {
        "run": cmd_run,
        "profiles": cmd_profiles,
    }
    try:
        return commands[args.command](args)
    except (ConfigError, ProfileError) as exc:
        logger.error("%s", exc)
        return CONFIG_ERROR_EXIT_CODE
    except PerfgateError as exc:
        logger.error("Run aborted: %s", exc)
        return BUDGET_EXIT_CODE
    except KeyboardInterrupt:
        logger.warning("Interrupted")
        return INTERRUPTED_EXIT_CODE


if __name__ == "__main__":
    sys.exit(main())
