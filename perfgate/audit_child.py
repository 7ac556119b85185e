"""Child-process entry point that runs exactly one Lighthouse audit.

Usage:
    python -m perfgate.audit_child <result-file>

The request comes in through environment variables:
    PERFGATE_TARGET_URL      URL to audit (required)
    PERFGATE_FLAGS           JSON object; "port" is the browser debugging port
    PERFGATE_CONFIG          JSON Lighthouse config object
    PERFGATE_EXTRA_HEADERS   JSON object of extra request headers
    PERFGATE_LIGHTHOUSE_BIN  Lighthouse CLI executable (default: lighthouse)

On success the child writes {"lhr": ...} to the result file and exits 0.
Any failure prints a diagnostic to stderr and exits 1.
"""

from __future__ import annotations

import json
import os
import subprocess
import sys
import tempfile
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

DEFAULT_LIGHTHOUSE_BIN = "lighthouse"
STDERR_TAIL = 2000


class AuditChildError(Exception):
    pass


@dataclass
class AuditRequest:
    url: str
    flags: dict[str, Any] = field(default_factory=dict)
    config: dict[str, Any] = field(default_factory=dict)
    extra_headers: dict[str, str] = field(default_factory=dict)
    lighthouse_bin: str = DEFAULT_LIGHTHOUSE_BIN


def _json_env(environ: Mapping[str, str], name: str, default: Any) -> Any:
    raw = environ.get(name)
    if not raw:
        return default
    try:
        return json.loads(raw)
    except json.JSONDecodeError as exc:
        raise AuditChildError(f"{name} is not valid JSON: {exc}") from exc


def read_request(environ: Mapping[str, str]) -> AuditRequest:
    url = environ.get("PERFGATE_TARGET_URL")
    if not url:
        raise AuditChildError("PERFGATE_TARGET_URL env var is required")
    return AuditRequest(
        url=url,
        flags=_json_env(environ, "PERFGATE_FLAGS", {}),
        config=_json_env(environ, "PERFGATE_CONFIG", {}),
        extra_headers=_json_env(environ, "PERFGATE_EXTRA_HEADERS", {}),
        lighthouse_bin=environ.get("PERFGATE_LIGHTHOUSE_BIN") or DEFAULT_LIGHTHOUSE_BIN,
    )


def build_command(request: AuditRequest, config_path: Path, output_path: Path) -> list[str]:
    command = [
        request.lighthouse_bin,
        request.url,
        "--output=json",
        f"--output-path={output_path}",
        f"--config-path={config_path}",
        "--quiet",
    ]
    if request.flags.get("port"):
        command.append(f"--port={request.flags['port']}")
    if request.flags.get("logLevel"):
        command.append(f"--log-level={request.flags['logLevel']}")
    if request.extra_headers:
        command.append(f"--extra-headers={json.dumps(request.extra_headers)}")
    return command


def run_lighthouse(request: AuditRequest) -> dict[str, Any]:
    with tempfile.TemporaryDirectory(prefix="perfgate-audit-") as work_dir:
        config_path = Path(work_dir) / "config.json"
        output_path = Path(work_dir) / "report.json"
        config_path.write_text(json.dumps(request.config), encoding="utf-8")

        command = build_command(request, config_path, output_path)
        try:
            completed = subprocess.run(command, capture_output=True, text=True)
        except OSError as exc:
            raise AuditChildError(f"Cannot run {request.lighthouse_bin}: {exc}") from exc

        if completed.returncode != 0:
            raise AuditChildError(
                f"Lighthouse exited with code {completed.returncode}: {completed.stderr[-STDERR_TAIL:].strip()}"
            )
        try:
            lhr = json.loads(output_path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            raise AuditChildError(f"Lighthouse produced no readable report: {exc}") from exc

    runtime_error = lhr.get("runtimeError")
    if runtime_error:
        raise AuditChildError(f"Lighthouse runtime error {runtime_error.get('code')}: {runtime_error.get('message')}")
    return lhr


def write_result(result_file: Path, payload: dict[str, Any]) -> None:
    result_file.write_text(json.dumps(payload), encoding="utf-8")


def main(argv: list[str] | None = None) -> int:
    argv = sys.argv[1:] if argv is None else argv
    if not argv:
        print("Usage: python -m perfgate.audit_child <result-file>", file=sys.stderr)
        return 1

    try:
        request = read_request(os.environ)
        lhr = run_lighthouse(request)
        write_result(Path(argv[0]), {"lhr": lhr})
    except (AuditChildError, OSError) as exc:
        print(f"[audit-child] Error: {exc}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
