"""Worker boundary: runs one audit in an isolated, short-lived child process."""

from __future__ import annotations

import asyncio
import json
import logging
import os
import shutil
import signal
import sys
import tempfile
import uuid
from pathlib import Path
from typing import Any

from perfgate.auth import auth_to_headers, resolve_auth
from perfgate.errors import (
    EmptyResultError,
    WorkerExitError,
    WorkerSpawnError,
    WorkerTimeoutError,
)
from perfgate.models import AuthConfig, Profile, Target
from perfgate.pool import BrowserPool
from perfgate.profiles import build_engine_config

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_MS = 60000
DEFAULT_COMMAND = (sys.executable, "-m", "perfgate.audit_child")
STDERR_TAIL = 500


def performance_score(payload: dict[str, Any]) -> float | None:
    lhr = payload.get("lhr") if isinstance(payload, dict) else None
    if not isinstance(lhr, dict):
        return None
    score = ((lhr.get("categories") or {}).get("performance") or {}).get("score")
    return score if isinstance(score, (int, float)) else None


class AuditWorker:
    """Runs audits against pooled browsers, one child process per audit.

    Every spawned child is tracked in this worker's own active set;
    `shutdown()` kills whatever is still running.
    """

    def __init__(
        self,
        pool: BrowserPool,
        timeout_ms: int = DEFAULT_TIMEOUT_MS,
        command: list[str] | tuple[str, ...] | None = None,
        result_dir: Path | None = None,
        log_level: str = "error",
    ):
        self.pool = pool
        self.timeout_ms = timeout_ms
        self.command = list(command or DEFAULT_COMMAND)
        self.result_dir = Path(result_dir) if result_dir is not None else None
        self._owns_result_dir = False
        self.log_level = log_level
        self._active: set[asyncio.subprocess.Process] = set()

    @property
    def active_count(self) -> int:
        return len(self._active)

    async def run(self, target: Target, profile: Profile, auth: AuthConfig | None = None) -> dict[str, Any]:
        """Audit `target` with a resolved `profile`; returns the engine payload."""
        extra_headers = {}
        if auth is not None and not auth.is_empty():
            extra_headers = auth_to_headers(resolve_auth(auth))
        engine_config = build_engine_config(profile)

        instance = await self.pool.acquire()
        try:
            payload = await self._run_child(target.url, instance.port, engine_config, extra_headers)
        finally:
            self.pool.release(instance)

        if performance_score(payload) is None:
            raise EmptyResultError(f"Audit of {target.url} produced no performance score")
        return payload

    async def _run_child(
        self,
        url: str,
        port: int,
        engine_config: dict[str, Any],
        extra_headers: dict[str, str],
    ) -> dict[str, Any]:
        result_file = self._private_dir() / f"{uuid.uuid4().hex}.json"
        env = {
            **os.environ,
            "PERFGATE_TARGET_URL": url,
            "PERFGATE_FLAGS": json.dumps({"port": port, "output": "json", "logLevel": self.log_level}),
            "PERFGATE_CONFIG": json.dumps(engine_config),
            "PERFGATE_EXTRA_HEADERS": json.dumps(extra_headers),
        }

        try:
            process = await asyncio.create_subprocess_exec(
                *self.command,
                str(result_file),
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.PIPE,
                env=env,
                start_new_session=True,
            )
        except OSError as exc:
            raise WorkerSpawnError(f"Failed to start audit process: {exc}") from exc

        self._active.add(process)
        try:
            try:
                _, stderr = await asyncio.wait_for(process.communicate(), timeout=self.timeout_ms / 1000)
            except TimeoutError as exc:
                raise WorkerTimeoutError(f"Audit process timed out after {self.timeout_ms}ms") from exc
        finally:
            # Lighthouse and anything it started share the child's process group
            await self._kill(process)
            self._active.discard(process)

        try:
            if process.returncode != 0:
                tail = (stderr or b"").decode("utf-8", errors="replace")[-STDERR_TAIL:].strip()
                raise WorkerExitError(
                    f"Audit process exited with code {process.returncode}",
                    returncode=process.returncode,
                    stderr=tail,
                )
            return self._read_result(result_file)
        finally:
            self._remove(result_file)

    def _private_dir(self) -> Path:
        if self.result_dir is None:
            self.result_dir = Path(tempfile.mkdtemp(prefix="perfgate-worker-"))
            self._owns_result_dir = True
        else:
            self.result_dir.mkdir(parents=True, exist_ok=True)
        return self.result_dir

    @staticmethod
    def _read_result(result_file: Path) -> dict[str, Any]:
        try:
            with open(result_file, encoding="utf-8") as fh:
                payload = json.load(fh)
        except (OSError, json.JSONDecodeError) as exc:
            raise WorkerExitError(f"Audit process left no parseable result: {exc}") from exc
        if not isinstance(payload, dict):
            raise WorkerExitError("Audit process result is not a JSON object")
        return payload

    @staticmethod
    def _remove(result_file: Path) -> None:
        try:
            result_file.unlink(missing_ok=True)
        except OSError as exc:
            logger.warning("Could not delete result file %s: %s", result_file, exc)

    @staticmethod
    async def _kill(process: asyncio.subprocess.Process) -> None:
        """SIGKILL the child's whole process group, then reap the child."""
        try:
            os.killpg(process.pid, signal.SIGKILL)
        except ProcessLookupError:
            pass
        if process.returncode is None:
            await process.wait()

    async def shutdown(self) -> None:
        """Kill every child process still running and drop the private result dir."""
        for process in list(self._active):
            logger.debug("Killing stray audit process group %s", process.pid)
            await self._kill(process)
        self._active.clear()
        if self._owns_result_dir and self.result_dir is not None:
            shutil.rmtree(self.result_dir, ignore_errors=True)
            self.result_dir = None
            self._owns_result_dir = False
