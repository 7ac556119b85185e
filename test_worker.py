"""Tests for perfgate.worker and perfgate.audit_child.

Worker tests spawn real child processes, with small `python -c` scripts
standing in for the Lighthouse child.
"""

from __future__ import annotations

import asyncio
import json
import os
import stat
import sys
import tempfile
import textwrap
import time
import unittest
from pathlib import Path
from unittest.mock import MagicMock, patch

from perfgate import audit_child
from perfgate.errors import (
    AuthResolutionError,
    EmptyResultError,
    WorkerExitError,
    WorkerSpawnError,
    WorkerTimeoutError,
)
from perfgate.models import AuthConfig, Cookie, Target
from perfgate.pool import BrowserInstance
from perfgate.profiles import BUILT_IN_PROFILES
from perfgate.worker import AuditWorker

# ---------------------------------------------------------------------------
# Shared Fixtures
# ---------------------------------------------------------------------------

HOME = Target(id="home", url="https://example.com/")
PROFILE = BUILT_IN_PROFILES["default"]

# Echoes its request back inside a valid LHR
ECHO_SCRIPT = textwrap.dedent("""\
    import json, os, sys
    lhr = {
        "requestedUrl": os.environ["PERFGATE_TARGET_URL"],
        "flags": json.loads(os.environ["PERFGATE_FLAGS"]),
        "config": json.loads(os.environ["PERFGATE_CONFIG"]),
        "headers": json.loads(os.environ["PERFGATE_EXTRA_HEADERS"]),
        "categories": {"performance": {"score": 0.9}},
        "audits": {"largest-contentful-paint": {"numericValue": 1800}},
    }
    with open(sys.argv[1], "w") as fh:
        json.dump({"lhr": lhr}, fh)
""")

FAIL_SCRIPT = "import sys; sys.stderr.write('engine exploded'); sys.exit(3)"
HANG_SCRIPT = "import time; time.sleep(30)"
GARBAGE_SCRIPT = "import sys; open(sys.argv[1], 'w').write('not json')"
NO_SCORE_SCRIPT = textwrap.dedent("""\
    import json, sys
    with open(sys.argv[1], "w") as fh:
        json.dump({"lhr": {"categories": {"performance": {"score": None}}, "audits": {}}}, fh)
""")


# Starts a long-lived grandchild the way audit_child starts Lighthouse
def _spawning_script(pid_file: Path, inherit_stderr: bool = False) -> str:
    pipes = "" if inherit_stderr else ", stdout=subprocess.PIPE, stderr=subprocess.PIPE"
    return textwrap.dedent(f"""\
        import subprocess, sys
        child = subprocess.Popen([sys.executable, "-c", "import time; time.sleep(30)"]{pipes})
        with open({str(pid_file)!r}, "w") as fh:
            fh.write(str(child.pid))
        child.wait()
    """)


def _is_running(pid: int) -> bool:
    """True while `pid` exists and is not a zombie."""
    try:
        stat_line = Path(f"/proc/{pid}/stat").read_text()
    except FileNotFoundError:
        return False
    except OSError:
        try:
            os.kill(pid, 0)
        except ProcessLookupError:
            return False
        return True
    return stat_line.rsplit(")", 1)[1].split()[0] not in ("Z", "X")


class FakePool:
    def __init__(self):
        self.instance = BrowserInstance(port=9333)
        self.acquired = 0
        self.release = MagicMock()

    async def acquire(self):
        self.acquired += 1
        return self.instance


# ===================================================================
# 1. TestAuditWorker
# ===================================================================


class TestAuditWorker(unittest.IsolatedAsyncioTestCase):

    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.result_dir = Path(self._tmp.name)
        self.pool = FakePool()

    def tearDown(self):
        self._tmp.cleanup()

    def _worker(self, script: str, timeout_ms: int = 10000) -> AuditWorker:
        return AuditWorker(
            self.pool,
            timeout_ms=timeout_ms,
            command=[sys.executable, "-c", script],
            result_dir=self.result_dir,
        )

    async def test_success(self):
        payload = await self._worker(ECHO_SCRIPT).run(HOME, PROFILE)
        lhr = payload["lhr"]
        self.assertEqual(lhr["requestedUrl"], "https://example.com/")
        self.assertEqual(lhr["flags"]["port"], 9333)
        self.assertEqual(lhr["config"]["extends"], "lighthouse:default")
        self.assertEqual(lhr["config"]["settings"]["onlyCategories"], ["performance"])
        self.assertEqual(lhr["headers"], {})
        self.pool.release.assert_called_once_with(self.pool.instance)

    async def test_result_file_deleted(self):
        await self._worker(ECHO_SCRIPT).run(HOME, PROFILE)
        self.assertEqual(list(self.result_dir.iterdir()), [])

    async def test_auth_sent_as_headers(self):
        auth = AuthConfig(
            headers={"Authorization": "Bearer ${PERFGATE_TEST_TOKEN}"},
            cookies=[Cookie(name="session", value="abc")],
        )
        with patch.dict(os.environ, {"PERFGATE_TEST_TOKEN": "t0k3n"}):
            payload = await self._worker(ECHO_SCRIPT).run(HOME, PROFILE, auth)
        self.assertEqual(payload["lhr"]["headers"], {"Authorization": "Bearer t0k3n", "Cookie": "session=abc"})

    async def test_missing_auth_env_var_fails_before_acquire(self):
        auth = AuthConfig(headers={"Authorization": "Bearer ${PERFGATE_TEST_UNSET}"})
        with patch.dict(os.environ, {}, clear=False):
            os.environ.pop("PERFGATE_TEST_UNSET", None)
            with self.assertRaises(AuthResolutionError):
                await self._worker(ECHO_SCRIPT).run(HOME, PROFILE, auth)
        self.assertEqual(self.pool.acquired, 0)

    async def test_non_zero_exit(self):
        with self.assertRaises(WorkerExitError) as ctx:
            await self._worker(FAIL_SCRIPT).run(HOME, PROFILE)
        self.assertEqual(ctx.exception.returncode, 3)
        self.assertIn("engine exploded", ctx.exception.stderr)
        self.assertIn("exited with code 3", str(ctx.exception))
        self.pool.release.assert_called_once()

    async def test_unparseable_result(self):
        with self.assertRaises(WorkerExitError):
            await self._worker(GARBAGE_SCRIPT).run(HOME, PROFILE)
        self.assertEqual(list(self.result_dir.iterdir()), [])

    async def test_missing_score(self):
        with self.assertRaises(EmptyResultError):
            await self._worker(NO_SCORE_SCRIPT).run(HOME, PROFILE)

    async def test_timeout_kills_child(self):
        worker = self._worker(HANG_SCRIPT, timeout_ms=300)
        with self.assertRaises(WorkerTimeoutError):
            await worker.run(HOME, PROFILE)
        self.assertEqual(worker.active_count, 0)
        self.pool.release.assert_called_once()

    async def _assert_grandchild_killed(self, inherit_stderr: bool):
        pid_file = self.result_dir / "grandchild.pid"
        worker = AuditWorker(
            self.pool,
            timeout_ms=1500,
            command=[sys.executable, "-c", _spawning_script(pid_file, inherit_stderr)],
            result_dir=self.result_dir / "results",
        )
        started = time.monotonic()
        with self.assertRaises(WorkerTimeoutError):
            await worker.run(HOME, PROFILE)
        self.assertLess(time.monotonic() - started, 10)

        grandchild = int(pid_file.read_text())
        for _ in range(100):
            if not _is_running(grandchild):
                break
            await asyncio.sleep(0.02)
        self.assertFalse(_is_running(grandchild))
        self.pool.release.assert_called_once()

    async def test_timeout_kills_grandchildren(self):
        await self._assert_grandchild_killed(inherit_stderr=False)

    async def test_timeout_with_grandchild_holding_stderr(self):
        await self._assert_grandchild_killed(inherit_stderr=True)

    async def test_default_result_dir_is_private(self):
        first = AuditWorker(self.pool, command=[sys.executable, "-c", ECHO_SCRIPT])
        second = AuditWorker(self.pool, command=[sys.executable, "-c", ECHO_SCRIPT])
        await first.run(HOME, PROFILE)
        await second.run(HOME, PROFILE)

        self.assertNotEqual(first.result_dir, second.result_dir)
        self.assertTrue(first.result_dir.name.startswith("perfgate-worker-"))
        self.assertEqual(stat.S_IMODE(first.result_dir.stat().st_mode), 0o700)

        result_dir = first.result_dir
        await first.shutdown()
        await second.shutdown()
        self.assertFalse(result_dir.exists())

    async def test_spawn_failure(self):
        worker = AuditWorker(self.pool, command=["/nonexistent/perfgate-child"], result_dir=self.result_dir)
        with self.assertRaises(WorkerSpawnError):
            await worker.run(HOME, PROFILE)
        self.pool.release.assert_called_once()

    async def test_shutdown_kills_running_children(self):
        worker = self._worker(HANG_SCRIPT, timeout_ms=30000)
        running = asyncio.create_task(worker.run(HOME, PROFILE))
        for _ in range(200):
            if worker.active_count:
                break
            await asyncio.sleep(0.01)
        self.assertEqual(worker.active_count, 1)

        await worker.shutdown()
        with self.assertRaises(WorkerExitError):
            await running
        self.assertEqual(worker.active_count, 0)

    async def test_cancellation_releases_and_kills(self):
        worker = self._worker(HANG_SCRIPT, timeout_ms=30000)
        running = asyncio.create_task(worker.run(HOME, PROFILE))
        for _ in range(200):
            if worker.active_count:
                break
            await asyncio.sleep(0.01)

        running.cancel()
        with self.assertRaises(asyncio.CancelledError):
            await running
        self.assertEqual(worker.active_count, 0)
        self.pool.release.assert_called_once()


# ===================================================================
# 2. TestAuditChild
# ===================================================================

# Stand-in for the Lighthouse CLI: writes a report to --output-path
FAKE_LIGHTHOUSE = textwrap.dedent("""\
    import json, sys
    args = dict(arg.split("=", 1) for arg in sys.argv[2:] if "=" in arg)
    config = json.load(open(args["--config-path"]))
    report = {
        "requestedUrl": sys.argv[1],
        "port": args.get("--port"),
        "extraHeaders": args.get("--extra-headers"),
        "configExtends": config.get("extends"),
        "categories": {"performance": {"score": 0.5}},
        "audits": {},
    }
    if sys.argv[1].endswith("/broken"):
        report["runtimeError"] = {"code": "NO_FCP", "message": "The page did not paint"}
    if sys.argv[1].endswith("/crash"):
        sys.stderr.write("Chrome disconnected")
        sys.exit(1)
    json.dump(report, open(args["--output-path"], "w"))
""")


class TestAuditChild(unittest.TestCase):

    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.tmp = Path(self._tmp.name)
        self.lighthouse = self.tmp / "fake-lighthouse"
        self.lighthouse.write_text(f"#!{sys.executable}\n{FAKE_LIGHTHOUSE}")
        self.lighthouse.chmod(self.lighthouse.stat().st_mode | stat.S_IEXEC)
        self.result_file = self.tmp / "result.json"

    def tearDown(self):
        self._tmp.cleanup()

    def _env(self, url: str) -> dict:
        return {
            "PERFGATE_TARGET_URL": url,
            "PERFGATE_FLAGS": json.dumps({"port": 9444, "logLevel": "error"}),
            "PERFGATE_CONFIG": json.dumps({"extends": "lighthouse:default", "settings": {}}),
            "PERFGATE_EXTRA_HEADERS": json.dumps({"Authorization": "Bearer x"}),
            "PERFGATE_LIGHTHOUSE_BIN": str(self.lighthouse),
        }

    def test_read_request_requires_url(self):
        with self.assertRaises(audit_child.AuditChildError):
            audit_child.read_request({})

    def test_read_request_rejects_bad_json(self):
        with self.assertRaises(audit_child.AuditChildError):
            audit_child.read_request({"PERFGATE_TARGET_URL": "https://a.test/", "PERFGATE_CONFIG": "{"})

    def test_read_request_defaults(self):
        request = audit_child.read_request({"PERFGATE_TARGET_URL": "https://a.test/"})
        self.assertEqual(request.lighthouse_bin, "lighthouse")
        self.assertEqual(request.extra_headers, {})

    def test_build_command(self):
        request = audit_child.read_request(self._env("https://a.test/"))
        command = audit_child.build_command(request, Path("/tmp/c.json"), Path("/tmp/r.json"))
        self.assertEqual(command[:2], [str(self.lighthouse), "https://a.test/"])
        self.assertIn("--port=9444", command)
        self.assertIn("--output=json", command)
        self.assertIn('--extra-headers={"Authorization": "Bearer x"}', command)

    def test_main_success(self):
        with patch.dict(os.environ, self._env("https://a.test/")):
            code = audit_child.main([str(self.result_file)])
        self.assertEqual(code, 0)
        lhr = json.loads(self.result_file.read_text())["lhr"]
        self.assertEqual(lhr["requestedUrl"], "https://a.test/")
        self.assertEqual(lhr["port"], "9444")
        self.assertEqual(lhr["configExtends"], "lighthouse:default")
        self.assertEqual(json.loads(lhr["extraHeaders"]), {"Authorization": "Bearer x"})

    def test_main_runtime_error(self):
        with patch.dict(os.environ, self._env("https://a.test/broken")), \
                patch("sys.stderr") as fake_stderr:
            code = audit_child.main([str(self.result_file)])
        self.assertEqual(code, 1)
        self.assertFalse(self.result_file.exists())
        written = "".join(call.args[0] for call in fake_stderr.write.call_args_list)
        self.assertIn("NO_FCP", written)

    def test_main_engine_failure(self):
        with patch.dict(os.environ, self._env("https://a.test/crash")), patch("sys.stderr"):
            code = audit_child.main([str(self.result_file)])
        self.assertEqual(code, 1)
        self.assertFalse(self.result_file.exists())

    def test_main_without_arguments(self):
        with patch("sys.stderr"):
            self.assertEqual(audit_child.main([]), 1)


if __name__ == "__main__":
    unittest.main()
