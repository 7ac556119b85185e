"""Unit tests for perfgate.pool.

A fake launcher stands in for Chrome so the pool logic runs offline.
"""

from __future__ import annotations

import asyncio
import unittest
from unittest.mock import AsyncMock, patch

from perfgate.errors import BrowserLaunchError, PoolExhaustedError
from perfgate.pool import BrowserInstance, BrowserPool, find_chrome

# ---------------------------------------------------------------------------
# Shared Fixtures
# ---------------------------------------------------------------------------


class FakeLauncher:
    """Hands out process-less instances on consecutive ports."""

    def __init__(self, fail_on: int | None = None):
        self.launched: list[BrowserInstance] = []
        self.fail_on = fail_on
        self.calls = 0

    async def __call__(self) -> BrowserInstance:
        self.calls += 1
        if self.fail_on is not None and self.calls == self.fail_on:
            raise BrowserLaunchError("chrome crashed")
        instance = BrowserInstance(port=9220 + self.calls)
        instance.kill = AsyncMock()
        self.launched.append(instance)
        return instance


def _pool(size: int, launcher: FakeLauncher | None = None, max_attempts: int = 3) -> BrowserPool:
    return BrowserPool(size, launcher=launcher or FakeLauncher(), poll_interval=0.001, max_attempts=max_attempts)


# ===================================================================
# 1. TestAcquireRelease
# ===================================================================


class TestAcquireRelease(unittest.IsolatedAsyncioTestCase):

    async def test_acquire_initializes_lazily(self):
        launcher = FakeLauncher()
        pool = _pool(2, launcher)
        self.assertFalse(pool.initialized)

        await pool.acquire()
        self.assertTrue(pool.initialized)
        self.assertEqual(launcher.calls, 2)

        await pool.acquire()
        self.assertEqual(launcher.calls, 2)

    async def test_instances_are_exclusive(self):
        pool = _pool(2)
        first = await pool.acquire()
        second = await pool.acquire()
        self.assertIsNot(first, second)
        self.assertEqual(pool.size(), 0)
        self.assertEqual(pool.in_use(), 2)

    async def test_release_makes_instance_available(self):
        pool = _pool(1)
        instance = await pool.acquire()
        pool.release(instance)
        self.assertEqual(pool.size(), 1)
        again = await pool.acquire()
        self.assertIs(again, instance)

    async def test_waiting_acquire_gets_released_instance(self):
        pool = BrowserPool(1, launcher=FakeLauncher(), poll_interval=0.005, max_attempts=200)
        instance = await pool.acquire()

        async def release_later():
            await asyncio.sleep(0.02)
            pool.release(instance)

        releaser = asyncio.create_task(release_later())
        acquired = await pool.acquire()
        await releaser
        self.assertIs(acquired, instance)

    async def test_release_untracked_instance_is_noop(self):
        pool = _pool(1)
        await pool.acquire()
        pool.release(BrowserInstance(port=1))
        self.assertEqual(pool.in_use(), 1)

    async def test_release_before_initialize(self):
        pool = _pool(1)
        pool.release(BrowserInstance(port=1))
        self.assertEqual(pool.size(), 0)

    def test_invalid_size(self):
        with self.assertRaises(ValueError):
            BrowserPool(0, launcher=FakeLauncher())


# ===================================================================
# 2. TestExhaustion
# ===================================================================


class TestExhaustion(unittest.IsolatedAsyncioTestCase):

    async def test_acquire_beyond_capacity_fails(self):
        pool = _pool(2)
        await pool.acquire()
        await pool.acquire()
        with self.assertRaises(PoolExhaustedError) as ctx:
            await pool.acquire()
        self.assertIn("No browser instances available", str(ctx.exception))

    def test_acquire_budget_from_timeout(self):
        pool = BrowserPool(1, launcher=FakeLauncher(), poll_interval=0.5, acquire_timeout=30)
        self.assertEqual(pool.max_attempts, 60)
        self.assertEqual(BrowserPool(1, launcher=FakeLauncher(), acquire_timeout=0).max_attempts, 1)

    async def test_concurrent_over_acquire(self):
        pool = _pool(3)
        outcomes = await asyncio.gather(*(pool.acquire() for _ in range(4)), return_exceptions=True)

        errors = [o for o in outcomes if isinstance(o, Exception)]
        instances = [o for o in outcomes if isinstance(o, BrowserInstance)]
        self.assertEqual(len(instances), 3)
        self.assertEqual(len({id(i) for i in instances}), 3)
        self.assertEqual(len(errors), 1)
        self.assertIsInstance(errors[0], PoolExhaustedError)


# ===================================================================
# 3. TestInitializeCleanup
# ===================================================================


class TestInitializeCleanup(unittest.IsolatedAsyncioTestCase):

    async def test_concurrent_initialize_launches_once(self):
        launcher = FakeLauncher()
        pool = _pool(2, launcher)
        await asyncio.gather(pool.initialize(), pool.initialize(), pool.acquire())
        self.assertEqual(launcher.calls, 2)

    async def test_launch_failure_kills_launched_instances(self):
        launcher = FakeLauncher(fail_on=2)
        pool = _pool(3, launcher)
        with self.assertRaises(BrowserLaunchError):
            await pool.initialize()

        self.assertFalse(pool.initialized)
        self.assertEqual(len(launcher.launched), 2)
        for instance in launcher.launched:
            instance.kill.assert_awaited_once()

    async def test_cleanup_kills_all_and_resets(self):
        launcher = FakeLauncher()
        pool = _pool(2, launcher)
        await pool.initialize()
        await pool.cleanup()

        for instance in launcher.launched:
            instance.kill.assert_awaited_once()
        self.assertFalse(pool.initialized)
        self.assertEqual(pool.size(), 0)

        await pool.acquire()
        self.assertEqual(launcher.calls, 4)

    async def test_cleanup_survives_one_kill_failure(self):
        launcher = FakeLauncher()
        pool = _pool(2, launcher)
        await pool.initialize()
        launcher.launched[0].kill.side_effect = OSError("already gone")

        with self.assertLogs("perfgate.pool", level="WARNING") as logs:
            await pool.cleanup()

        launcher.launched[1].kill.assert_awaited_once()
        self.assertIn("already gone", logs.output[0])
        self.assertFalse(pool.initialized)


# ===================================================================
# 4. TestFindChrome
# ===================================================================


class TestFindChrome(unittest.TestCase):

    def test_env_var_wins(self):
        with patch.dict("os.environ", {"CHROME_PATH": "/opt/chrome"}):
            self.assertEqual(find_chrome(), "/opt/chrome")

    def test_path_lookup(self):
        with patch.dict("os.environ", {}, clear=True), \
                patch("perfgate.pool.shutil.which", side_effect=lambda name: "/usr/bin/chromium" if name == "chromium" else None):
            self.assertEqual(find_chrome(), "/usr/bin/chromium")

    def test_not_found(self):
        with patch.dict("os.environ", {}, clear=True), patch("perfgate.pool.shutil.which", return_value=None):
            with self.assertRaises(BrowserLaunchError):
                find_chrome()


if __name__ == "__main__":
    unittest.main()
