"""Fixed-size pool of headless Chrome instances shared by concurrent audits."""

from __future__ import annotations

import asyncio
import functools
import logging
import os
import shutil
import socket
import tempfile
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

import httpx

from perfgate.errors import BrowserLaunchError, PoolExhaustedError

logger = logging.getLogger(__name__)

CHROME_CANDIDATES = ("google-chrome", "google-chrome-stable", "chromium", "chromium-browser", "chrome")

DEFAULT_CHROME_FLAGS = [
    "--no-sandbox",
    "--disable-dev-shm-usage",
    "--disable-background-timer-throttling",
    "--disable-backgrounding-occluded-windows",
    "--disable-renderer-backgrounding",
    "--disable-hang-monitor",
    "--disable-default-apps",
    "--disable-sync",
    "--metrics-recording-only",
    "--no-first-run",
]

STARTUP_TIMEOUT = 30.0
STARTUP_POLL_INTERVAL = 0.25
KILL_GRACE_PERIOD = 5.0

ACQUIRE_POLL_INTERVAL = 0.1
ACQUIRE_MAX_ATTEMPTS = 100


@dataclass(eq=False)
class BrowserInstance:
    """A launched browser reachable over its remote debugging port."""

    port: int
    process: asyncio.subprocess.Process | None = None
    user_data_dir: str | None = None

    @property
    def pid(self) -> int | None:
        return self.process.pid if self.process else None

    async def kill(self) -> None:
        try:
            if self.process and self.process.returncode is None:
                self.process.terminate()
                try:
                    await asyncio.wait_for(self.process.wait(), timeout=KILL_GRACE_PERIOD)
                except TimeoutError:
                    logger.warning("Chrome (pid %s) ignored SIGTERM, killing", self.pid)
                    self.process.kill()
                    await self.process.wait()
        finally:
            if self.user_data_dir:
                shutil.rmtree(self.user_data_dir, ignore_errors=True)


Launcher = Callable[[], Awaitable[BrowserInstance]]


def find_chrome() -> str:
    """Locate a Chrome/Chromium binary (CHROME_PATH wins)."""
    env_path = os.environ.get("CHROME_PATH")
    if env_path:
        return env_path
    for candidate in CHROME_CANDIDATES:
        path = shutil.which(candidate)
        if path:
            return path
    raise BrowserLaunchError("Chrome not found; install Chrome/Chromium or set CHROME_PATH")


def _free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


async def _wait_for_debugger(instance: BrowserInstance, timeout: float) -> None:
    url = f"http://127.0.0.1:{instance.port}/json/version"
    deadline = time.monotonic() + timeout
    async with httpx.AsyncClient(timeout=2.0) as client:
        while time.monotonic() < deadline:
            if instance.process and instance.process.returncode is not None:
                raise BrowserLaunchError(f"Chrome exited with code {instance.process.returncode} during startup")
            try:
                response = await client.get(url)
                if response.status_code == 200:
                    return
            except httpx.HTTPError:
                pass
            await asyncio.sleep(STARTUP_POLL_INTERVAL)
    raise BrowserLaunchError(f"Chrome debugging endpoint on port {instance.port} not ready after {timeout}s")


async def launch_chrome(
    headless: bool = True,
    chrome_flags: list[str] | None = None,
    startup_timeout: float = STARTUP_TIMEOUT,
) -> BrowserInstance:
    """Start Chrome with a private profile dir and wait for its debugging port."""
    binary = find_chrome()
    port = _free_port()
    user_data_dir = tempfile.mkdtemp(prefix="perfgate-chrome-")
    flags = list(chrome_flags if chrome_flags is not None else DEFAULT_CHROME_FLAGS)
    if headless:
        flags.append("--headless=new")

    try:
        process = await asyncio.create_subprocess_exec(
            binary,
            f"--remote-debugging-port={port}",
            f"--user-data-dir={user_data_dir}",
            *flags,
            "about:blank",
            stdout=asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.DEVNULL,
        )
    except OSError as exc:
        shutil.rmtree(user_data_dir, ignore_errors=True)
        raise BrowserLaunchError(f"Failed to launch Chrome ({binary}): {exc}") from exc

    instance = BrowserInstance(port=port, process=process, user_data_dir=user_data_dir)
    try:
        await _wait_for_debugger(instance, startup_timeout)
    except BaseException:
        await instance.kill()
        raise
    logger.debug("Launched Chrome pid %s on port %d", instance.pid, port)
    return instance


@dataclass(eq=False)
class _PooledBrowser:
    instance: BrowserInstance
    in_use: bool = False


class BrowserPool:
    """Hands out browser instances under mutual exclusion.

    `acquire()` polls for a free instance and gives up with PoolExhaustedError
    after `max_attempts` polls instead of waiting forever. Passing
    `acquire_timeout` (seconds) sizes that budget from a wall-clock limit.
    """

    def __init__(
        self,
        size: int,
        launcher: Launcher | None = None,
        headless: bool = True,
        poll_interval: float = ACQUIRE_POLL_INTERVAL,
        max_attempts: int = ACQUIRE_MAX_ATTEMPTS,
        acquire_timeout: float | None = None,
    ):
        if size < 1:
            raise ValueError("pool size must be at least 1")
        self.capacity = size
        self.poll_interval = poll_interval
        if acquire_timeout is not None:
            max_attempts = max(1, round(acquire_timeout / poll_interval))
        self.max_attempts = max_attempts
        self._launcher = launcher or functools.partial(launch_chrome, headless=headless)
        self._pool: list[_PooledBrowser] = []
        self._initialized = False
        self._lock = asyncio.Lock()
        self._init_lock = asyncio.Lock()

    @property
    def initialized(self) -> bool:
        return self._initialized

    async def initialize(self) -> None:
        async with self._init_lock:
            if self._initialized:
                return
            logger.debug("Launching %d browser instance(s)", self.capacity)
            launched = await asyncio.gather(
                *(self._launcher() for _ in range(self.capacity)),
                return_exceptions=True,
            )
            instances = [item for item in launched if isinstance(item, BrowserInstance)]
            failures = [item for item in launched if isinstance(item, BaseException)]
            if failures:
                await self._kill_all(instances)
                raise BrowserLaunchError(f"Failed to launch browser pool: {failures[0]}") from failures[0]

            self._pool = [_PooledBrowser(instance) for instance in instances]
            self._initialized = True
            logger.debug("Browser pool ready with %d instance(s)", len(self._pool))

    async def acquire(self) -> BrowserInstance:
        if not self._initialized:
            await self.initialize()

        for _ in range(self.max_attempts):
            async with self._lock:
                for pooled in self._pool:
                    if not pooled.in_use:
                        pooled.in_use = True
                        logger.debug("Acquired browser on port %d", pooled.instance.port)
                        return pooled.instance
            await asyncio.sleep(self.poll_interval)

        raise PoolExhaustedError(
            f"No browser instances available in pool after {self.max_attempts} attempts"
        )

    def release(self, instance: BrowserInstance) -> None:
        for pooled in self._pool:
            if pooled.instance is instance:
                pooled.in_use = False
                logger.debug("Released browser on port %d", instance.port)
                return
        logger.debug("Ignoring release of untracked browser instance")

    def size(self) -> int:
        """Number of instances currently free."""
        return sum(1 for pooled in self._pool if not pooled.in_use)

    def in_use(self) -> int:
        return sum(1 for pooled in self._pool if pooled.in_use)

    async def cleanup(self) -> None:
        async with self._init_lock:
            await self._kill_all([pooled.instance for pooled in self._pool])
            self._pool = []
            self._initialized = False
            logger.debug("Browser pool cleaned up")

    @staticmethod
    async def _kill_all(instances: list[BrowserInstance]) -> None:
        results = await asyncio.gather(*(instance.kill() for instance in instances), return_exceptions=True)
        for instance, outcome in zip(instances, results):
            if isinstance(outcome, BaseException):
                logger.warning("Failed to kill browser on port %d: %s", instance.port, outcome)
