"""
Chroma sidecar supervision.

Guarantees a reachable vector engine before anything else touches the store:
probe the well-known port, launch the engine if nothing answers, then poll
until it is live or the ceiling is hit. Exclusion between processes racing
to launch relies on the port only: the loser fails to bind and the probe
succeeds against the winner.
"""

from __future__ import annotations

import asyncio
import math
import shutil
import subprocess
import sys
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from pathlib import Path

import requests

from config import CONFIG


@dataclass(frozen=True, slots=True)
class Readiness:
    ready: bool
    reason: str | None = None

    @classmethod
    def failed(cls, reason: str) -> Readiness:
        return cls(False, reason)


READY = Readiness(True)


class ProcessLauncher(ABC):
    """One way of starting the engine on this host."""

    name: str = "launcher"

    @abstractmethod
    def available(self) -> bool:
        """Whether this host can use this strategy."""

    @abstractmethod
    def launch(self) -> None:
        """Start the engine without waiting for it. Raises on failure."""


class NativeSpawn(ProcessLauncher):
    """Runs the ``chroma`` CLI as a detached child with stdio discarded."""

    name = "native"

    def __init__(
        self,
        data_dir: Path = CONFIG.data_dir,
        host: str = CONFIG.chroma_host,
        port: int = CONFIG.chroma_port,
        command: str = CONFIG.chroma_command,
    ):
        self.data_dir = data_dir
        self.host = host
        self.port = port
        self.command = command

    def executable(self) -> str | None:
        return shutil.which(self.command)

    def available(self) -> bool:
        return self.executable() is not None

    def launch(self) -> None:
        executable = self.executable()
        if executable is None:
            raise FileNotFoundError(f"{self.command} not found on PATH")
        self.data_dir.mkdir(parents=True, exist_ok=True)
        subprocess.Popen(
            [
                executable,
                "run",
                "--path",
                str(self.data_dir),
                "--host",
                self.host,
                "--port",
                str(self.port),
            ],
            stdin=subprocess.DEVNULL,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
            start_new_session=True,
        )


class ContainerSpawn(ProcessLauncher):
    """Runs the engine in Docker with the data directory bind-mounted."""

    name = "container"
    CONTAINER_PORT = 8000

    def __init__(
        self,
        data_dir: Path = CONFIG.data_dir,
        port: int = CONFIG.chroma_port,
        image: str = CONFIG.container_image,
        container_name: str = CONFIG.container_name,
    ):
        self.data_dir = data_dir
        self.port = port
        self.image = image
        self.container_name = container_name

    def available(self) -> bool:
        return shutil.which("docker") is not None

    def _exists(self) -> bool:
        result = subprocess.run(
            ["docker", "container", "inspect", self.container_name],
            capture_output=True,
            text=True,
            timeout=10,
        )
        return result.returncode == 0

    def launch(self) -> None:
        if self._exists():
            args = ["docker", "start", self.container_name]
        else:
            self.data_dir.mkdir(parents=True, exist_ok=True)
            args = [
                "docker",
                "run",
                "-d",
                "--name",
                self.container_name,
                "--restart",
                "unless-stopped",
                "-p",
                f"{self.port}:{self.CONTAINER_PORT}",
                "-v",
                f"{self.data_dir}:/data",
                self.image,
            ]
        subprocess.run(args, check=True, capture_output=True, text=True, timeout=120)


def default_launchers() -> list[ProcessLauncher]:
    """Preference order: native CLI first, container as fallback."""
    return [NativeSpawn(), ContainerSpawn()]


def select_launcher(launchers: Sequence[ProcessLauncher]) -> ProcessLauncher | None:
    """First launcher the host supports, if any."""
    for launcher in launchers:
        if launcher.available():
            return launcher
    return None


def http_probe(url: str, timeout: float = CONFIG.probe_timeout) -> bool:
    """Liveness check; any error counts as not live."""
    try:
        return requests.get(url, timeout=timeout).ok
    except requests.RequestException:
        return False


class SidecarSupervisor:
    """Ensures the engine is reachable, launching it at most once per process."""

    def __init__(
        self,
        base_url: str = CONFIG.base_url,
        launchers: Sequence[ProcessLauncher] | None = None,
        probe: Callable[[str], bool] | None = None,
        poll_interval: float = CONFIG.poll_interval,
        ready_timeout: float = CONFIG.ready_timeout,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.heartbeat_url = f"{base_url.rstrip('/')}/api/v2/heartbeat"
        self.launchers = list(launchers) if launchers is not None else default_launchers()
        self._probe = probe or http_probe
        self.poll_interval = poll_interval
        self.ready_timeout = ready_timeout
        self._sleep = sleep
        self._result: Readiness | None = None
        self._lock = asyncio.Lock()

    async def is_live(self) -> bool:
        try:
            return await asyncio.to_thread(self._probe, self.heartbeat_url)
        except Exception:
            return False

    async def ensure_running(self) -> Readiness:
        """Memoized: a failure is terminal until the process restarts."""
        async with self._lock:
            if self._result is None:
                self._result = await self._start()
            return self._result

    async def _start(self) -> Readiness:
        if await self.is_live():
            return READY

        launcher = select_launcher(self.launchers)
        if launcher is None:
            return Readiness.failed(
                "no launch strategy available (install chromadb or docker)"
            )

        print(f"[recall] Starting Chroma sidecar ({launcher.name})", file=sys.stderr)
        try:
            await asyncio.to_thread(launcher.launch)
        except (OSError, subprocess.SubprocessError) as e:
            return Readiness.failed(f"{launcher.name} launch failed: {e}")

        attempts = max(1, math.ceil(self.ready_timeout / self.poll_interval))
        for _ in range(attempts):
            await self._sleep(self.poll_interval)
            if await self.is_live():
                print("[recall] Chroma sidecar ready", file=sys.stderr)
                return READY

        return Readiness.failed("did not become ready in time")
