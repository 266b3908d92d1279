"""
Engine process supervision.

EngineSupervisor owns the single sing-box process. start() spawns it, waits a
grace window, then probes connectivity through it; a start that fails either
check kills the process before the error reaches the caller. All transitions
(start, stop, restart) run under one asyncio lock, so overlapping calls are
serialized and a second start() sees the first one's process.

The OS process is reached only through a ProcessRunner, so the state machine
can be driven by a fake runner in tests.
"""

import asyncio
import logging
import os
import signal
import subprocess
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional

import psutil

from .errors import (
    AlreadyRunningError,
    ConnectivityError,
    ProcessExitedEarlyError,
    SpawnError,
)
from .models import HealthLog

logger = logging.getLogger(__name__)


class EngineState(Enum):
    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    FAILED = "failed"


@dataclass
class EngineHandle:
    """A spawned engine process."""

    pid: int
    process: Any = None
    pgid: Optional[int] = None
    started_at: datetime = field(default_factory=datetime.now)
    log_file: Any = None

    @property
    def uptime_seconds(self) -> float:
        return (datetime.now() - self.started_at).total_seconds()


class ProcessRunner(ABC):
    """Spawns and kills engine processes."""

    @abstractmethod
    def spawn(self, args: list[str], cwd: Path, env: dict[str, str]) -> EngineHandle:
        """Start a process. Raises SpawnError if it cannot be executed."""

    @abstractmethod
    def kill(self, handle: EngineHandle):
        """Forcefully terminate the process and reap it. Safe on dead processes."""

    @abstractmethod
    def is_alive(self, handle: EngineHandle) -> bool:
        """Whether the process is still running."""

    def returncode(self, handle: EngineHandle) -> int | None:
        return None


class SubprocessRunner(ProcessRunner):
    """Runs the engine as a child process in its own session."""

    def __init__(self, log_path: Path = None, kill_timeout: float = 5.0):
        self.log_path = Path(log_path) if log_path else None
        self.kill_timeout = kill_timeout

    def spawn(self, args: list[str], cwd: Path, env: dict[str, str]) -> EngineHandle:
        log_file = None
        try:
            if self.log_path:
                self.log_path.parent.mkdir(parents=True, exist_ok=True)
                log_file = open(self.log_path, "a")
            process = subprocess.Popen(
                args,
                stdout=log_file if log_file else subprocess.DEVNULL,
                stderr=subprocess.STDOUT if log_file else subprocess.DEVNULL,
                stdin=subprocess.DEVNULL,
                cwd=str(cwd),
                env=env,
                start_new_session=True,  # Create new process group
            )
        except OSError as e:
            if log_file:
                log_file.close()
            raise SpawnError(f"Failed to execute {args[0]}: {e}")

        # start_new_session makes the child a group leader: pgid == pid
        return EngineHandle(pid=process.pid, process=process, pgid=process.pid, log_file=log_file)

    def kill(self, handle: EngineHandle):
        process = handle.process
        pgid = handle.pgid if handle.pgid is not None else process.pid
        try:
            os.killpg(pgid, signal.SIGKILL)
        except ProcessLookupError:
            pass
        except PermissionError as e:
            logger.warning(f"Could not signal process group {pgid}: {e}")

        try:
            process.wait(timeout=self.kill_timeout)
        except subprocess.TimeoutExpired:
            logger.error(f"Engine process {process.pid} did not exit after SIGKILL")
        finally:
            if handle.log_file:
                try:
                    handle.log_file.close()
                except OSError:
                    pass

    def is_alive(self, handle: EngineHandle) -> bool:
        return handle.process.poll() is None

    def returncode(self, handle: EngineHandle) -> int | None:
        return handle.process.poll()


def process_metrics(pid: int) -> dict | None:
    """CPU and memory usage of a process and its children."""
    try:
        proc = psutil.Process(pid)
        cpu_percent = proc.cpu_percent(interval=None)
        memory_mb = proc.memory_info().rss / 1024 / 1024

        # Include children
        child_count = 0
        try:
            children = proc.children(recursive=True)
            child_count = len(children)
            for child in children:
                cpu_percent += child.cpu_percent(interval=None)
                memory_mb += child.memory_info().rss / 1024 / 1024
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            pass

        return {
            "cpu_percent": round(cpu_percent, 1),
            "memory_mb": round(memory_mb, 1),
            "child_processes": child_count,
        }
    except (psutil.NoSuchProcess, psutil.AccessDenied):
        return None


Probe = Callable[[], Awaitable[bool]]


class EngineSupervisor:
    """State machine around the one engine process."""

    def __init__(
        self,
        runner: ProcessRunner,
        probe: Probe,
        home: Path,
        binary: str = "sing-box",
        config_name: str = "config.json",
        grace_seconds: float = 3.0,
        probe_timeout: float = 10.0,
        events: HealthLog = None,
    ):
        self._runner = runner
        self._probe = probe
        self.home = Path(home)
        self.binary = binary
        self.config_name = config_name
        self.grace_seconds = grace_seconds
        self.probe_timeout = probe_timeout
        self._events = events

        self._lock = asyncio.Lock()
        self._state = EngineState.STOPPED
        self._handle: Optional[EngineHandle] = None
        self._last_error: Optional[str] = None

    @property
    def state(self) -> EngineState:
        return self._state

    @property
    def busy(self) -> bool:
        """Whether a transition is in flight."""
        return self._lock.locked()

    @property
    def pid_file(self) -> Path:
        return self.home / "pid"

    def _command(self) -> list[str]:
        binary = Path(self.binary)
        if not binary.is_absolute():
            binary = self.home / binary
        return [str(binary), "run", "-c", self.config_name]

    def _environment(self) -> dict[str, str]:
        env = os.environ.copy()
        env["PATH"] = f"{env.get('PATH', '')}{os.pathsep}{self.home}"
        return env

    # Transitions
    async def start(self) -> dict:
        """Spawn the engine and verify it. Returns the status snapshot.

        Raises AlreadyRunningError, SpawnError, ProcessExitedEarlyError or
        ConnectivityError. On any failure no engine process is left behind.
        """
        async with self._lock:
            await self._start_locked()
        return self.status()

    async def stop(self) -> dict:
        """Kill the engine. Stopping a stopped engine is a no-op."""
        async with self._lock:
            await self._stop_locked()
        return self.status()

    async def restart(self) -> dict:
        """stop() then start() as one serialized operation."""
        async with self._lock:
            await self._stop_locked()
            await self._start_locked()
        return self.status()

    async def _start_locked(self):
        self._reap_if_dead()
        if self._handle is not None:
            raise AlreadyRunningError(f"engine is already running (pid {self._handle.pid})")

        self._set_state(EngineState.STARTING)
        self._last_error = None
        args = self._command()
        logger.info(f"Starting engine: {' '.join(args)} (cwd {self.home})")
        try:
            handle = self._runner.spawn(args, cwd=self.home, env=self._environment())
        except SpawnError as e:
            self._fail(str(e), None)
            raise
        self._handle = handle

        try:
            await asyncio.sleep(self.grace_seconds)
            if not self._runner.is_alive(handle):
                code = self._runner.returncode(handle)
                await self._teardown(handle)
                message = f"engine exited during startup (code {code})"
                self._fail(message, handle.pid)
                raise ProcessExitedEarlyError(message, code)

            if not await self._run_probe():
                await self._teardown(handle)
                message = "engine started but failed to connect to the internet"
                self._fail(message, handle.pid)
                raise ConnectivityError(message)
        except (ProcessExitedEarlyError, ConnectivityError):
            raise
        except BaseException as e:
            # Cancellation or an unexpected error: never leave the process behind
            await asyncio.shield(self._teardown(handle))
            self._fail(f"start aborted: {e!r}", handle.pid)
            raise

        self._set_state(EngineState.RUNNING)
        self._write_pid_file(handle.pid)
        self._record("start", handle.pid)
        logger.info(f"Engine running with PID {handle.pid}")

    async def _run_probe(self) -> bool:
        try:
            return bool(await asyncio.wait_for(self._probe(), timeout=self.probe_timeout))
        except asyncio.TimeoutError:
            logger.warning(f"Connectivity probe timed out after {self.probe_timeout}s")
            return False
        except Exception as e:
            logger.warning(f"Connectivity probe error: {e}")
            return False

    async def _stop_locked(self):
        self._reap_if_dead()
        handle = self._handle
        if handle is None:
            if self._state is not EngineState.STOPPED:
                self._set_state(EngineState.STOPPED)
            logger.info("Engine is not running")
            return

        self._set_state(EngineState.STOPPING)
        await self._teardown(handle)
        self._set_state(EngineState.STOPPED)
        self._record("stop", handle.pid)
        logger.info(f"Stopped engine (PID {handle.pid})")

    async def _teardown(self, handle: EngineHandle):
        """Kill and reap the process, then forget it."""
        await asyncio.to_thread(self._runner.kill, handle)
        if self._handle is handle:
            self._handle = None
        self._remove_pid_file()

    def _fail(self, message: str, pid: int | None):
        logger.error(message)
        self._last_error = message
        self._set_state(EngineState.FAILED)
        self._record("failed", pid, message)

    def _set_state(self, state: EngineState):
        if state is not self._state:
            logger.debug(f"Engine state {self._state.value} -> {state.value}")
        self._state = state

    def _reap_if_dead(self):
        """Detect an engine that exited on its own while running."""
        handle = self._handle
        if handle is None or self._state is not EngineState.RUNNING:
            return
        if self._runner.is_alive(handle):
            return

        code = self._runner.returncode(handle)
        self._runner.kill(handle)
        self._handle = None
        self._remove_pid_file()
        self._last_error = f"engine exited unexpectedly (code {code})"
        self._set_state(EngineState.FAILED)
        self._record("crash", handle.pid, self._last_error)
        logger.warning(f"Engine (PID {handle.pid}) exited unexpectedly with code {code}")

    # Queries
    def status(self) -> dict:
        """Snapshot of the engine state. Never raises."""
        if not self.busy:
            self._reap_if_dead()
        handle = self._handle
        running = self._state is EngineState.RUNNING and handle is not None
        return {
            "state": self._state.value,
            "running": running,
            "pid": handle.pid if handle else None,
            "uptime": int(handle.uptime_seconds) if running else None,
            "started_at": handle.started_at.isoformat() if running else None,
            "last_error": self._last_error,
        }

    # Bookkeeping
    def _write_pid_file(self, pid: int):
        try:
            self.pid_file.write_text(str(pid))
        except OSError as e:
            logger.warning(f"Could not write {self.pid_file}: {e}")

    def _remove_pid_file(self):
        try:
            self.pid_file.unlink()
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning(f"Could not remove {self.pid_file}: {e}")

    def _record(self, action: str, pid: int | None, detail: str = None):
        if self._events is None:
            return
        try:
            self._events.record(action=action, pid=pid, detail=detail)
        except Exception as e:
            logger.error(f"Failed to record engine event {action}: {e}")
