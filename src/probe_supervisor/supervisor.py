"""Single-flight execution supervisor.

ExecutionSupervisor owns at most one active ProcessHandle. It launches the
child on a background asyncio task, relays combined output line by line,
enforces a timeout, and supports a cooperative quit as well as a forced
kill. Completion is reported through ProcessHandle (callback or await).

Slot reads and writes are serialized by a threading.Lock so that is_running(),
kill() and send_quit_signal() can be called from any thread while execute()
and timeout handling run on the event loop.
"""

from __future__ import annotations

import asyncio
import logging
import math
import threading
from collections.abc import Callable, Sequence
from typing import Any

import anyio

from .config import DEFAULT_KILL_TIMEOUT, MINIMUM_TIMEOUT, Config, QuitMode, get_config
from .errors import AlreadyRunningError, InvalidArgumentError, NoActiveProcessError
from .observer import ObserverHandle, ReadinessObserver, StateNotifier
from .runtime.command import Command
from .runtime.handle import (
    CompletionCallback,
    OutputCallback,
    ProcessHandle,
    ProcessState,
)
from .runtime.process_runner import ProcessRunner

__all__ = ["ExecutionSupervisor"]

logger = logging.getLogger(__name__)


class ExecutionSupervisor(StateNotifier):
    """Runs one external command at a time.

    Example:
        supervisor = ExecutionSupervisor(timeout=30)
        handle = supervisor.execute(
            ["ffprobe", "-v", "quiet", "file.mp4"],
            on_output_line=print,
        )
        result = await handle.wait()

    Attributes:
        min_timeout: Floor below which set_timeout() values are ignored
        quit_mode: How send_quit_signal() asks the child to stop
        runner: Spawn/signal primitives

    Pass loop to allow execute() from threads that run no event loop.
    """

    def __init__(
        self,
        timeout: float | None = None,
        *,
        min_timeout: float = MINIMUM_TIMEOUT,
        quit_mode: QuitMode = QuitMode.SIGNAL,
        kill_timeout: float = DEFAULT_KILL_TIMEOUT,
        runner: ProcessRunner | None = None,
        loop: asyncio.AbstractEventLoop | None = None,
    ) -> None:
        super().__init__()
        self._loop = loop
        self.min_timeout = min_timeout
        self.quit_mode = quit_mode
        self.runner = runner if runner is not None else ProcessRunner(kill_timeout=kill_timeout)

        self._timeout = math.inf
        self._timeout_configured = False
        if timeout is not None:
            self.set_timeout(timeout)

        self._slot_lock = threading.Lock()
        self._handle: ProcessHandle | None = None

    @classmethod
    def from_config(cls, config: Config | None = None, **kwargs: Any) -> "ExecutionSupervisor":
        """Build a supervisor from PROBE_* settings."""
        config = config or get_config()
        return cls(
            timeout=config.timeout if config.has_timeout else None,
            quit_mode=config.quit_mode,
            kill_timeout=config.kill_timeout,
            **kwargs,
        )

    def __repr__(self) -> str:
        timeout_str = "unbounded" if math.isinf(self._timeout) else f"{self._timeout}s"
        return (
            f"ExecutionSupervisor(timeout={timeout_str}, "
            f"quit_mode={self.quit_mode.value}, "
            f"current={self._handle!r})"
        )

    # =========================================================================
    # Timeout
    # =========================================================================

    @property
    def timeout(self) -> float:
        """Configured timeout in seconds (math.inf = unbounded)."""
        return self._timeout

    def set_timeout(self, duration: float) -> None:
        """Set the timeout used by subsequent execute() calls.

        Values below min_timeout are ignored and the previous timeout is kept.
        """
        if duration < self.min_timeout:
            logger.debug(
                f"Ignoring timeout {duration}s below minimum {self.min_timeout}s, "
                f"keeping {self._timeout}s"
            )
            return
        self._timeout = float(duration)
        self._timeout_configured = True

    def _effective_timeout(self, timeout: float | None) -> float:
        if timeout is None:
            return self._timeout
        if timeout >= self.min_timeout:
            return float(timeout)
        # Below the floor: keep an explicitly configured timeout, otherwise
        # the floor itself applies.
        if self._timeout_configured:
            return self._timeout
        return self.min_timeout

    # =========================================================================
    # Slot
    # =========================================================================

    @property
    def current(self) -> ProcessHandle | None:
        """The handle in the slot, if any (may already be terminal)."""
        with self._slot_lock:
            return self._handle

    def is_running(self) -> bool:
        """Whether the slot holds a handle that has not terminated."""
        with self._slot_lock:
            handle = self._handle
        return handle is not None and handle.is_running()

    def _release(self, handle: ProcessHandle) -> bool:
        """Clear the slot if it still holds handle."""
        with self._slot_lock:
            if self._handle is not handle:
                return False
            self._handle = None
        return True

    # =========================================================================
    # Operations
    # =========================================================================

    def execute(
        self,
        command: Command | Sequence[str],
        timeout: float | None = None,
        on_output_line: OutputCallback | None = None,
        on_complete: CompletionCallback | None = None,
        on_start: Callable[[], None] | None = None,
    ) -> ProcessHandle:
        """Start command in the background and return its live handle.

        Must be called from a running event loop, or from any thread when
        the supervisor was bound to a loop at construction.

        Args:
            command: Command or argv sequence (executable first)
            timeout: Per-call timeout in seconds (None = configured timeout)
            on_output_line: Called for every line of combined stdout/stderr
            on_complete: Called exactly once with the ProcessResult
            on_start: Called on the loop before the child is spawned

        Returns:
            The new ProcessHandle

        Raises:
            InvalidArgumentError: If command is empty
            AlreadyRunningError: If a previous command is still active
        """
        if isinstance(command, Command):
            if not command.argv:
                raise InvalidArgumentError("shell command cannot be empty")
            cmd = command
        else:
            cmd = Command.of(command)

        loop, on_loop = self._resolve_loop()
        effective_timeout = self._effective_timeout(timeout)

        with self._slot_lock:
            current = self._handle
            if current is not None and current.is_running():
                raise AlreadyRunningError(current.pid)
            handle = ProcessHandle(cmd, loop, effective_timeout)
            self._handle = handle

        if on_complete is not None:
            handle.add_done_callback(on_complete)

        logger.info(f"Executing: {cmd}")
        if on_loop:
            self._start_task(handle, on_output_line, on_start)
        else:
            loop.call_soon_threadsafe(self._start_task, handle, on_output_line, on_start)
        self._notify_state_listeners()
        return handle

    def kill(self) -> bool:
        """Force-terminate the active process and clear the slot.

        Returns:
            Whether a running process was present and killed
        """
        with self._slot_lock:
            handle = self._handle
            self._handle = None
            if handle is None:
                return False
            killed = handle._finish(ProcessState.KILLED)

        if not killed:
            # Already terminal, but the slot was still cleared here
            self._notify_state_listeners()
            return False

        logger.info(f"Killing process pid={handle.pid}")
        if handle.process is not None:
            self._call_on_loop(handle, self.runner.force_kill, handle.process)
        self._notify_state_listeners()
        return True

    def send_quit_signal(self) -> None:
        """Ask the active process to quit on its own.

        The slot is cleared once the process's exit is observed.

        Raises:
            NoActiveProcessError: If nothing is running
        """
        with self._slot_lock:
            handle = self._handle
        if handle is None or not handle.is_running():
            raise NoActiveProcessError()

        if handle._request_quit():
            logger.debug("Process not spawned yet, quit deferred until start")
            return

        logger.info(f"Sending quit signal to pid={handle.pid} (mode={self.quit_mode.value})")
        self._call_on_loop(handle, self._deliver_quit, handle.process)

    def when_ready(
        self,
        on_ready: Callable[[], None],
        timeout_ms: float,
    ) -> ObserverHandle:
        """Invoke on_ready once the supervisor becomes idle.

        Must be called from a running event loop.
        """
        observer = ReadinessObserver(self)
        return observer.observe_once(lambda: not self.is_running(), on_ready, timeout_ms)

    async def wait_until_idle(self, timeout: float | None = None) -> bool:
        """Wait until no command is running.

        Returns:
            False if timeout elapsed first
        """
        timeout_ms = math.inf if timeout is None else timeout * 1000.0
        registration = self.when_ready(lambda: None, timeout_ms)
        return await registration.wait()

    async def aclose(self) -> None:
        """Kill any active process and wait for its task to finish."""
        handle = self.current
        self.kill()
        if handle is not None and handle.task is not None:
            await asyncio.gather(handle.task, return_exceptions=True)

    # =========================================================================
    # Background task
    # =========================================================================

    def _resolve_loop(self) -> tuple[asyncio.AbstractEventLoop, bool]:
        """Loop that hosts the background task, and whether we are on it."""
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is not None:
            return running, True
        if self._loop is None or self._loop.is_closed():
            raise RuntimeError(
                "execute() needs a running event loop or a loop bound at construction"
            )
        return self._loop, False

    def _start_task(
        self,
        handle: ProcessHandle,
        on_output_line: OutputCallback | None,
        on_start: Callable[[], None] | None = None,
    ) -> None:
        if on_start is not None:
            try:
                on_start()
            except Exception as e:
                logger.warning(f"Error in start callback: {e}")
        handle.task = handle._loop.create_task(
            self._run(handle, on_output_line),
            name=f"probe-supervisor:{handle.command.executable}",
        )

    async def _run(
        self,
        handle: ProcessHandle,
        on_output_line: OutputCallback | None,
    ) -> None:
        command = handle.command
        process: asyncio.subprocess.Process | None = None
        deadline = None if math.isinf(handle.timeout) else handle.timeout

        try:
            with anyio.move_on_after(deadline) as scope:
                try:
                    process = await self.runner.spawn(
                        command,
                        stdin_pipe=self.quit_mode is QuitMode.STDIN,
                    )
                except OSError as e:
                    logger.warning(f"Failed to start {command.executable}: {e}")
                    handle._finish(ProcessState.COMPLETED_FAILURE, error=e)
                    return

                if not handle._mark_running(process):
                    # Killed before the child existed
                    self.runner.force_kill(process)
                    await self.runner.reap(process)
                    return

                self._notify_state_listeners()
                if handle._take_quit_request():
                    self._deliver_quit(process)

                async for line in self.runner.iter_lines(process):
                    # Keep draining after kill so the pipe never blocks the child
                    if not handle.is_running() or on_output_line is None:
                        continue
                    try:
                        on_output_line(line)
                    except Exception as e:
                        logger.warning(f"Error in output callback: {e}")

                returncode = await process.wait()

            if scope.cancelled_caught:
                self._expire(handle, process)
                if process is not None:
                    await self.runner.reap(process)
                return

            state = (
                ProcessState.COMPLETED_SUCCESS
                if returncode == 0
                else ProcessState.COMPLETED_FAILURE
            )
            if handle._finish(state, exit_code=returncode):
                logger.info(
                    f"Process completed pid={process.pid} "
                    f"returncode={returncode} state={state.value}"
                )

        except asyncio.CancelledError:
            logger.debug(f"Supervisor task cancelled for {handle!r}")
            if process is not None:
                self.runner.force_kill(process)
            handle._finish(ProcessState.KILLED)
            raise

        except Exception as e:
            logger.error(f"Supervisor task failed: type={type(e).__name__}, msg={e}")
            if process is not None:
                self.runner.force_kill(process)
            handle._finish(ProcessState.COMPLETED_FAILURE, error=e)

        finally:
            if self._release(handle):
                self._notify_state_listeners()

    def _expire(
        self,
        handle: ProcessHandle,
        process: asyncio.subprocess.Process | None,
    ) -> None:
        """Timeout handler: same forced termination as kill(), state TIMED_OUT."""
        if not handle._finish(ProcessState.TIMED_OUT):
            return
        logger.warning(
            f"Process timed out after {handle.timeout}s pid={handle.pid}, killing"
        )
        if process is not None:
            self.runner.force_kill(process)
        if self._release(handle):
            self._notify_state_listeners()

    def _deliver_quit(self, process: asyncio.subprocess.Process) -> None:
        if self.quit_mode is QuitMode.STDIN and self.runner.write_quit_command(process):
            return
        self.runner.send_interrupt(process)

    @staticmethod
    def _call_on_loop(handle: ProcessHandle, fn: Callable[..., Any], *args: Any) -> None:
        """Run fn now when on the handle's loop, else hand it to that loop."""
        loop = handle._loop
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is loop:
            fn(*args)
        elif not loop.is_closed():
            loop.call_soon_threadsafe(fn, *args)
