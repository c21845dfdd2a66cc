"""Process handle and lifecycle state.

A handle is created by ExecutionSupervisor.execute(), moves from CREATED to
RUNNING once the child is spawned, and reaches exactly one terminal state.
Terminal states are absorbing: later transitions are rejected and the
completion callbacks never fire twice.
"""

from __future__ import annotations

import asyncio
import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any

from .command import Command

__all__ = [
    "ProcessState",
    "ProcessResult",
    "ProcessHandle",
    "CompletionCallback",
    "OutputCallback",
]

logger = logging.getLogger(__name__)


class ProcessState(str, Enum):
    """Lifecycle state of a supervised process."""

    CREATED = "created"
    RUNNING = "running"
    COMPLETED_SUCCESS = "completed_success"
    COMPLETED_FAILURE = "completed_failure"
    KILLED = "killed"
    TIMED_OUT = "timed_out"

    @property
    def is_terminal(self) -> bool:
        return self not in (ProcessState.CREATED, ProcessState.RUNNING)


@dataclass(frozen=True)
class ProcessResult:
    """Final outcome delivered to on_complete and to awaiters.

    Attributes:
        state: Terminal state
        exit_code: Child exit code (None when the child never exited on its
            own: spawn failure, kill, timeout)
        error: Spawn or runtime error, if any
        duration_sec: Time from execute() to the terminal transition
    """

    state: ProcessState
    exit_code: int | None = None
    error: BaseException | None = None
    duration_sec: float = 0.0

    @property
    def success(self) -> bool:
        return self.state is ProcessState.COMPLETED_SUCCESS

    def to_dict(self) -> dict[str, Any]:
        """转换为字典格式。"""
        result: dict[str, Any] = {
            "state": self.state.value,
            "exit_code": self.exit_code,
            "duration_sec": round(self.duration_sec, 3),
        }
        if self.error is not None:
            result["error"] = f"{type(self.error).__name__}: {self.error}"
        return result


OutputCallback = Callable[[str], None]
CompletionCallback = Callable[[ProcessResult], None]


class ProcessHandle:
    """One spawned (or spawning) child process.

    Owned by the supervisor that created it. State changes go through
    _mark_running() and _finish(), both guarded by a lock so that kill(),
    timeout expiry and natural exit can race safely from any thread.
    """

    def __init__(
        self,
        command: Command,
        loop: asyncio.AbstractEventLoop,
        timeout: float,
    ) -> None:
        self.command = command
        self.timeout = timeout
        self.created_at = time.monotonic()

        self._loop = loop
        self._lock = threading.Lock()
        self._state = ProcessState.CREATED
        self._result: ProcessResult | None = None
        self._future: asyncio.Future[ProcessResult] = loop.create_future()
        self._done_callbacks: list[CompletionCallback] = []

        # Set by the supervisor's background task
        self.process: asyncio.subprocess.Process | None = None
        self.task: asyncio.Task[None] | None = None

        # Requests that arrive before the child is spawned
        self._quit_requested = False

    def __repr__(self) -> str:
        return (
            f"ProcessHandle(pid={self.pid}, "
            f"state={self._state.value}, "
            f"argv={self.command.executable})"
        )

    @property
    def pid(self) -> int | None:
        return self.process.pid if self.process is not None else None

    @property
    def state(self) -> ProcessState:
        return self._state

    @property
    def result(self) -> ProcessResult | None:
        return self._result

    @property
    def exit_code(self) -> int | None:
        return self._result.exit_code if self._result is not None else None

    @property
    def stdout(self) -> asyncio.StreamReader | None:
        """Combined stdout/stderr stream of the child."""
        return self.process.stdout if self.process is not None else None

    @property
    def stdin(self) -> asyncio.StreamWriter | None:
        return self.process.stdin if self.process is not None else None

    def is_running(self) -> bool:
        """Whether the handle has not reached a terminal state yet."""
        return not self._state.is_terminal

    def done(self) -> bool:
        return self._state.is_terminal

    def add_done_callback(self, callback: CompletionCallback) -> None:
        """Register a completion callback.

        Callbacks added after completion are scheduled right away.
        """
        with self._lock:
            if self._result is None:
                self._done_callbacks.append(callback)
                return
            result = self._result
        self._call_in_loop(self._invoke_callbacks, [callback], result)

    async def wait(self) -> ProcessResult:
        """Wait for the terminal state and return the result."""
        return await asyncio.shield(self._future)

    def _mark_running(self, process: asyncio.subprocess.Process) -> bool:
        """CREATED -> RUNNING. Returns False if already terminal."""
        with self._lock:
            self.process = process
            if self._state is not ProcessState.CREATED:
                return False
            self._state = ProcessState.RUNNING
            return True

    def _request_quit(self) -> bool:
        """Remember a quit request; returns True if the child is not spawned yet."""
        with self._lock:
            if self.process is None:
                self._quit_requested = True
                return True
            return False

    def _take_quit_request(self) -> bool:
        with self._lock:
            requested = self._quit_requested
            self._quit_requested = False
            return requested

    def _finish(
        self,
        state: ProcessState,
        exit_code: int | None = None,
        error: BaseException | None = None,
    ) -> bool:
        """Move to a terminal state and schedule completion delivery.

        Returns:
            False if the handle had already reached a terminal state
        """
        if not state.is_terminal:
            raise ValueError(f"{state} is not a terminal state")

        with self._lock:
            if self._state.is_terminal:
                return False
            self._state = state
            self._result = ProcessResult(
                state=state,
                exit_code=exit_code,
                error=error,
                duration_sec=time.monotonic() - self.created_at,
            )
            callbacks = self._done_callbacks
            self._done_callbacks = []
            result = self._result

        logger.debug(f"Process handle finished: {self!r} exit_code={exit_code}")
        # Delivery always happens on the loop, after any output callback that
        # was already running when the state flipped.
        self._call_in_loop(self._deliver, callbacks, result)
        return True

    def _deliver(self, callbacks: list[CompletionCallback], result: ProcessResult) -> None:
        if not self._future.done():
            self._future.set_result(result)
        self._invoke_callbacks(callbacks, result)

    @staticmethod
    def _invoke_callbacks(callbacks: list[CompletionCallback], result: ProcessResult) -> None:
        for callback in callbacks:
            try:
                callback(result)
            except Exception as e:
                logger.warning(f"Error in completion callback: {e}")

    def _call_in_loop(self, fn: Callable[..., Any], *args: Any) -> None:
        if self._loop.is_closed():
            logger.debug(f"Event loop closed, dropping completion delivery for {self!r}")
            return
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is self._loop:
            self._loop.call_soon(fn, *args)
        else:
            self._loop.call_soon_threadsafe(fn, *args)
