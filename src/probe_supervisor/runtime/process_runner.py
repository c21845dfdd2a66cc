"""Process runner with subprocess isolation and reliable termination.

probe-supervisor runtime module

This module provides:
- Cross-platform subprocess isolation (new session/process group)
- Combined stdout/stderr line streaming in emission order
- Cooperative quit (interrupt signal or stdin quit command)
- Forced termination of the whole process group

Key design points:
- POSIX: start_new_session=True to create new process group
- Windows: CREATE_NEW_PROCESS_GROUP for signal isolation
- stderr is redirected into stdout so a single reader sees lines in order
"""

from __future__ import annotations

import asyncio
import logging
import os
import signal
import subprocess
import sys
from collections.abc import AsyncIterator
from dataclasses import dataclass
from typing import Any

from ..config import DEFAULT_KILL_TIMEOUT
from .command import Command

__all__ = [
    "ProcessRunner",
    "IS_WINDOWS",
    "QUIT_COMMAND",
]

logger = logging.getLogger(__name__)

# Platform detection
IS_WINDOWS = sys.platform == "win32"

# Interactive quit key understood by the ffmpeg family of tools
QUIT_COMMAND = b"q\n"

READ_CHUNK_SIZE = 4096


def _decode_line(line_bytes: bytes) -> str:
    return line_bytes.decode("utf-8", errors="replace").rstrip("\r")


@dataclass
class ProcessRunner:
    """Spawns and signals supervised child processes.

    The runner is stateless apart from its timeouts; the supervisor owns the
    process objects it returns.

    Example:
        runner = ProcessRunner()
        process = await runner.spawn(Command.of(["ffprobe", "-version"]))
        async for line in runner.iter_lines(process):
            print(line)
        await process.wait()
    """

    kill_timeout: float = DEFAULT_KILL_TIMEOUT

    async def spawn(
        self,
        command: Command,
        *,
        stdin_pipe: bool = False,
    ) -> asyncio.subprocess.Process:
        """Start the command in an isolated process group.

        Args:
            command: Command to run
            stdin_pipe: Open a stdin pipe (needed for the stdin quit mode)

        Returns:
            The started asyncio subprocess

        Raises:
            OSError: If the executable is missing or cannot be executed
        """
        kwargs = self._build_subprocess_kwargs(command)

        # stdin=None would inherit the parent's stdin; use DEVNULL unless the
        # quit command has to be written to the child.
        process = await asyncio.create_subprocess_exec(
            *command.argv,
            stdin=asyncio.subprocess.PIPE if stdin_pipe else asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
            **kwargs,
        )

        logger.debug(
            f"Started subprocess pid={process.pid} "
            f"argv={command.executable} cwd={command.cwd}"
        )
        return process

    def _build_subprocess_kwargs(self, command: Command) -> dict[str, Any]:
        """Build platform-specific subprocess kwargs.

        Args:
            command: Command to run

        Returns:
            Dict of kwargs for asyncio.create_subprocess_exec
        """
        kwargs: dict[str, Any] = {}

        env = command.build_env()
        if env is not None:
            kwargs["env"] = env

        if command.cwd is not None:
            kwargs["cwd"] = command.cwd

        if IS_WINDOWS:
            kwargs["creationflags"] = subprocess.CREATE_NEW_PROCESS_GROUP
        else:
            # POSIX: start_new_session (equivalent to setsid)
            kwargs["start_new_session"] = True

        return kwargs

    @staticmethod
    async def iter_lines(process: asyncio.subprocess.Process) -> AsyncIterator[str]:
        """Yield decoded output lines without their trailing newline.

        Reads fixed-size chunks and splits on newlines, so a line longer than
        the stream reader's buffer limit is still delivered whole.

        Args:
            process: The subprocess (stderr merged into stdout)

        Yields:
            Lines of combined output
        """
        if process.stdout is None:
            return
        line_buffer = b""
        while True:
            chunk = await process.stdout.read(READ_CHUNK_SIZE)
            if not chunk:
                # EOF: flush a final line without a newline
                if line_buffer:
                    yield _decode_line(line_buffer)
                break
            line_buffer += chunk
            while b"\n" in line_buffer:
                line_bytes, line_buffer = line_buffer.split(b"\n", 1)
                yield _decode_line(line_bytes)

    def send_interrupt(self, process: asyncio.subprocess.Process) -> None:
        """Ask the process to quit via an interrupt.

        POSIX: SIGINT to the process group. Windows: CTRL_BREAK_EVENT.
        """
        if IS_WINDOWS:
            try:
                os.kill(process.pid, signal.CTRL_BREAK_EVENT)
                logger.debug(f"Sent CTRL_BREAK_EVENT to pid={process.pid}")
            except (ProcessLookupError, OSError) as e:
                logger.debug(f"CTRL_BREAK_EVENT failed, falling back: {e}")
                process.terminate()
            return

        try:
            pgid = os.getpgid(process.pid)
            os.killpg(pgid, signal.SIGINT)
            logger.debug(f"Sent SIGINT to process group pgid={pgid}")
        except ProcessLookupError:
            pass
        except OSError as e:
            logger.debug(f"killpg failed, falling back to send_signal: {e}")
            process.send_signal(signal.SIGINT)

    def write_quit_command(
        self,
        process: asyncio.subprocess.Process,
        payload: bytes = QUIT_COMMAND,
    ) -> bool:
        """Write the quit command to the process's stdin.

        Returns:
            Whether the payload was handed to the stdin transport
        """
        if process.stdin is None or process.stdin.is_closing():
            logger.debug(f"stdin not available for pid={process.pid}")
            return False
        try:
            process.stdin.write(payload)
        except (BrokenPipeError, ConnectionResetError) as e:
            logger.debug(f"Writing quit command failed pid={process.pid}: {e}")
            return False
        logger.debug(f"Wrote quit command to pid={process.pid}")
        return True

    def force_kill(self, process: asyncio.subprocess.Process) -> None:
        """Kill the process (and its group on POSIX).

        Already-exited processes are ignored.
        """
        if process.returncode is not None:
            return
        try:
            if IS_WINDOWS:
                process.kill()
                logger.debug(f"Called kill() on pid={process.pid}")
                return
            try:
                pgid = os.getpgid(process.pid)
                os.killpg(pgid, signal.SIGKILL)
                logger.debug(f"Sent SIGKILL to process group pgid={pgid}")
            except ProcessLookupError:
                raise
            except OSError as e:
                logger.debug(f"killpg failed, falling back to kill: {e}")
                process.kill()
        except ProcessLookupError:
            logger.debug(f"Subprocess already exited pid={process.pid}")

    async def reap(self, process: asyncio.subprocess.Process) -> int | None:
        """Wait for a killed process to be collected.

        Returns:
            The return code, or None if the process did not exit in time
        """
        try:
            return await asyncio.wait_for(process.wait(), timeout=self.kill_timeout)
        except asyncio.TimeoutError:
            logger.warning(f"Subprocess did not exit after kill pid={process.pid}")
            return None
