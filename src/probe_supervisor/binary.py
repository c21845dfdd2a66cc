"""Probe binary facade.

ProbeBinary couples a provisioner (where is the binary, is it usable) with an
ExecutionSupervisor (run it, one command at a time). Callers pass only the
probe arguments; the binary path is prepended here.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping, Sequence

from .config import Config, get_config
from .errors import InvalidArgumentError
from .observer import ObserverHandle
from .provisioner import BinaryProvisioner, LocalBinaryProvisioner
from .runtime.command import Command
from .runtime.handle import (
    CompletionCallback,
    OutputCallback,
    ProcessHandle,
    ProcessResult,
)
from .supervisor import ExecutionSupervisor

__all__ = ["ProbeBinary", "ResponseHandler"]

logger = logging.getLogger(__name__)


class ResponseHandler:
    """Callback bundle for one probe run.

    Override the hooks you need. Order: on_start, on_progress per line,
    then on_success or on_failure with the collected output, then on_finish.
    """

    def on_start(self) -> None:
        pass

    def on_progress(self, line: str) -> None:
        pass

    def on_success(self, output: str) -> None:
        pass

    def on_failure(self, output: str) -> None:
        pass

    def on_finish(self) -> None:
        pass


def _bind_handler(
    handler: ResponseHandler,
    on_output_line: OutputCallback | None,
    on_complete: CompletionCallback | None,
) -> tuple[OutputCallback, CompletionCallback]:
    lines: list[str] = []

    def output(line: str) -> None:
        lines.append(line)
        handler.on_progress(line)
        if on_output_line is not None:
            on_output_line(line)

    def complete(result: ProcessResult) -> None:
        text = "\n".join(lines)
        try:
            if result.success:
                handler.on_success(text)
            else:
                handler.on_failure(text)
            handler.on_finish()
        finally:
            if on_complete is not None:
                on_complete(result)

    return output, complete


class ProbeBinary:
    """A provisioned probe binary run under an ExecutionSupervisor.

    Example:
        probe = ProbeBinary(LocalBinaryProvisioner(name="ffprobe"))
        if probe.is_supported():
            handle = probe.execute(["-v", "quiet", "-show_format", "file.mp4"])
            result = await handle.wait()
    """

    def __init__(
        self,
        provisioner: BinaryProvisioner,
        supervisor: ExecutionSupervisor | None = None,
        config: Config | None = None,
    ) -> None:
        self.provisioner = provisioner
        self.supervisor = (
            supervisor
            if supervisor is not None
            else ExecutionSupervisor.from_config(config)
        )

    @classmethod
    def from_config(cls, config: Config | None = None) -> "ProbeBinary":
        config = config or get_config()
        return cls(LocalBinaryProvisioner.from_config(config), config=config)

    def is_supported(self) -> bool:
        """Whether the binary is installed and executable."""
        return self.provisioner.is_ready()

    def execute(
        self,
        args: Sequence[str],
        on_output_line: OutputCallback | None = None,
        on_complete: CompletionCallback | None = None,
        *,
        env: Mapping[str, str] | None = None,
        handler: ResponseHandler | None = None,
        timeout: float | None = None,
    ) -> ProcessHandle:
        """Run the binary with args.

        Raises:
            InvalidArgumentError: If args is empty
            AlreadyRunningError: If a command is already running
        """
        if isinstance(args, str) or not args:
            raise InvalidArgumentError("shell command cannot be empty")

        command = Command.of(
            [str(self.provisioner.binary_path), *args],
            env=env,
        )

        on_start = None
        if handler is not None:
            on_output_line, on_complete = _bind_handler(handler, on_output_line, on_complete)
            on_start = handler.on_start

        return self.supervisor.execute(
            command,
            timeout=timeout,
            on_output_line=on_output_line,
            on_complete=on_complete,
            on_start=on_start,
        )

    def is_command_running(self) -> bool:
        return self.supervisor.is_running()

    def kill_running_processes(self) -> bool:
        return self.supervisor.kill()

    def set_timeout(self, timeout: float) -> None:
        self.supervisor.set_timeout(timeout)

    def send_quit_signal(self) -> None:
        self.supervisor.send_quit_signal()

    def when_ready(self, on_ready: Callable[[], None], timeout_ms: float) -> ObserverHandle:
        """Invoke on_ready once no command is running (or give up after timeout_ms)."""
        return self.supervisor.when_ready(on_ready, timeout_ms)
