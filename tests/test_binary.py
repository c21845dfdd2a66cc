"""ProbeBinary facade tests.

The Python interpreter plays the role of the probe binary and the fake probe
script is passed as its first argument.
"""

from __future__ import annotations

import asyncio
import sys
from pathlib import Path

import pytest

from conftest import FAKE_PROBE
from probe_supervisor.binary import ProbeBinary, ResponseHandler
from probe_supervisor.errors import AlreadyRunningError, InvalidArgumentError
from probe_supervisor.provisioner import LocalBinaryProvisioner
from probe_supervisor.runtime.handle import ProcessResult, ProcessState
from probe_supervisor.supervisor import ExecutionSupervisor


class RecordingHandler(ResponseHandler):
    def __init__(self) -> None:
        self.events: list[tuple[str, str | None]] = []

    def on_start(self) -> None:
        self.events.append(("start", None))

    def on_progress(self, line: str) -> None:
        self.events.append(("progress", line))

    def on_success(self, output: str) -> None:
        self.events.append(("success", output))

    def on_failure(self, output: str) -> None:
        self.events.append(("failure", output))

    def on_finish(self) -> None:
        self.events.append(("finish", None))


@pytest.fixture
def probe(supervisor: ExecutionSupervisor) -> ProbeBinary:
    return ProbeBinary(LocalBinaryProvisioner(path=sys.executable), supervisor)


async def settle() -> None:
    for _ in range(3):
        await asyncio.sleep(0)


class TestExecute:
    """execute() 测试。"""

    @pytest.mark.asyncio
    @pytest.mark.timeout(15)
    async def test_binary_path_prepended(self, probe: ProbeBinary):
        lines: list[str] = []
        handle = probe.execute([str(FAKE_PROBE), "-v", "quiet", "file.mp4"], on_output_line=lines.append)

        assert handle.command.argv[0] == str(Path(sys.executable).absolute())
        assert handle.command.argv[1:] == (str(FAKE_PROBE), "-v", "quiet", "file.mp4")

        result = await handle.wait()
        assert result.state is ProcessState.COMPLETED_SUCCESS
        assert lines == ["line 1", "line 2"]

    @pytest.mark.asyncio
    async def test_empty_args_rejected(self, probe: ProbeBinary):
        with pytest.raises(InvalidArgumentError):
            probe.execute([])
        assert probe.is_command_running() is False

    @pytest.mark.asyncio
    async def test_string_args_rejected(self, probe: ProbeBinary):
        with pytest.raises(InvalidArgumentError):
            probe.execute("-version")  # type: ignore[arg-type]

    @pytest.mark.asyncio
    @pytest.mark.timeout(15)
    async def test_environment_overlay(self, probe: ProbeBinary):
        lines: list[str] = []
        handle = probe.execute(
            [str(FAKE_PROBE), "--lines", "0", "--print-env", "FFREPORT"],
            on_output_line=lines.append,
            env={"FFREPORT": "file=report.log"},
        )
        await handle.wait()
        assert lines == ["FFREPORT=file=report.log"]

    @pytest.mark.asyncio
    @pytest.mark.timeout(15)
    async def test_single_flight(self, probe: ProbeBinary):
        handle = probe.execute([str(FAKE_PROBE), "--hang"])
        assert probe.is_command_running() is True
        with pytest.raises(AlreadyRunningError):
            probe.execute([str(FAKE_PROBE)])

        assert probe.kill_running_processes() is True
        assert probe.is_command_running() is False
        assert (await handle.wait()).state is ProcessState.KILLED

    def test_is_supported(self, tmp_path: Path):
        assert ProbeBinary(LocalBinaryProvisioner(path=sys.executable)).is_supported()
        missing = ProbeBinary(LocalBinaryProvisioner(path=tmp_path / "ffprobe"))
        assert missing.is_supported() is False

    def test_set_timeout_delegates(self):
        supervisor = ExecutionSupervisor()
        probe = ProbeBinary(LocalBinaryProvisioner(path=sys.executable), supervisor)
        probe.set_timeout(12)
        assert supervisor.timeout == 12.0


class TestResponseHandler:
    """ResponseHandler 回调顺序测试。"""

    @pytest.mark.asyncio
    @pytest.mark.timeout(15)
    async def test_success_order(self, probe: ProbeBinary):
        handler = RecordingHandler()
        completed: list[ProcessResult] = []
        handle = probe.execute(
            [str(FAKE_PROBE), "--lines", "2"],
            on_complete=completed.append,
            handler=handler,
        )
        await handle.wait()
        await settle()

        assert handler.events == [
            ("start", None),
            ("progress", "line 1"),
            ("progress", "line 2"),
            ("success", "line 1\nline 2"),
            ("finish", None),
        ]
        assert len(completed) == 1

    @pytest.mark.asyncio
    @pytest.mark.timeout(15)
    async def test_start_precedes_progress_from_thread(self):
        """Off-loop callers still see on_start before any output."""
        supervisor = ExecutionSupervisor(loop=asyncio.get_running_loop())
        probe = ProbeBinary(LocalBinaryProvisioner(path=sys.executable), supervisor)
        handler = RecordingHandler()
        try:
            handle = await asyncio.to_thread(
                probe.execute, [str(FAKE_PROBE), "--lines", "2"], handler=handler
            )
            await handle.wait()
            await settle()
        finally:
            await supervisor.aclose()

        assert handler.events == [
            ("start", None),
            ("progress", "line 1"),
            ("progress", "line 2"),
            ("success", "line 1\nline 2"),
            ("finish", None),
        ]

    @pytest.mark.asyncio
    @pytest.mark.timeout(15)
    async def test_start_precedes_failure_when_killed_from_thread(self):
        supervisor = ExecutionSupervisor(loop=asyncio.get_running_loop())
        probe = ProbeBinary(LocalBinaryProvisioner(path=sys.executable), supervisor)
        handler = RecordingHandler()

        def execute_then_kill():
            handle = probe.execute([str(FAKE_PROBE), "--hang"], handler=handler)
            probe.kill_running_processes()
            return handle

        try:
            handle = await asyncio.to_thread(execute_then_kill)
            assert (await handle.wait()).state is ProcessState.KILLED
            await settle()
        finally:
            await supervisor.aclose()

        assert handler.events[0] == ("start", None)
        assert handler.events[-1] == ("finish", None)
        assert [kind for kind, _ in handler.events].count("start") == 1

    @pytest.mark.asyncio
    @pytest.mark.timeout(15)
    async def test_start_error_does_not_block_run(self, probe: ProbeBinary):
        class BrokenStart(RecordingHandler):
            def on_start(self) -> None:
                raise RuntimeError("boom")

        handler = BrokenStart()
        handle = probe.execute([str(FAKE_PROBE), "--lines", "1"], handler=handler)
        result = await handle.wait()
        await settle()

        assert result.state is ProcessState.COMPLETED_SUCCESS
        assert handler.events[-2:] == [("success", "line 1"), ("finish", None)]

    @pytest.mark.asyncio
    @pytest.mark.timeout(15)
    async def test_failure(self, probe: ProbeBinary):
        handler = RecordingHandler()
        handle = probe.execute(
            [str(FAKE_PROBE), "--lines", "1", "--exit-code", "1"],
            handler=handler,
        )
        await handle.wait()
        await settle()

        assert handler.events[-2:] == [("failure", "line 1"), ("finish", None)]

    @pytest.mark.asyncio
    @pytest.mark.timeout(15)
    async def test_handler_and_line_callback_both_called(self, probe: ProbeBinary):
        handler = RecordingHandler()
        lines: list[str] = []
        handle = probe.execute(
            [str(FAKE_PROBE), "--lines", "1"],
            on_output_line=lines.append,
            handler=handler,
        )
        await handle.wait()
        assert lines == ["line 1"]
        assert ("progress", "line 1") in handler.events

    @pytest.mark.asyncio
    @pytest.mark.timeout(15)
    async def test_on_complete_runs_when_handler_fails(self, probe: ProbeBinary):
        class Broken(ResponseHandler):
            def on_success(self, output: str) -> None:
                raise RuntimeError("boom")

        completed: list[ProcessResult] = []
        handle = probe.execute(
            [str(FAKE_PROBE), "--lines", "0"],
            on_complete=completed.append,
            handler=Broken(),
        )
        await handle.wait()
        await settle()
        assert len(completed) == 1


class TestReadiness:
    """when_ready 委托测试。"""

    @pytest.mark.asyncio
    @pytest.mark.timeout(15)
    async def test_when_ready(self, probe: ProbeBinary):
        fired: list[bool] = []
        probe.execute([str(FAKE_PROBE), "--lines", "0", "--duration", "0.5"])
        registration = probe.when_ready(lambda: fired.append(True), timeout_ms=5000)
        assert await registration.wait() is True
        assert fired == [True]
