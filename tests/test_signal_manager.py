"""SignalManager 模块测试。

测试信号管理器的基本功能：
- 信号处理策略
- 配置支持
- 双击强制终止
"""

from __future__ import annotations

import asyncio
import os
import sys
from unittest import mock

import pytest

from probe_supervisor.config import SigintMode, reload_config
from probe_supervisor.errors import NoActiveProcessError
from probe_supervisor.signal_manager import SignalManager
from probe_supervisor.supervisor import ExecutionSupervisor


def make_supervisor(running: bool = True) -> mock.MagicMock:
    """构造模拟 supervisor。"""
    supervisor = mock.MagicMock(spec=ExecutionSupervisor)
    supervisor.is_running.return_value = running
    supervisor.kill.return_value = running
    return supervisor


def make_manager(supervisor, **kwargs) -> SignalManager:
    manager = SignalManager(supervisor, **kwargs)
    manager._shutdown_event = asyncio.Event()
    manager._loop = mock.MagicMock()
    return manager


class TestSigintMode:
    """SigintMode 枚举测试。"""

    def test_from_string_valid(self):
        """有效字符串解析。"""
        assert SigintMode.from_string("quit") == SigintMode.QUIT
        assert SigintMode.from_string("kill") == SigintMode.KILL
        assert SigintMode.from_string("quit_then_kill") == SigintMode.QUIT_THEN_KILL

    def test_from_string_case_insensitive(self):
        """大小写不敏感。"""
        assert SigintMode.from_string("QUIT") == SigintMode.QUIT
        assert SigintMode.from_string("Kill") == SigintMode.KILL

    def test_from_string_invalid(self):
        """无效字符串返回默认值 QUIT。"""
        assert SigintMode.from_string("invalid") == SigintMode.QUIT
        assert SigintMode.from_string("") == SigintMode.QUIT


class TestSignalManagerInit:
    """SignalManager 初始化测试。"""

    def test_init_with_defaults(self):
        """使用默认配置初始化。"""
        supervisor = make_supervisor()

        with mock.patch.dict(os.environ, {}, clear=False):
            os.environ.pop("PROBE_SIGINT_MODE", None)
            os.environ.pop("PROBE_SIGINT_DOUBLE_TAP_WINDOW", None)
            reload_config()

            manager = SignalManager(supervisor)

            assert manager.supervisor is supervisor
            assert manager.sigint_mode == SigintMode.QUIT
            assert manager.double_tap_window == 1.0

    def test_init_with_custom_values(self):
        """使用自定义值初始化。"""
        manager = SignalManager(
            make_supervisor(),
            sigint_mode=SigintMode.KILL,
            double_tap_window=2.0,
        )

        assert manager.sigint_mode == SigintMode.KILL
        assert manager.double_tap_window == 2.0


class TestSigintQuit:
    """SIGINT QUIT 模式测试。"""

    def test_sigint_with_active_process_sends_quit(self):
        """有活动进程时 SIGINT 发送退出信号。"""
        supervisor = make_supervisor()
        manager = make_manager(supervisor, sigint_mode=SigintMode.QUIT)

        manager._handle_sigint()

        supervisor.send_quit_signal.assert_called_once()
        supervisor.kill.assert_not_called()
        assert manager.is_shutdown_requested is False

    def test_sigint_without_active_process_shuts_down(self):
        """没有活动进程时 SIGINT 请求关闭。"""
        supervisor = make_supervisor(running=False)
        manager = make_manager(supervisor, sigint_mode=SigintMode.QUIT)

        manager._handle_sigint()

        supervisor.send_quit_signal.assert_not_called()
        assert manager.is_shutdown_requested is True
        manager._loop.call_soon_threadsafe.assert_called_once_with(manager._shutdown_event.set)

    def test_process_finished_before_quit(self):
        """检查与发送之间进程已结束：请求关闭。"""
        supervisor = make_supervisor()
        supervisor.send_quit_signal.side_effect = NoActiveProcessError()
        manager = make_manager(supervisor, sigint_mode=SigintMode.QUIT)

        manager._handle_sigint()

        assert manager.is_shutdown_requested is True
        assert manager.is_force_exit is False

    def test_repeated_sigint_keeps_sending_quit(self):
        """QUIT 模式下重复 SIGINT 不会升级为强制终止。"""
        supervisor = make_supervisor()
        manager = make_manager(supervisor, sigint_mode=SigintMode.QUIT)

        manager._handle_sigint()
        manager._handle_sigint()

        assert supervisor.send_quit_signal.call_count == 2
        supervisor.kill.assert_not_called()


class TestSigintKill:
    """SIGINT KILL 模式测试。"""

    def test_sigint_kills_and_shuts_down(self):
        """KILL 模式下 SIGINT 强制终止并请求关闭。"""
        supervisor = make_supervisor()
        manager = make_manager(supervisor, sigint_mode=SigintMode.KILL)

        manager._handle_sigint()

        supervisor.kill.assert_called_once()
        supervisor.send_quit_signal.assert_not_called()
        assert manager.is_shutdown_requested is True
        assert manager.is_force_exit is True


class TestSigintDoubleTap:
    """SIGINT QUIT_THEN_KILL 模式测试。"""

    def test_first_sigint_sends_quit(self):
        supervisor = make_supervisor()
        manager = make_manager(
            supervisor,
            sigint_mode=SigintMode.QUIT_THEN_KILL,
            double_tap_window=1.0,
        )

        manager._handle_sigint()

        supervisor.send_quit_signal.assert_called_once()
        supervisor.kill.assert_not_called()
        assert manager.is_shutdown_requested is False

    def test_double_tap_forces_kill(self):
        """窗口内第二次 SIGINT 强制终止。"""
        supervisor = make_supervisor()
        manager = make_manager(
            supervisor,
            sigint_mode=SigintMode.QUIT_THEN_KILL,
            double_tap_window=1.0,
        )

        manager._handle_sigint()
        manager._handle_sigint()

        supervisor.kill.assert_called_once()
        assert manager.is_force_exit is True
        manager._loop.call_soon_threadsafe.assert_called()

    def test_second_sigint_outside_window_sends_quit_again(self):
        """窗口外的第二次 SIGINT 仍只发送退出信号。"""
        supervisor = make_supervisor()
        manager = make_manager(
            supervisor,
            sigint_mode=SigintMode.QUIT_THEN_KILL,
            double_tap_window=0.5,
        )

        with mock.patch("probe_supervisor.signal_manager.time.time", side_effect=[100.0, 101.0]):
            manager._handle_sigint()
            manager._handle_sigint()

        assert supervisor.send_quit_signal.call_count == 2
        supervisor.kill.assert_not_called()
        assert manager.is_force_exit is False


class TestSigterm:
    """SIGTERM 测试。"""

    def test_sigterm_kills_and_shuts_down(self):
        """SIGTERM 强制终止并请求关闭。"""
        supervisor = make_supervisor()
        manager = make_manager(supervisor)

        manager._handle_sigterm()

        supervisor.kill.assert_called_once()
        assert manager.is_shutdown_requested is True
        assert manager.is_force_exit is True


class TestCallbacks:
    """回调测试。"""

    def test_on_shutdown_callback(self):
        """关闭时调用回调。"""
        callback = mock.MagicMock()
        manager = make_manager(
            make_supervisor(),
            sigint_mode=SigintMode.KILL,
            on_shutdown=callback,
        )

        manager._handle_sigint()

        callback.assert_called_once()

    def test_on_shutdown_callback_error_is_ignored(self):
        callback = mock.MagicMock(side_effect=RuntimeError("boom"))
        manager = make_manager(make_supervisor(running=False), on_shutdown=callback)

        manager._handle_sigint()

        assert manager.is_shutdown_requested is True
        manager._loop.call_soon_threadsafe.assert_called_once()


@pytest.mark.skipif(sys.platform == "win32", reason="POSIX signal handling")
class TestSignalManagerStartStop:
    """SignalManager 启动/停止测试（仅 POSIX）。"""

    @pytest.mark.asyncio
    async def test_start_and_stop(self):
        """启动和停止信号管理器。"""
        manager = SignalManager(ExecutionSupervisor())

        await manager.start()
        assert manager._running is True
        assert manager._loop is not None

        await manager.stop()
        assert manager._running is False

    @pytest.mark.asyncio
    async def test_wait_for_shutdown(self):
        """请求关闭后 wait_for_shutdown 返回。"""
        manager = SignalManager(ExecutionSupervisor())
        await manager.start()
        try:
            manager._handle_sigint()
            await asyncio.wait_for(manager.wait_for_shutdown(), timeout=1.0)
            assert manager.is_shutdown_requested is True
        finally:
            await manager.stop()
