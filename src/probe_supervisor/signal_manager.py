"""信号管理模块。

将 OS 信号转换为对受管子进程的操作：
- SIGINT: 向活动子进程发送退出信号（而不是直接退出父进程）
- SIGTERM: 强制终止子进程并退出

支持的配置：
- PROBE_SIGINT_MODE: quit | kill | quit_then_kill
- PROBE_SIGINT_DOUBLE_TAP_WINDOW: 双击强制终止窗口时间

子进程在独立进程组中运行，终端的 Ctrl+C 不会直接到达子进程，
由本模块决定如何转发。
"""

from __future__ import annotations

import asyncio
import logging
import signal
import sys
import time
from typing import Callable, Optional

from .config import SigintMode, get_config
from .errors import NoActiveProcessError
from .supervisor import ExecutionSupervisor

__all__ = ["SignalManager", "SigintMode"]

logger = logging.getLogger(__name__)


class SignalManager:
    """信号管理器。

    Example:
        ```python
        supervisor = ExecutionSupervisor()
        signal_manager = SignalManager(supervisor)

        async def main():
            await signal_manager.start()
            try:
                handle = supervisor.execute(cmd)
                await handle.wait()
            finally:
                await signal_manager.stop()
        ```

    Attributes:
        supervisor: 被管理的 supervisor
        sigint_mode: SIGINT 处理模式
        double_tap_window: 双击强制终止窗口时间（秒）
    """

    def __init__(
        self,
        supervisor: ExecutionSupervisor,
        sigint_mode: Optional[SigintMode] = None,
        double_tap_window: Optional[float] = None,
        on_shutdown: Optional[Callable[[], None]] = None,
    ) -> None:
        """初始化信号管理器。

        Args:
            supervisor: 被管理的 supervisor
            sigint_mode: SIGINT 处理模式（默认从配置读取）
            double_tap_window: 双击窗口时间（默认从配置读取）
            on_shutdown: 关闭时的回调函数
        """
        self.supervisor = supervisor

        config = get_config()
        self.sigint_mode = sigint_mode if sigint_mode is not None else config.sigint_mode
        self.double_tap_window = (
            double_tap_window if double_tap_window is not None else config.sigint_double_tap_window
        )
        self._on_shutdown = on_shutdown

        self._last_sigint_time: float = 0.0
        self._quit_sent: bool = False
        self._shutdown_requested: bool = False
        self._force_exit: bool = False
        self._shutdown_event: Optional[asyncio.Event] = None
        self._original_sigint_handler: Optional[signal.Handlers] = None
        self._running: bool = False
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    @property
    def is_shutdown_requested(self) -> bool:
        """是否已请求关闭。"""
        return self._shutdown_requested

    @property
    def is_force_exit(self) -> bool:
        """是否因强制终止而退出（kill 模式、双击 SIGINT 或 SIGTERM）。"""
        return self._force_exit

    async def start(self) -> None:
        """启动信号监听。

        必须在 asyncio 事件循环中调用。
        """
        if self._running:
            logger.warning("SignalManager already running")
            return

        self._loop = asyncio.get_running_loop()
        self._shutdown_event = asyncio.Event()
        self._running = True

        if sys.platform != "win32":
            self._loop.add_signal_handler(signal.SIGINT, self._handle_sigint)
            self._loop.add_signal_handler(signal.SIGTERM, self._handle_sigterm)
            logger.debug(
                f"Signal handlers installed (mode={self.sigint_mode.value}, "
                f"double_tap_window={self.double_tap_window}s)"
            )
        else:
            self._original_sigint_handler = signal.signal(
                signal.SIGINT,
                lambda sig, frame: self._loop.call_soon_threadsafe(self._handle_sigint),
            )
            logger.debug(
                f"SIGINT handler installed on Windows (mode={self.sigint_mode.value})"
            )

    async def stop(self) -> None:
        """停止信号监听，恢复原始信号处理器。"""
        if not self._running:
            return

        self._running = False

        if sys.platform != "win32" and self._loop:
            try:
                self._loop.remove_signal_handler(signal.SIGINT)
                self._loop.remove_signal_handler(signal.SIGTERM)
            except Exception as e:
                logger.debug(f"Error removing signal handlers: {e}")
        elif sys.platform == "win32" and self._original_sigint_handler is not None:
            try:
                signal.signal(signal.SIGINT, self._original_sigint_handler)
            except Exception as e:
                logger.debug(f"Error restoring SIGINT handler: {e}")

        logger.debug("Signal handlers removed")

    async def wait_for_shutdown(self) -> None:
        """等待关闭信号。"""
        if self._shutdown_event:
            await self._shutdown_event.wait()

    def _handle_sigint(self) -> None:
        """处理 SIGINT 信号。

        - 没有活动进程：请求关闭
        - KILL 模式：强制终止并请求关闭
        - QUIT 模式：发送退出信号，子进程自行结束
        - QUIT_THEN_KILL 模式：发送退出信号；双击窗口内再次 SIGINT 则强制终止
        """
        current_time = time.time()
        time_since_last = current_time - self._last_sigint_time
        self._last_sigint_time = current_time

        if not self.supervisor.is_running():
            logger.info("SIGINT received, no active process, requesting shutdown")
            self._request_shutdown()
            return

        if self.sigint_mode == SigintMode.KILL:
            logger.info("SIGINT received (mode=kill), killing active process")
            self._force_shutdown()
            return

        if (
            self.sigint_mode == SigintMode.QUIT_THEN_KILL
            and self._quit_sent
            and time_since_last < self.double_tap_window
        ):
            logger.warning("Double SIGINT detected, killing active process")
            self._force_shutdown()
            return

        try:
            self.supervisor.send_quit_signal()
        except NoActiveProcessError:
            # Finished between the check and the signal
            self._request_shutdown()
            return

        self._quit_sent = True
        if self.sigint_mode == SigintMode.QUIT_THEN_KILL:
            logger.info(
                f"SIGINT received (mode=quit_then_kill), quit signal sent. "
                f"Press Ctrl+C again within {self.double_tap_window}s to kill."
            )
        else:
            logger.info("SIGINT received (mode=quit), quit signal sent")

    def _handle_sigterm(self) -> None:
        """处理 SIGTERM 信号：强制终止子进程并请求关闭。"""
        logger.info("SIGTERM received, killing active process and shutting down")
        self._force_shutdown()

    def _request_shutdown(self) -> None:
        """请求关闭。"""
        self._shutdown_requested = True

        if self._on_shutdown:
            try:
                self._on_shutdown()
            except Exception as e:
                logger.warning(f"Error in shutdown callback: {e}")

        if self._shutdown_event and self._loop:
            self._loop.call_soon_threadsafe(self._shutdown_event.set)

    def _force_shutdown(self) -> None:
        """强制终止活动进程并请求关闭。"""
        self._force_exit = True
        if self.supervisor.kill():
            logger.info("Active process killed")
        self._request_shutdown()
