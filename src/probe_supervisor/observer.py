"""就绪观察模块。

提供一次性的就绪等待注册，包括：
- StateNotifier: 状态变化监听器的登记和通知
- ReadinessObserver: 在条件满足时调用一次回调，或在超时后放弃
- ObserverHandle: 可提前取消的注册句柄

与 execute() 绑定的 on_complete 不同，观察者允许与命令无关的调用方等待
supervisor 空闲。挂接 StateNotifier 时由状态变化事件驱动，不做忙轮询；
没有通知源时退化为固定间隔轮询。
"""

from __future__ import annotations

import asyncio
import logging
import threading
from typing import Callable, Optional

import anyio

__all__ = [
    "StateNotifier",
    "ReadinessObserver",
    "ObserverHandle",
    "DEFAULT_POLL_INTERVAL",
]

logger = logging.getLogger(__name__)

# 没有通知源时的轮询间隔（秒）
DEFAULT_POLL_INTERVAL = 0.1

StateListener = Callable[[], None]


class StateNotifier:
    """状态变化监听器注册表。

    线程安全：监听器列表受锁保护，通知时复制后在锁外调用。
    监听器中的异常被记录并忽略，不影响通知方。
    """

    def __init__(self) -> None:
        self._listeners: list[StateListener] = []
        self._listeners_lock = threading.Lock()

    def add_state_listener(self, listener: StateListener) -> None:
        """添加状态变化监听器。

        Args:
            listener: 无参数的回调函数
        """
        with self._listeners_lock:
            self._listeners.append(listener)

    def remove_state_listener(self, listener: StateListener) -> None:
        """移除状态变化监听器（不存在时忽略）。"""
        with self._listeners_lock:
            if listener in self._listeners:
                self._listeners.remove(listener)

    @property
    def listener_count(self) -> int:
        with self._listeners_lock:
            return len(self._listeners)

    def _notify_state_listeners(self) -> None:
        with self._listeners_lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener()
            except Exception as e:
                logger.warning(f"Error in state listener: {e}")


class ObserverHandle:
    """一次就绪注册的句柄。

    Attributes:
        fired: on_ready 是否已被调用
        timed_out: 是否因超时而结束
        cancelled: 是否被提前取消
    """

    def __init__(self, loop: asyncio.AbstractEventLoop) -> None:
        self._loop = loop
        self._task: Optional[asyncio.Task[None]] = None
        self._finished = asyncio.Event()
        self.fired = False
        self.timed_out = False
        self.cancelled = False

    def __repr__(self) -> str:
        if self.fired:
            status = "fired"
        elif self.timed_out:
            status = "timed_out"
        elif self.cancelled:
            status = "cancelled"
        else:
            status = "pending"
        return f"ObserverHandle(status={status})"

    def done(self) -> bool:
        """注册是否已结束（触发、超时或取消）。"""
        return self._finished.is_set()

    def cancel(self) -> bool:
        """提前取消注册。

        可以从任意线程调用。注册已结束时为空操作。

        Returns:
            是否发起了取消
        """
        # 任务已结束但 retire 回调尚未执行时同样视为已结束
        if self.done() or self._task is None or self._task.done():
            return False
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is self._loop:
            self._task.cancel()
        else:
            self._loop.call_soon_threadsafe(self._task.cancel)
        return True

    async def wait(self) -> bool:
        """等待注册结束。

        Returns:
            on_ready 是否被调用
        """
        await self._finished.wait()
        return self.fired


class ReadinessObserver:
    """一次性就绪观察者。

    Example:
        ```python
        observer = ReadinessObserver(supervisor)
        handle = observer.observe_once(
            lambda: not supervisor.is_running(),
            on_ready=start_next_probe,
            timeout_ms=5000,
        )
        ...
        handle.cancel()  # 不再需要时
        ```
    """

    def __init__(
        self,
        notifier: Optional[StateNotifier] = None,
        poll_interval: Optional[float] = None,
    ) -> None:
        """初始化观察者。

        Args:
            notifier: 状态通知源（None 表示只能轮询）
            poll_interval: 轮询间隔（秒）；有通知源时默认不轮询
        """
        self.notifier = notifier
        if poll_interval is None and notifier is None:
            poll_interval = DEFAULT_POLL_INTERVAL
        self.poll_interval = poll_interval

    def observe_once(
        self,
        predicate: Callable[[], bool],
        on_ready: Callable[[], None],
        timeout_ms: float,
    ) -> ObserverHandle:
        """登记一次就绪检查。

        必须在 asyncio 事件循环中调用。条件首次为真时调用一次 on_ready
        并结束注册；timeout_ms 先到期则结束注册且不调用 on_ready。

        Args:
            predicate: 就绪条件
            on_ready: 就绪回调
            timeout_ms: 观察超时（毫秒）

        Returns:
            可取消的注册句柄
        """
        if timeout_ms < 0:
            raise ValueError(f"timeout_ms must be >= 0, got {timeout_ms}")

        loop = asyncio.get_running_loop()
        handle = ObserverHandle(loop)
        wakeup = asyncio.Event()

        def on_state_change() -> None:
            if not loop.is_closed():
                loop.call_soon_threadsafe(wakeup.set)

        if self.notifier is not None:
            self.notifier.add_state_listener(on_state_change)

        task = loop.create_task(
            self._watch(handle, predicate, on_ready, timeout_ms / 1000.0, wakeup)
        )
        handle._task = task

        def retire(_: asyncio.Task[None]) -> None:
            # Runs even when the task is cancelled before its first step
            if self.notifier is not None:
                self.notifier.remove_state_listener(on_state_change)
            if task.cancelled():
                handle.cancelled = True
                logger.debug("Readiness observation cancelled")
            handle._finished.set()

        task.add_done_callback(retire)
        return handle

    async def _watch(
        self,
        handle: ObserverHandle,
        predicate: Callable[[], bool],
        on_ready: Callable[[], None],
        timeout: float,
        wakeup: asyncio.Event,
    ) -> None:
        try:
            with anyio.move_on_after(timeout) as scope:
                while True:
                    # Clear before checking so a change during the check is not lost
                    wakeup.clear()
                    if predicate():
                        handle.fired = True
                        break
                    if self.poll_interval is None:
                        await wakeup.wait()
                    else:
                        with anyio.move_on_after(self.poll_interval):
                            await wakeup.wait()
        except Exception as e:
            logger.warning(f"Readiness predicate failed, retiring registration: {e}")
            return

        if scope.cancelled_caught and not handle.fired:
            handle.timed_out = True
            logger.debug(f"Readiness observation timed out after {timeout}s")
            return

        logger.debug("Readiness condition met, invoking on_ready")
        try:
            on_ready()
        except Exception as e:
            logger.warning(f"Error in on_ready callback: {e}")
