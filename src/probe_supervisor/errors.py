"""Supervisor 异常类。

只有调用方的前置条件错误会同步抛出；子进程启动后的失败（启动失败、
异常退出、超时、被 kill）一律通过 ProcessResult 的终止状态返回。
"""

from __future__ import annotations

__all__ = [
    "SupervisorError",
    "AlreadyRunningError",
    "InvalidArgumentError",
    "NoActiveProcessError",
]


class SupervisorError(Exception):
    """Supervisor 基础异常。"""
    pass


class AlreadyRunningError(SupervisorError):
    """已有命令在运行时再次调用 execute()。

    调用方可以先 kill() 或等待空闲后重试。
    """

    def __init__(self, pid: int | None = None) -> None:
        self.pid = pid
        message = "a command is already running, only one command may run at a time"
        if pid is not None:
            message = f"{message} (pid={pid})"
        super().__init__(message)


class InvalidArgumentError(SupervisorError, ValueError):
    """命令为空等参数错误。"""
    pass


class NoActiveProcessError(SupervisorError):
    """没有活动进程时调用 send_quit_signal()。"""

    def __init__(self) -> None:
        super().__init__("no active process to send a quit signal to")
