"""PROBE 环境变量配置管理。

环境变量:
    PROBE_BINARY: 探测二进制的绝对路径
        - 未设置时按 PROBE_BINARY_NAME 在 PATH 中查找

    PROBE_BINARY_NAME: 在 PATH 中查找的二进制名称
        - 默认 ffprobe

    PROBE_TIMEOUT: 默认超时时间（秒）
        - 未设置/无效 = 不限制
        - 小于 10 秒的值被忽略（保留不限制）

    PROBE_QUIT_MODE: 优雅退出的方式
        - signal = 向进程组发送中断信号 (默认)
        - stdin = 向子进程 stdin 写入 "q\\n"（ffmpeg 系列的交互退出键）

    PROBE_KILL_TIMEOUT: 强制 kill 后等待进程回收的时间（秒）
        - 默认 1.0 秒，限制在 0.1-10 秒

    PROBE_LOG_DEBUG: 日志调试模式
        - true/1/yes = 开启 (日志输出到临时文件)
        - false/0/no = 关闭 (默认，日志输出到 stderr)

    PROBE_SIGINT_MODE: SIGINT (Ctrl+C) 处理模式
        - quit = 向子进程发送退出信号（无活动进程则退出）(默认)
        - kill = 直接强制终止子进程
        - quit_then_kill = 先发送退出信号，第二次才强制终止

    PROBE_SIGINT_DOUBLE_TAP_WINDOW: 双击强制终止窗口时间（秒）
        - 默认 1.0 秒
"""

from __future__ import annotations

import math
import os
import tempfile
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from pathlib import Path

__all__ = [
    "Config",
    "QuitMode",
    "SigintMode",
    "MINIMUM_TIMEOUT",
    "load_config",
    "get_config",
    "reload_config",
]

# 超时下限（秒），防止过小的超时在慢设备上饿死子进程
MINIMUM_TIMEOUT = 10.0

DEFAULT_BINARY_NAME = "ffprobe"
DEFAULT_KILL_TIMEOUT = 1.0  # seconds to wait after SIGKILL


class QuitMode(Enum):
    """优雅退出方式。

    - SIGNAL: 向进程组发送 SIGINT (Windows: CTRL_BREAK_EVENT)
    - STDIN: 向 stdin 写入退出命令
    """

    SIGNAL = "signal"
    STDIN = "stdin"

    @classmethod
    def from_string(cls, value: str) -> "QuitMode":
        """从字符串解析模式，无效值返回 SIGNAL。"""
        value = value.lower().strip()
        for mode in cls:
            if mode.value == value:
                return mode
        return cls.SIGNAL


class SigintMode(Enum):
    """SIGINT 处理模式。

    - QUIT: 向活动进程发送退出信号（没有活动进程则退出）
    - KILL: 强制终止活动进程并退出
    - QUIT_THEN_KILL: 先发送退出信号，双击窗口内第二次 SIGINT 强制终止
    """

    QUIT = "quit"
    KILL = "kill"
    QUIT_THEN_KILL = "quit_then_kill"

    @classmethod
    def from_string(cls, value: str) -> "SigintMode":
        """从字符串解析模式。

        Args:
            value: 模式字符串 (quit/kill/quit_then_kill)

        Returns:
            对应的 SigintMode 枚举值，无效值返回 QUIT
        """
        value = value.lower().strip()
        for mode in cls:
            if mode.value == value:
                return mode
        return cls.QUIT  # 默认值


def _parse_bool(value: str | None, default: bool = False) -> bool:
    """解析布尔值环境变量。"""
    if value is None:
        return default
    return value.lower() in ("true", "1", "yes", "on")


def _parse_timeout(value: str | None) -> float:
    """解析默认超时时间。

    小于下限的值被忽略，与 ExecutionSupervisor.set_timeout() 的行为一致。
    """
    if not value:
        return math.inf
    try:
        timeout = float(value)
    except ValueError:
        return math.inf
    if timeout < MINIMUM_TIMEOUT:
        return math.inf
    return timeout


def _parse_kill_timeout(value: str | None) -> float:
    """解析 kill 等待时间环境变量。"""
    if not value:
        return DEFAULT_KILL_TIMEOUT
    try:
        timeout = float(value)
        return max(0.1, min(timeout, 10.0))  # 限制在 0.1-10 秒范围
    except ValueError:
        return DEFAULT_KILL_TIMEOUT


def _parse_double_tap_window(value: str | None) -> float:
    """解析双击窗口时间环境变量。"""
    if not value:
        return 1.0
    try:
        window = float(value)
        return max(0.1, min(window, 10.0))
    except ValueError:
        return 1.0


@dataclass
class Config:
    """PROBE 配置。

    Attributes:
        binary_path: 探测二进制路径（None 表示在 PATH 中查找）
        binary_name: PATH 中查找的名称
        timeout: 默认超时时间（秒），math.inf 表示不限制
        quit_mode: 优雅退出方式
        kill_timeout: kill 后等待回收的时间（秒）
        log_debug: 日志调试模式（输出到临时文件）
        log_file: 日志文件路径（当 log_debug=True 时自动设置）
        sigint_mode: SIGINT 处理模式
        sigint_double_tap_window: 双击强制终止窗口时间（秒）
    """

    binary_path: str | None = None
    binary_name: str = DEFAULT_BINARY_NAME
    timeout: float = math.inf
    quit_mode: QuitMode = QuitMode.SIGNAL
    kill_timeout: float = DEFAULT_KILL_TIMEOUT
    log_debug: bool = False
    log_file: str | None = None
    sigint_mode: SigintMode = SigintMode.QUIT
    sigint_double_tap_window: float = 1.0

    @property
    def has_timeout(self) -> bool:
        """是否配置了有限的超时。"""
        return not math.isinf(self.timeout)

    def __repr__(self) -> str:
        timeout_str = f"{self.timeout}s" if self.has_timeout else "unbounded"
        return (
            f"Config(binary_path={self.binary_path or '<PATH:' + self.binary_name + '>'}, "
            f"timeout={timeout_str}, "
            f"quit_mode={self.quit_mode.value}, "
            f"kill_timeout={self.kill_timeout}, "
            f"log_debug={self.log_debug}, "
            f"log_file={self.log_file}, "
            f"sigint_mode={self.sigint_mode.value}, "
            f"sigint_double_tap_window={self.sigint_double_tap_window})"
        )


def _generate_log_file_path() -> str:
    """生成日志文件路径。

    Returns:
        临时目录下的日志文件绝对路径
    """
    log_dir = Path(tempfile.gettempdir()) / "probe-supervisor"
    log_dir.mkdir(parents=True, exist_ok=True)

    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    log_file = log_dir / f"probe_debug_{timestamp}.log"

    return str(log_file.resolve())


def load_config() -> Config:
    """从环境变量加载配置。"""
    log_debug = _parse_bool(os.environ.get("PROBE_LOG_DEBUG"), default=False)
    log_file = _generate_log_file_path() if log_debug else None

    return Config(
        binary_path=os.environ.get("PROBE_BINARY") or None,
        binary_name=(os.environ.get("PROBE_BINARY_NAME") or DEFAULT_BINARY_NAME).strip(),
        timeout=_parse_timeout(os.environ.get("PROBE_TIMEOUT")),
        quit_mode=QuitMode.from_string(os.environ.get("PROBE_QUIT_MODE") or ""),
        kill_timeout=_parse_kill_timeout(os.environ.get("PROBE_KILL_TIMEOUT")),
        log_debug=log_debug,
        log_file=log_file,
        sigint_mode=SigintMode.from_string(os.environ.get("PROBE_SIGINT_MODE") or ""),
        sigint_double_tap_window=_parse_double_tap_window(
            os.environ.get("PROBE_SIGINT_DOUBLE_TAP_WINDOW")
        ),
    )


# 全局配置实例（延迟加载）
_config: Config | None = None


def get_config() -> Config:
    """获取全局配置实例。"""
    global _config
    if _config is None:
        _config = load_config()
    return _config


def reload_config() -> Config:
    """重新加载配置（用于测试）。"""
    global _config
    _config = load_config()
    return _config
