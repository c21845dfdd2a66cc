"""probe-supervisor - 单实例外部探测进程的生命周期管理。

环境变量:
    PROBE_BINARY: 探测二进制路径（默认在 PATH 中查找 ffprobe）
    PROBE_TIMEOUT: 默认超时时间（秒，>= 10）
    PROBE_QUIT_MODE: 优雅退出方式 (signal/stdin)

用法:
    probe-supervisor -- -v quiet -show_format file.mp4
"""

__version__ = "0.1.0"

from .binary import ProbeBinary, ResponseHandler
from .errors import (
    AlreadyRunningError,
    InvalidArgumentError,
    NoActiveProcessError,
    SupervisorError,
)
from .observer import ObserverHandle, ReadinessObserver
from .provisioner import BinaryProvisioner, LocalBinaryProvisioner
from .runtime import Command, ProcessHandle, ProcessResult, ProcessState
from .supervisor import ExecutionSupervisor

__all__ = [
    "__version__",
    "AlreadyRunningError",
    "BinaryProvisioner",
    "Command",
    "ExecutionSupervisor",
    "InvalidArgumentError",
    "LocalBinaryProvisioner",
    "NoActiveProcessError",
    "ObserverHandle",
    "ProbeBinary",
    "ProcessHandle",
    "ProcessResult",
    "ProcessState",
    "ReadinessObserver",
    "ResponseHandler",
    "SupervisorError",
]
