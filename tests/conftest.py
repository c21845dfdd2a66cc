"""Pytest 配置和 fixtures。"""

from __future__ import annotations

import sys
from pathlib import Path

import pytest
import pytest_asyncio

# 项目根目录
PROJECT_ROOT = Path(__file__).parent.parent

# 添加 src 目录到 Python 路径
SRC_DIR = PROJECT_ROOT / "src"
if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

from probe_supervisor.supervisor import ExecutionSupervisor  # noqa: E402

# 模拟探测二进制
FAKE_PROBE = PROJECT_ROOT / "tests" / "fixtures" / "fake_probe.py"

# 测试中使用的超时下限（秒），避免等待 10 秒默认下限
TEST_MIN_TIMEOUT = 0.5


def probe_command(*args: str) -> list[str]:
    """构建运行模拟探测二进制的命令。"""
    return [sys.executable, str(FAKE_PROBE), *args]


@pytest.fixture
def project_root() -> Path:
    """项目根目录。"""
    return PROJECT_ROOT


@pytest.fixture
def fake_probe() -> Path:
    """模拟探测二进制脚本路径。"""
    return FAKE_PROBE


@pytest_asyncio.fixture
async def supervisor():
    """使用较小超时下限的 supervisor，测试结束时终止残留进程。"""
    sup = ExecutionSupervisor(min_timeout=TEST_MIN_TIMEOUT, kill_timeout=2.0)
    yield sup
    await sup.aclose()
