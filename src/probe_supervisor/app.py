"""probe-supervisor 命令行入口。

用法:
    probe-supervisor [--binary PATH] [--timeout SEC] [--env K=V] -- ARGS...

运行一次探测命令，逐行输出子进程的合并输出，并以子进程的退出码退出。
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from dataclasses import replace

from .binary import ProbeBinary
from .config import Config, get_config
from .errors import SupervisorError
from .provisioner import LocalBinaryProvisioner
from .runtime.handle import ProcessResult, ProcessState
from .signal_manager import SignalManager
from .supervisor import ExecutionSupervisor

__all__ = ["run_probe", "main", "exit_code_for"]

logger = logging.getLogger(__name__)

# 退出码约定（与 coreutils timeout / shell 一致）
EXIT_NOT_READY = 127
EXIT_TIMED_OUT = 124
EXIT_KILLED = 130


def exit_code_for(result: ProcessResult) -> int:
    """将终止状态映射为 CLI 退出码。"""
    if result.state is ProcessState.TIMED_OUT:
        return EXIT_TIMED_OUT
    if result.state is ProcessState.KILLED:
        return EXIT_KILLED
    if result.exit_code is None:
        # 启动失败
        return EXIT_NOT_READY
    if result.exit_code < 0:
        # 被信号终止：128 + 信号编号
        return 128 - result.exit_code
    return result.exit_code


def _parse_env(pairs: list[str]) -> dict[str, str]:
    env: dict[str, str] = {}
    for pair in pairs:
        key, sep, value = pair.partition("=")
        if not sep or not key:
            raise argparse.ArgumentTypeError(f"invalid --env value {pair!r}, expected KEY=VALUE")
        env[key] = value
    return env


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="probe-supervisor",
        description="Run a media probe binary under a single-flight supervisor.",
    )
    parser.add_argument("--binary", type=str, default=None, help="Path to the probe binary")
    parser.add_argument("--timeout", type=float, default=None, help="Timeout in seconds (>= 10)")
    parser.add_argument(
        "--env",
        action="append",
        default=[],
        metavar="KEY=VALUE",
        help="Environment overlay for the child (repeatable)",
    )
    parser.add_argument("args", nargs=argparse.REMAINDER, help="Arguments passed to the binary")
    return parser


async def run_probe(
    args: list[str],
    config: Config,
    env: dict[str, str] | None = None,
    timeout: float | None = None,
) -> int:
    """运行一次探测命令。

    Returns:
        CLI 退出码
    """
    provisioner = LocalBinaryProvisioner.from_config(config)
    supervisor = ExecutionSupervisor.from_config(config)
    probe = ProbeBinary(provisioner, supervisor)

    if not probe.is_supported():
        logger.error(f"Probe binary is not available: {provisioner.binary_path}")
        return EXIT_NOT_READY

    signal_manager = SignalManager(supervisor)
    await signal_manager.start()
    try:
        handle = probe.execute(
            args,
            on_output_line=lambda line: print(line, flush=True),
            env=env,
            timeout=timeout,
        )
        result = await handle.wait()
        logger.info(f"Probe finished: {result.to_dict()}")
        return exit_code_for(result)
    finally:
        await supervisor.aclose()
        await signal_manager.stop()


def _configure_logging(config: Config) -> None:
    log_handlers: list[logging.Handler] = []

    if config.log_debug and config.log_file:
        # LOG_DEBUG 模式：输出到临时文件
        file_handler = logging.FileHandler(config.log_file, encoding="utf-8")
        file_handler.setFormatter(
            logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s")
        )
        log_handlers.append(file_handler)
        log_level = logging.DEBUG
    else:
        # 默认模式：输出到 stderr，避免与子进程输出混在 stdout
        stderr_handler = logging.StreamHandler(sys.stderr)
        stderr_handler.setFormatter(
            logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s")
        )
        log_handlers.append(stderr_handler)
        log_level = logging.WARNING

    logging.basicConfig(level=logging.WARNING, handlers=log_handlers)
    logging.getLogger("probe_supervisor").setLevel(log_level)


def main(argv: list[str] | None = None) -> int:
    """主入口点。"""
    parser = build_parser()
    ns = parser.parse_args(argv)

    probe_args = list(ns.args)
    if probe_args and probe_args[0] == "--":
        probe_args = probe_args[1:]
    if not probe_args:
        parser.error("no arguments given for the probe binary")

    try:
        env = _parse_env(ns.env)
    except argparse.ArgumentTypeError as e:
        parser.error(str(e))

    config = get_config()
    if ns.binary:
        config = replace(config, binary_path=ns.binary)

    _configure_logging(config)
    logger.debug(f"Starting probe-supervisor: {config}")

    try:
        return asyncio.run(run_probe(probe_args, config, env=env or None, timeout=ns.timeout))
    except SupervisorError as e:
        logger.error(f"{type(e).__name__}: {e}")
        return 2


if __name__ == "__main__":
    sys.exit(main())
