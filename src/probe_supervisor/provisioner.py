"""Binary provisioning collaborator.

The supervisor trusts whatever path a provisioner reports. This module
defines the interface and a local-filesystem implementation that resolves
the binary from an explicit path or from PATH and makes sure it carries the
executable bit.
"""

from __future__ import annotations

import logging
import os
import shutil
import stat
from pathlib import Path
from typing import Protocol, runtime_checkable

from .config import Config, get_config

__all__ = ["BinaryProvisioner", "LocalBinaryProvisioner"]

logger = logging.getLogger(__name__)


@runtime_checkable
class BinaryProvisioner(Protocol):
    """Reports whether an executable binary is available and where."""

    @property
    def binary_path(self) -> Path: ...

    def is_ready(self) -> bool: ...


class LocalBinaryProvisioner:
    """Provisioner backed by a file on the local filesystem.

    Attributes:
        name: Name looked up on PATH when no explicit path is given
        make_executable: Try to add the executable bit when it is missing
    """

    def __init__(
        self,
        path: str | os.PathLike[str] | None = None,
        name: str = "ffprobe",
        make_executable: bool = True,
    ) -> None:
        self._explicit_path = Path(path) if path is not None else None
        self.name = name
        self.make_executable = make_executable

    @classmethod
    def from_config(cls, config: Config | None = None) -> "LocalBinaryProvisioner":
        config = config or get_config()
        return cls(path=config.binary_path, name=config.binary_name)

    def __repr__(self) -> str:
        return f"LocalBinaryProvisioner(path={self.binary_path})"

    @property
    def binary_path(self) -> Path:
        """Absolute path of the binary (may not exist)."""
        if self._explicit_path is not None:
            return self._explicit_path.expanduser().absolute()
        found = shutil.which(self.name)
        if found is not None:
            return Path(found).absolute()
        return Path(self.name).absolute()

    def is_ready(self) -> bool:
        """Check that the binary exists and can be executed."""
        path = self.binary_path

        if not path.is_file():
            logger.error(f"{self.name} binary not found at {path}")
            return False

        if os.access(path, os.X_OK):
            logger.debug(f"{self.name} is ready: {path}")
            return True

        if not self.make_executable:
            logger.error(f"{path} is not executable")
            return False

        logger.debug(f"{path} is not executable, trying to make it executable...")
        try:
            mode = path.stat().st_mode
            path.chmod(mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
        except OSError as e:
            logger.error(f"Unable to make {path} executable: {e}")
            return False

        if not os.access(path, os.X_OK):
            logger.error(f"Unable to make {path} executable")
            return False

        logger.debug(f"{self.name} is ready: {path}")
        return True
