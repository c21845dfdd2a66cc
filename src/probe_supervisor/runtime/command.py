"""Immutable command description passed to the supervisor."""

from __future__ import annotations

import os
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from types import MappingProxyType

from ..errors import InvalidArgumentError

__all__ = ["Command"]


@dataclass(frozen=True)
class Command:
    """A command to run under supervision.

    Attributes:
        argv: Executable path followed by its arguments
        env: Environment overlay applied on top of the inherited environment
        cwd: Working directory (None = inherit)
    """

    argv: tuple[str, ...]
    env: Mapping[str, str] | None = None
    cwd: Path | None = None

    @classmethod
    def of(
        cls,
        argv: Sequence[str] | "Command",
        env: Mapping[str, str] | None = None,
        cwd: str | Path | None = None,
    ) -> "Command":
        """Build a Command from any sequence of strings.

        Raises:
            InvalidArgumentError: If argv is empty or is a bare string
        """
        if isinstance(argv, Command):
            return argv
        if isinstance(argv, (str, bytes)):
            raise InvalidArgumentError("command must be a sequence of arguments, not a string")
        args = tuple(str(arg) for arg in argv)
        if not args:
            raise InvalidArgumentError("shell command cannot be empty")
        overlay = MappingProxyType(dict(env)) if env else None
        return cls(
            argv=args,
            env=overlay,
            cwd=Path(cwd) if cwd is not None else None,
        )

    @property
    def executable(self) -> str:
        return self.argv[0]

    def build_env(self) -> dict[str, str] | None:
        """Merge the overlay into the current environment.

        Returns:
            None when there is no overlay, so the child inherits as-is
        """
        if not self.env:
            return None
        merged = os.environ.copy()
        merged.update(self.env)
        return merged

    def __len__(self) -> int:
        return len(self.argv)

    def __str__(self) -> str:
        return " ".join(self.argv)
