"""
External editor launcher.

Opens a file in the user's editor and blocks until the editor exits.
"""

from __future__ import annotations

import shlex
import subprocess
from pathlib import Path

from loguru import logger

from .errors import ConfigError, IOFailure


class EditorLauncher:
    """Runs `editor_command <file>` and waits for it."""

    def __init__(self, editor_command: str):
        self.editor_command = editor_command

    def command_for(self, path: Path, editor_command: str | None = None) -> list[str]:
        """Argument vector for opening `path` (editor_command overrides the default)."""
        command = editor_command or self.editor_command
        try:
            args = shlex.split(command)
        except ValueError as exc:
            raise ConfigError(f"Cannot parse editor command {command!r}: {exc}") from exc
        if not args:
            raise IOFailure("Editor command is empty")
        return [*args, str(path)]

    def open(self, path: Path, editor_command: str | None = None) -> None:
        """
        Open `path` in the editor and block until it exits.

        Args:
            path: File to open
            editor_command: One-off override of the configured command

        Raises:
            IOFailure: if the editor cannot be started or exits non-zero
        """
        argv = self.command_for(path, editor_command)
        logger.debug(f"Launching editor: {argv}")
        try:
            result = subprocess.run(argv, check=False)
        except OSError as exc:
            raise IOFailure(f"Could not start editor '{argv[0]}': {exc}") from exc

        if result.returncode != 0:
            raise IOFailure(f"Editor '{argv[0]}' exited with status {result.returncode}")
