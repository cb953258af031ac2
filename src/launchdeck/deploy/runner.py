"""External process runner.

Provider CLIs (``az``, ``gcloud``) are invoked through :class:`Runner`,
which pins the working directory to the project root so that relative
paths behave the same no matter where ``launchdeck`` was started from.
"""

from __future__ import annotations

import shlex
import subprocess  # nosec B404
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path

from launchdeck.lib.errors import CommandError
from launchdeck.lib.logging_config import get_logger

logger = get_logger(__name__)

PROJECT_MARKERS = ("pyproject.toml", "build.gradle", "settings.gradle", ".git")


def find_project_root(start: str | Path | None = None) -> Path:
    """Walk upward from start looking for a project marker.

    Args:
        start: Directory (or file) to start from, defaults to the cwd

    Returns:
        The first directory containing a project marker, or the starting
        directory when none is found
    """
    current = Path(start).resolve() if start else Path.cwd()
    if current.is_file():
        current = current.parent

    for candidate in (current, *current.parents):
        if any((candidate / marker).exists() for marker in PROJECT_MARKERS):
            return candidate

    return current


@dataclass
class CommandResult:
    """Outcome of an external command.

    Attributes:
        args: Executed argument vector
        returncode: Process exit status
        stdout: Captured standard output (empty when streamed)
    """

    args: list[str]
    returncode: int
    stdout: str = ""


class Runner:
    """Run external commands from the project root."""

    def __init__(self, project_root: str | Path | None = None) -> None:
        self.project_root = Path(project_root) if project_root else find_project_root()

    def run(
        self,
        args: Sequence[str],
        *,
        capture: bool = False,
        check: bool = True,
    ) -> CommandResult:
        """Execute a command.

        Args:
            args: Command and arguments
            capture: Capture stdout/stderr instead of streaming to the terminal
            check: Raise CommandError on a non-zero exit status

        Returns:
            CommandResult with the exit status and captured output

        Raises:
            CommandError: If the executable is missing, or the command fails
                and check is True
        """
        argv = [str(a) for a in args]
        command = shlex.join(argv)
        logger.debug(f"Running: {command} (cwd={self.project_root})")

        try:
            completed = subprocess.run(  # noqa: S603  # nosec B603
                argv,
                cwd=self.project_root,
                capture_output=capture,
                text=True,
            )
        except FileNotFoundError as e:
            raise CommandError(command, 127, f"Executable not found: {argv[0]}") from e

        stdout = (completed.stdout or "") if capture else ""
        if check and completed.returncode != 0:
            output = (completed.stderr or completed.stdout or "") if capture else ""
            raise CommandError(command, completed.returncode, output)

        return CommandResult(args=argv, returncode=completed.returncode, stdout=stdout)

    def output(self, args: Sequence[str]) -> str:
        """Run a command and return its stripped standard output."""
        return self.run(args, capture=True).stdout.strip()
