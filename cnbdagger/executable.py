"""
Invocation of external programs (container runtime, pack).

Every pipeline stage is one synchronous process. The exit code is the only
success signal; stdout and stderr are captured, logged for diagnosis and
attached to the raised error on failure. Nothing is retried.
"""

from __future__ import annotations

import logging
import os
import subprocess
from dataclasses import dataclass
from typing import Dict, List, Mapping, Optional, Protocol, Union

from cnbdagger.exceptions import ExternalProcessError

logger = logging.getLogger(__name__)

PathLike = Union[str, "os.PathLike[str]"]


@dataclass
class CommandResult:
    """Outcome of one external program invocation."""

    args: List[str]
    exit_code: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.exit_code == 0

    @property
    def output(self) -> str:
        """Combined stdout and stderr, stdout first."""
        parts = [p.rstrip("\n") for p in (self.stdout, self.stderr) if p]
        return "\n".join(parts)


class Runner(Protocol):
    """Anything that can run a program; Executable or a test fake."""

    name: str

    def execute(
        self,
        *args: str,
        cwd: Optional[PathLike] = None,
        env: Optional[Mapping[str, str]] = None,
        check: bool = True,
    ) -> CommandResult:
        ...


class Executable:
    """
    A named external program.

    Usage:
        docker = Executable("docker")
        result = docker.execute("ps", "-q")
        print(result.stdout)

    Environment passed via env is merged over the inherited environment.
    """

    def __init__(self, name: str, log: Optional[logging.Logger] = None) -> None:
        self.name = name
        self._log = log or logger

    def execute(
        self,
        *args: str,
        cwd: Optional[PathLike] = None,
        env: Optional[Mapping[str, str]] = None,
        check: bool = True,
    ) -> CommandResult:
        """
        Run the program to completion.

        Args:
            *args: Arguments after the program name
            cwd: Working directory for the process
            env: Extra environment variables
            check: Raise on nonzero exit

        Returns:
            CommandResult with captured output

        Raises:
            ExternalProcessError: If the program cannot be started, or exits
                nonzero while check is True.
        """
        argv = [self.name, *[str(a) for a in args]]
        full_env: Optional[Dict[str, str]] = None
        if env:
            full_env = dict(os.environ)
            full_env.update(env)

        self._log.debug("Running %s", " ".join(argv))
        try:
            proc = subprocess.run(
                argv,
                cwd=cwd,
                env=full_env,
                capture_output=True,
                text=True,
            )
        except OSError as exc:
            raise ExternalProcessError(
                f"could not run {self.name}: {exc}",
                command=argv,
            ) from exc

        result = CommandResult(
            args=argv,
            exit_code=proc.returncode,
            stdout=proc.stdout or "",
            stderr=proc.stderr or "",
        )
        if result.output:
            self._log.debug("%s output:\n%s", self.name, result.output)

        if check and not result.ok:
            raise ExternalProcessError(
                f"{' '.join(argv[:2])} exited with status {result.exit_code}",
                command=argv,
                exit_code=result.exit_code,
                stdout=result.stdout,
                stderr=result.stderr,
            )
        return result

    def __repr__(self) -> str:
        return f"Executable({self.name!r})"
