"""
Runner base — the contract between services and the host.

Services never call ``subprocess`` themselves. They hand a command
to a ``CommandRunner`` and inspect the ``CommandResult`` it returns.
Swapping the runner (see ``nodeprov.adapters.mock``) is how the whole
pipeline is exercised without touching a real node.
"""

from __future__ import annotations

from abc import ABC, abstractmethod

from pydantic import BaseModel, Field


class CommandResult(BaseModel):
    """Outcome of one command invocation.

    Runners NEVER raise for a failing command. A non-zero exit, a
    timeout or a missing executable is captured here and classified
    by the calling service.
    """

    command: list[str] = Field(default_factory=list)
    returncode: int = 0
    stdout: str = ""
    stderr: str = ""
    elapsed_ms: int = 0
    timed_out: bool = False
    error: str | None = None   # set when the process could not be run to completion

    @property
    def ok(self) -> bool:
        """Whether the command ran and exited 0."""
        return self.returncode == 0 and self.error is None

    @property
    def output(self) -> str:
        """Combined stdout and stderr (some tools print versions to stderr)."""
        return (self.stdout or "") + (self.stderr or "")

    def summary(self) -> str:
        """One-line description of a failure for diagnostics."""
        if self.error:
            return self.error
        for stream in (self.stderr, self.stdout):
            lines = [ln.strip() for ln in (stream or "").splitlines() if ln.strip()]
            if lines:
                return lines[-1]
        return f"exit {self.returncode}"

    @classmethod
    def success(cls, command: list[str], stdout: str = "", **kwargs) -> CommandResult:
        return cls(command=list(command), returncode=0, stdout=stdout, **kwargs)

    @classmethod
    def failure(
        cls,
        command: list[str],
        stderr: str = "",
        returncode: int = 1,
        **kwargs,
    ) -> CommandResult:
        return cls(command=list(command), returncode=returncode, stderr=stderr, **kwargs)


class CommandRunner(ABC):
    """Abstract base class for command runners.

    To create a new runner:
        1. Subclass CommandRunner
        2. Implement name and run
    """

    @property
    @abstractmethod
    def name(self) -> str:
        """The runner identifier (e.g., 'subprocess', 'mock')."""

    @abstractmethod
    def run(
        self,
        command: list[str],
        *,
        timeout: float = 120,
        cwd: str | None = None,
        env: dict[str, str] | None = None,
    ) -> CommandResult:
        """Run ``command`` and return its result.

        MUST never raise for command failures.

        Args:
            command: Argument vector; never passed through a shell.
            timeout: Seconds before the command is killed.
            cwd: Working directory.
            env: Extra environment variables merged over the current one.
        """

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} name={self.name!r}>"
