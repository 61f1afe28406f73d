"""
Mock runner — universal test double for command execution.

Returns success for every command unless told otherwise. Responses
can be scripted per command prefix, or computed by handler callables
that simulate a live node.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field

from nodeprov.adapters.base import CommandResult, CommandRunner

Handler = Callable[[list[str], dict], CommandResult | None]


@dataclass
class RecordedCall:
    """One invocation seen by the mock."""

    command: list[str]
    cwd: str | None = None
    env: dict[str, str] = field(default_factory=dict)


class MockRunner(CommandRunner):
    """Scriptable command runner for tests.

    Resolution order for each command:
        1. the longest matching prefix registered with ``set_response``
        2. handlers added with ``add_handler`` (first non-None wins)
        3. a default success with ``default_output``
    """

    def __init__(self, default_output: str = ""):
        self._default_output = default_output
        self._responses: dict[tuple[str, ...], CommandResult] = {}
        self._handlers: list[Handler] = []
        self._call_log: list[RecordedCall] = []

    @property
    def name(self) -> str:
        return "mock"

    @property
    def call_log(self) -> list[RecordedCall]:
        """All calls this mock has received."""
        return self._call_log

    @property
    def call_count(self) -> int:
        return len(self._call_log)

    def set_response(self, prefix: list[str], result: CommandResult) -> None:
        """Return ``result`` for every command starting with ``prefix``."""
        self._responses[tuple(prefix)] = result

    def set_failure(
        self,
        prefix: list[str],
        stderr: str = "Mock failure",
        returncode: int = 1,
    ) -> None:
        """Configure commands starting with ``prefix`` to fail."""
        self._responses[tuple(prefix)] = CommandResult.failure(
            list(prefix), stderr=stderr, returncode=returncode,
        )

    def add_handler(self, handler: Handler) -> None:
        self._handlers.append(handler)

    def calls_matching(self, *prefix: str) -> list[RecordedCall]:
        """Recorded calls whose command starts with ``prefix``."""
        n = len(prefix)
        return [c for c in self._call_log if tuple(c.command[:n]) == prefix]

    def run(
        self,
        command: list[str],
        *,
        timeout: float = 120,
        cwd: str | None = None,
        env: dict[str, str] | None = None,
    ) -> CommandResult:
        self._call_log.append(
            RecordedCall(
                command=list(command),
                cwd=cwd,
                env=dict(env or {}),
            )
        )

        for size in range(len(command), 0, -1):
            scripted = self._responses.get(tuple(command[:size]))
            if scripted is not None:
                return scripted.model_copy(update={"command": list(command)})

        options = {"cwd": cwd, "env": env or {}}
        for handler in self._handlers:
            result = handler(list(command), options)
            if result is not None:
                return result

        return CommandResult.success(command, stdout=self._default_output)
