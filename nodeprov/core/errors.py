"""
Error taxonomy for provisioning.

Every failure a step can surface is a ``ProvisionError`` subclass.
Services raise them, the pipeline records them on the failing
``StepResult`` and aborts. Only ``TransientFetchError`` is retried,
and only by steps that touch the network.

Graph errors (``StepGraphError``, ``CyclicDependencyError``) are
raised while building a pipeline, never while running one.
"""

from __future__ import annotations


class ProvisionError(Exception):
    """Base class for errors that abort a provisioning run.

    Attributes:
        step: Name of the step the error originated in. Filled in by
            the pipeline when the error crosses the step boundary.
        exit_code: Process exit status used when this error aborts
            the run.
    """

    exit_code = 1
    retryable = False

    def __init__(self, message: str, *, step: str | None = None):
        super().__init__(message)
        self.message = message
        self.step = step

    @property
    def kind(self) -> str:
        return type(self).__name__

    def __str__(self) -> str:
        return self.message


class TransientFetchError(ProvisionError):
    """A network fetch failed in a way that may succeed on retry."""

    exit_code = 10
    retryable = True


class FatalPackageError(ProvisionError):
    """The package manager cannot satisfy the request (not retried)."""

    exit_code = 11


class FatalSourceError(ProvisionError):
    """A pinned source revision is missing or a build/install failed."""

    exit_code = 12


class FilesystemError(ProvisionError):
    """A file or directory could not be written."""

    exit_code = 13


class TemplateError(ProvisionError):
    """A configuration template could not be rendered."""

    exit_code = 14


class ServiceActivationError(ProvisionError):
    """A service did not reach the active state in time."""

    exit_code = 15

    def __init__(
        self,
        message: str,
        *,
        service: str,
        state: str = "unknown",
        step: str | None = None,
    ):
        super().__init__(message, step=step)
        self.service = service
        self.state = state


class StepGraphError(Exception):
    """The step graph is malformed (duplicate or unknown steps, unresolved outputs)."""


class CyclicDependencyError(StepGraphError):
    """The step dependency relation contains a cycle."""

    def __init__(self, stuck: list[str]):
        super().__init__(
            f"Dependency cycle detected between steps: {', '.join(stuck)}"
        )
        self.stuck = stuck
