"""Adapters — bindings between provisioning services and the host.

Public re-exports for convenient access.
"""

from nodeprov.adapters.base import CommandResult, CommandRunner
from nodeprov.adapters.mock import MockRunner

__all__ = [
    "CommandResult",
    "CommandRunner",
    "MockRunner",
]
