"""
Subprocess runner — the single place ``subprocess.run`` is called.

All provisioning commands (apt, git, make, systemctl, version probes)
go through here so that timeouts, environment handling and logging
are centralised.
"""

from __future__ import annotations

import logging
import os
import subprocess
import time

from nodeprov.adapters.base import CommandResult, CommandRunner

logger = logging.getLogger(__name__)

# Keep enough output to diagnose a failed build without holding whole logs.
_OUTPUT_TAIL = 4000


class SubprocessRunner(CommandRunner):
    """Run commands on the local host and capture their output."""

    @property
    def name(self) -> str:
        return "subprocess"

    def run(
        self,
        command: list[str],
        *,
        timeout: float = 120,
        cwd: str | None = None,
        env: dict[str, str] | None = None,
    ) -> CommandResult:
        full_env = os.environ.copy()
        if env:
            full_env.update(env)

        logger.debug("Executing: %s (cwd=%s)", " ".join(command), cwd or ".")
        start = time.monotonic()

        try:
            result = subprocess.run(
                command,
                capture_output=True,
                text=True,
                timeout=timeout,
                stdin=subprocess.DEVNULL,
                env=full_env,
                cwd=cwd,
            )
        except subprocess.TimeoutExpired:
            return CommandResult(
                command=list(command),
                returncode=-1,
                timed_out=True,
                error=f"Command timed out after {timeout}s: {command[0]}",
                elapsed_ms=int((time.monotonic() - start) * 1000),
            )
        except FileNotFoundError:
            return CommandResult(
                command=list(command),
                returncode=127,
                error=f"Executable not found: {command[0]}",
            )
        except OSError as e:
            return CommandResult(
                command=list(command),
                returncode=126,
                error=f"Cannot execute {command[0]}: {e}",
            )

        elapsed_ms = int((time.monotonic() - start) * 1000)
        if result.returncode != 0:
            logger.debug(
                "Command exited %d after %dms: %s",
                result.returncode, elapsed_ms, command[0],
            )

        return CommandResult(
            command=list(command),
            returncode=result.returncode,
            stdout=(result.stdout or "")[-_OUTPUT_TAIL:],
            stderr=(result.stderr or "")[-_OUTPUT_TAIL:],
            elapsed_ms=elapsed_ms,
        )
