"""
SourceBuilder — git checkout, toolchain build and install at a pinned revision.

A checkout is always forced to exactly the pinned commit with
untracked files removed, so a tree left half-built by an interrupted
run is rebuilt from a clean slate. A checkout whose ``.git`` cannot
be used at all is deleted and cloned again.

``is_current()`` is the idempotency probe: when the installed binary
already reports the pinned revision the whole fetch/build/install
sequence is skipped.
"""

from __future__ import annotations

import logging
import re
import shutil
from collections.abc import Mapping
from pathlib import Path

from nodeprov.adapters.base import CommandResult, CommandRunner
from nodeprov.core.errors import (
    FatalSourceError,
    FilesystemError,
    ProvisionError,
    TransientFetchError,
)

logger = logging.getLogger(__name__)

_NETWORK_PATTERNS = (
    "could not resolve host",
    "unable to access",
    "connection timed out",
    "connection refused",
    "connection reset",
    "early eof",
    "the remote end hung up",
    "failed to connect",
    "operation timed out",
)


def version_matches(output: str, expected: str) -> bool:
    """Whether ``output`` mentions version ``expected``.

    A leading ``v`` on the pinned revision is optional in the output
    (``v1.0.0`` matches ``crio version 1.0.0``). The match must not be
    a prefix of a longer version: ``1.0.0-rc4`` does not match
    ``1.0.0-rc40``, and ``1.0.0`` does not match ``1.0.0-rc4``.
    """
    marker = expected[1:] if expected[:1] in ("v", "V") and expected[1:2].isdigit() else expected
    pattern = rf"(?<![\d.]){re.escape(marker)}(?!\d|\.\d|-(?:rc|alpha|beta|pre))"
    return re.search(pattern, output) is not None


def classify_git_failure(result: CommandResult, action: str) -> ProvisionError:
    detail = result.summary()
    text = result.output.lower()
    if result.timed_out or any(p in text for p in _NETWORK_PATTERNS):
        return TransientFetchError(f"{action} failed: {detail}")
    return FatalSourceError(f"{action} failed: {detail}")


class SourceBuilder:
    """Builds components from source checkouts."""

    def __init__(
        self,
        runner: CommandRunner,
        *,
        build_timeout: float = 3600,
        network_timeout: float = 600,
        command_timeout: float = 120,
    ):
        self._runner = runner
        self.build_timeout = build_timeout
        self.network_timeout = network_timeout
        self.command_timeout = command_timeout

    # ── Probe ───────────────────────────────────────────────────

    def reports_version(self, command: list[str], expected: str) -> bool:
        """Run ``command`` and check its output mentions ``expected``."""
        result = self._runner.run(command, timeout=self.command_timeout)
        if not result.ok:
            logger.debug("Version probe %s failed: %s", command[0], result.summary())
            return False
        return version_matches(result.output, expected)

    def is_current(
        self,
        binary: Path,
        version_args: list[str] | None,
        expected: str | None,
    ) -> bool:
        """Whether ``binary`` is installed at the pinned revision.

        With no ``version_args`` or no pinned revision, existence of
        the binary is the whole check.
        """
        if not binary.is_file():
            return False
        if not version_args or not expected:
            return True
        return self.reports_version([str(binary), *version_args], expected)

    # ── Fetch ───────────────────────────────────────────────────

    def fetch(self, repo_url: str, ref: str, workdir: Path) -> str:
        """Make ``workdir`` a clean checkout of ``ref``. Returns the commit id.

        Raises:
            TransientFetchError: Network failure while cloning/fetching.
            FatalSourceError: ``ref`` does not exist in the repository.
        """
        if workdir.exists() and not self._usable_checkout(workdir):
            logger.warning("Checkout %s is unusable, cloning again", workdir)
            try:
                shutil.rmtree(workdir)
            except OSError as e:
                raise FilesystemError(f"Cannot remove {workdir}: {e}") from e

        if workdir.exists():
            logger.info("Fetching %s into %s", repo_url, workdir)
            self._git(
                workdir, "fetch", "--tags", "--force", "origin",
                timeout=self.network_timeout, action=f"git fetch {repo_url}",
            )
        else:
            logger.info("Cloning %s into %s", repo_url, workdir)
            try:
                workdir.parent.mkdir(parents=True, exist_ok=True)
            except OSError as e:
                raise FilesystemError(f"Cannot create {workdir.parent}: {e}") from e
            result = self._runner.run(
                ["git", "clone", repo_url, str(workdir)], timeout=self.network_timeout,
            )
            if not result.ok:
                raise classify_git_failure(result, f"git clone {repo_url}")

        probe = self._runner.run(
            ["git", "-C", str(workdir), "rev-parse", "--verify", "--quiet", f"{ref}^{{commit}}"],
            timeout=self.command_timeout,
        )
        commit = probe.stdout.strip()
        if not probe.ok or not commit:
            raise FatalSourceError(f"Pinned revision {ref} not found in {repo_url}")

        self._git(workdir, "reset", "--hard", commit, action=f"git reset to {ref}")
        self._git(workdir, "clean", "-fdx", action=f"git clean {workdir}")
        logger.info("Checked out %s at %s (%s)", repo_url, ref, commit[:12])
        return commit

    def _usable_checkout(self, workdir: Path) -> bool:
        if not (workdir / ".git").exists():
            return False
        result = self._runner.run(
            ["git", "-C", str(workdir), "rev-parse", "--git-dir"],
            timeout=self.command_timeout,
        )
        return result.ok

    def _git(self, workdir: Path, *args: str, action: str, timeout: float | None = None) -> None:
        result = self._runner.run(
            ["git", "-C", str(workdir), *args], timeout=timeout or self.command_timeout,
        )
        if not result.ok:
            raise classify_git_failure(result, action)

    # ── Build / install ─────────────────────────────────────────

    def build(
        self,
        workdir: Path,
        command: list[str] | None = None,
        build_tags: list[str] | None = None,
        env: Mapping[str, str] | None = None,
    ) -> None:
        """Run the build command in ``workdir``.

        Raises:
            FatalSourceError: The build exited non-zero or timed out.
        """
        cmd = list(command or ["make"])
        if build_tags:
            cmd.append(f"BUILDTAGS={' '.join(build_tags)}")

        logger.info("Building in %s: %s", workdir, " ".join(cmd))
        result = self._runner.run(
            cmd, cwd=str(workdir), env=dict(env or {}), timeout=self.build_timeout,
        )
        if result.timed_out:
            raise FatalSourceError(
                f"Build in {workdir} timed out after {self.build_timeout:.0f}s"
            )
        if not result.ok:
            raise FatalSourceError(f"Build in {workdir} failed: {result.summary()}")

    def install(
        self,
        workdir: Path,
        targets: list[str] | None = None,
        artifacts: Mapping[str, Path] | None = None,
        env: Mapping[str, str] | None = None,
    ) -> None:
        """Run install targets, then copy ``artifacts`` (relative source → absolute dest)."""
        for target in targets or []:
            logger.info("Installing %s (make %s)", workdir.name, target)
            result = self._runner.run(
                ["make", target], cwd=str(workdir), env=dict(env or {}),
                timeout=self.build_timeout,
            )
            if not result.ok:
                raise FatalSourceError(
                    f"make {target} in {workdir} failed: {result.summary()}"
                )

        for rel, dest in (artifacts or {}).items():
            src = workdir / rel
            if not src.is_file():
                raise FatalSourceError(f"Build artifact missing: {src}")
            try:
                dest.parent.mkdir(parents=True, exist_ok=True)
                shutil.copy2(src, dest)
            except OSError as e:
                raise FilesystemError(f"Cannot install {src} to {dest}: {e}") from e
            logger.info("Installed %s", dest)
