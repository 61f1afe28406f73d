"""
PackageInstaller — apt sources and packages.

Probes first, acts second: a package is only passed to ``apt-get``
when ``dpkg-query`` reports it missing, a source list is only written
when its content differs, and a PPA is only added when no existing
source list already references it. The package index is refreshed
once after any source change, and again before installing from
sources whose earlier refresh may not have completed.

Failures are classified from the package manager's output into
``TransientFetchError`` (network, mirror, dpkg lock) and
``FatalPackageError`` (everything else).
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable

from nodeprov.adapters.base import CommandResult, CommandRunner
from nodeprov.core.errors import (
    FatalPackageError,
    FilesystemError,
    ProvisionError,
    TransientFetchError,
)
from nodeprov.core.models.actions import APT_SOURCES_DIR, RepositorySpec
from nodeprov.core.services.archives import fetch_url
from nodeprov.core.services.config_writer import ConfigWriter

logger = logging.getLogger(__name__)

APT_ENV = {"DEBIAN_FRONTEND": "noninteractive"}

_TRANSIENT_PATTERNS = (
    "could not resolve",
    "temporary failure resolving",
    "temporary failure in name resolution",
    "failed to fetch",
    "unable to fetch",
    "connection timed out",
    "connection failed",
    "could not connect",
    "could not get lock",
    "unable to acquire the dpkg frontend lock",
    "hash sum mismatch",
)


def classify_apt_failure(result: CommandResult, action: str) -> ProvisionError:
    """Turn a failed package-manager result into the matching error."""
    detail = result.summary()
    text = result.output.lower()
    if result.timed_out or any(p in text for p in _TRANSIENT_PATTERNS):
        return TransientFetchError(f"{action} failed: {detail}")
    return FatalPackageError(f"{action} failed: {detail}")


class PackageInstaller:
    """Installs packages and package sources through apt."""

    def __init__(
        self,
        runner: CommandRunner,
        writer: ConfigWriter,
        *,
        timeout: float = 600,
        fetch: Callable[[str], bytes] | None = None,
    ):
        self._runner = runner
        self._writer = writer
        self.timeout = timeout
        self._fetch = fetch or (
            lambda url: fetch_url(url, timeout=timeout, fatal=FatalPackageError)
        )

    # ── Sources ─────────────────────────────────────────────────

    def has_repository(self, spec: RepositorySpec) -> bool:
        if spec.kind == "ppa":
            return self._ppa_present(spec.ppa)
        if spec.keyring_path and not self._writer.is_nonempty(spec.keyring_path):
            return False
        return self._writer.is_current(spec.list_path, spec.source_line().encode())

    def ensure_repository(self, spec: RepositorySpec) -> bool:
        """Add ``spec`` and its signing key if not present. Returns True if changed."""
        if spec.kind == "ppa":
            changed = self._ensure_ppa(spec)
        else:
            changed = self._ensure_deb(spec)
        if changed:
            self.refresh_index()
        return changed

    def _ensure_deb(self, spec: RepositorySpec) -> bool:
        changed = False
        if spec.keyring_path and not self._writer.is_nonempty(spec.keyring_path):
            logger.info("Fetching signing key for %s from %s", spec.name, spec.key_url)
            key = self._fetch(spec.key_url)
            if not key.strip():
                raise FatalPackageError(f"Signing key for {spec.name} is empty: {spec.key_url}")
            changed |= self._writer.write_if_changed(spec.keyring_path, key)
        changed |= self._writer.write_if_changed(
            spec.list_path, spec.source_line().encode()
        )
        return changed

    def _ensure_ppa(self, spec: RepositorySpec) -> bool:
        if self._ppa_present(spec.ppa):
            logger.debug("ppa:%s already configured", spec.ppa)
            return False
        logger.info("Adding ppa:%s", spec.ppa)
        result = self._runner.run(
            ["add-apt-repository", "-y", f"ppa:{spec.ppa}"],
            timeout=self.timeout,
            env=APT_ENV,
        )
        if not result.ok:
            raise classify_apt_failure(result, f"add-apt-repository ppa:{spec.ppa}")
        return True

    def _ppa_present(self, ppa: str) -> bool:
        needles = (f"ppa.launchpad.net/{ppa}/", f"ppa.launchpadcontent.net/{ppa}/")
        sources_dir = self._writer.target(APT_SOURCES_DIR)
        candidates = [self._writer.target("/etc/apt/sources.list")]
        if sources_dir.is_dir():
            candidates += sorted(sources_dir.glob("*.list"))
            candidates += sorted(sources_dir.glob("*.sources"))
        for path in candidates:
            try:
                lines = path.read_text(encoding="utf-8", errors="replace").splitlines()
            except FileNotFoundError:
                continue
            except OSError as e:
                raise FilesystemError(f"Cannot read {path}: {e}") from e
            for line in lines:
                line = line.strip()
                if line and not line.startswith("#") and any(n in line for n in needles):
                    return True
        return False

    def refresh_index(self) -> None:
        logger.info("Refreshing package index")
        result = self._runner.run(["apt-get", "update"], timeout=self.timeout, env=APT_ENV)
        if not result.ok:
            raise classify_apt_failure(result, "apt-get update")

    # ── Packages ────────────────────────────────────────────────

    def is_installed(self, name: str) -> bool:
        result = self._runner.run(
            ["dpkg-query", "-W", "-f=${Status}", name], timeout=30,
        )
        return result.ok and "install ok installed" in result.stdout

    def missing(self, names: Iterable[str]) -> list[str]:
        """Packages from ``names`` that are not installed, in input order."""
        return [n for n in dict.fromkeys(names) if not self.is_installed(n)]

    def install_packages(
        self, names: Iterable[str], *, refresh_index: bool = False,
    ) -> list[str]:
        """Install whichever of ``names`` are missing. Returns what was installed.

        With ``refresh_index`` the package index is refreshed first, but
        only when something is actually missing.
        """
        missing = self.missing(names)
        if not missing:
            logger.debug("All packages already installed")
            return []
        if refresh_index:
            self.refresh_index()

        logger.info("Installing packages: %s", " ".join(missing))
        result = self._runner.run(
            ["apt-get", "install", "--no-install-recommends", "-y", *missing],
            timeout=self.timeout,
            env=APT_ENV,
        )
        if not result.ok:
            raise classify_apt_failure(result, f"apt-get install {' '.join(missing)}")

        still_missing = self.missing(missing)
        if still_missing:
            raise FatalPackageError(
                f"Packages not installed after apt-get install: {' '.join(still_missing)}"
            )
        return missing
