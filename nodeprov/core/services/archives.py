"""
ArchiveFetcher — release downloads over HTTP(S).

Used for the Go toolchain, the CNI plugin bundle, the cri-containerd
release and repository signing keys. Downloads stream to a temp file,
are checked against an optional ``algo:hex`` checksum and are
extracted member by member into the destination, refusing any member
that would land outside it.
"""

from __future__ import annotations

import hashlib
import io
import logging
import shutil
import tarfile
import tempfile
import urllib.error
import urllib.request
from pathlib import Path
from typing import BinaryIO

from nodeprov import __version__
from nodeprov.core.errors import (
    FatalSourceError,
    FilesystemError,
    ProvisionError,
    TransientFetchError,
)

logger = logging.getLogger(__name__)

USER_AGENT = f"nodeprov/{__version__}"

# HTTP statuses worth retrying; everything else in 4xx is final
_RETRYABLE_HTTP = {408, 425, 429}


def download_to(
    url: str,
    out: BinaryIO,
    *,
    timeout: float = 60,
    fatal: type[ProvisionError] = FatalSourceError,
) -> int:
    """Stream ``url`` into ``out``. Returns the number of bytes written.

    Raises:
        TransientFetchError: DNS/connection failures, timeouts, 5xx.
        fatal: The resource does not exist (404 and other 4xx).
    """
    req = urllib.request.Request(url, headers={"User-Agent": USER_AGENT})
    written = 0
    try:
        with urllib.request.urlopen(req, timeout=timeout) as resp:
            while True:
                chunk = resp.read(65536)
                if not chunk:
                    break
                out.write(chunk)
                written += len(chunk)
    except urllib.error.HTTPError as e:
        if e.code >= 500 or e.code in _RETRYABLE_HTTP:
            raise TransientFetchError(f"Fetching {url} failed: HTTP {e.code}") from e
        raise fatal(f"Fetching {url} failed: HTTP {e.code} {e.reason}") from e
    except urllib.error.URLError as e:
        if isinstance(e.reason, FileNotFoundError):
            raise fatal(f"Fetching {url} failed: {e.reason}") from e
        raise TransientFetchError(f"Fetching {url} failed: {e.reason}") from e
    except OSError as e:
        # socket timeouts and resets mid-body
        raise TransientFetchError(f"Fetching {url} failed: {e}") from e
    return written


def fetch_url(
    url: str,
    *,
    timeout: float = 60,
    fatal: type[ProvisionError] = FatalSourceError,
) -> bytes:
    """Download ``url`` into memory (small files: keys, checksums)."""
    buf = io.BytesIO()
    download_to(url, buf, timeout=timeout, fatal=fatal)
    return buf.getvalue()


def verify_checksum(path: Path, expected: str) -> bool:
    """Verify file checksum.  Format: ``algo:hex`` (sha256, sha1, md5...)."""
    algo, expected_hash = expected.split(":", 1)
    h = hashlib.new(algo)
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(65536), b""):
            h.update(chunk)
    return h.hexdigest() == expected_hash.lower()


class ArchiveFetcher:
    """Downloads release archives and unpacks them into place."""

    def __init__(self, *, timeout: float = 600):
        self.timeout = timeout

    def download(self, url: str, dest: Path, checksum: str | None = None) -> Path:
        """Download ``url`` to the file ``dest``, verifying ``checksum``.

        Raises:
            TransientFetchError: Network failure or checksum mismatch
                (a truncated transfer looks the same as a corrupt one).
            FatalSourceError: The release does not exist.
        """
        logger.info("Downloading %s", url)
        with open(dest, "wb") as f:
            size = download_to(url, f, timeout=self.timeout)
        logger.debug("Downloaded %d bytes to %s", size, dest)

        if checksum and not verify_checksum(dest, checksum):
            dest.unlink(missing_ok=True)
            raise TransientFetchError(f"Checksum mismatch for {url} (expected {checksum})")
        return dest

    def extract(self, archive: Path, dest: Path) -> list[Path]:
        """Extract a tar archive into ``dest`` preserving file modes.

        Raises:
            FatalSourceError: The archive is unreadable or a member
                would escape ``dest``.
            FilesystemError: ``dest`` cannot be written.
        """
        try:
            dest.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise FilesystemError(f"Cannot create {dest}: {e}") from e
        root = dest.resolve()

        extracted: list[Path] = []
        try:
            with tarfile.open(archive, "r:*") as tar:
                members = tar.getmembers()
                for member in members:
                    _check_member(member, root)
                for member in members:
                    if member.isdev():
                        continue
                    # leave modes of existing directories (/, /usr, ...) alone
                    if member.isdir() and (root / member.name).is_dir():
                        continue
                    tar.extract(member, root, set_attrs=True, filter="tar")
                    extracted.append(root / member.name)
        except tarfile.TarError as e:
            raise FatalSourceError(f"Cannot extract {archive.name}: {e}") from e
        except OSError as e:
            raise FilesystemError(f"Cannot extract {archive.name} into {dest}: {e}") from e

        logger.info("Extracted %d entries from %s into %s", len(extracted), archive.name, dest)
        return extracted

    def install(
        self,
        url: str,
        dest: Path,
        checksum: str | None = None,
        replace: Path | None = None,
    ) -> list[Path]:
        """Download and extract ``url`` into ``dest``.

        ``replace`` is removed after the download is verified and before
        extraction, so a release tree is never unpacked over an older one.
        """
        tmp_dir = Path(tempfile.mkdtemp(prefix="nodeprov-fetch-"))
        try:
            name = url.rstrip("/").rsplit("/", 1)[-1] or "archive"
            archive = self.download(url, tmp_dir / name, checksum)
            if replace is not None:
                self.remove_tree(replace)
            return self.extract(archive, dest)
        finally:
            shutil.rmtree(tmp_dir, ignore_errors=True)

    def remove_tree(self, path: Path) -> bool:
        """Delete the directory ``path``. Returns True if it existed."""
        if not path.is_dir() or path.is_symlink():
            if path.exists() or path.is_symlink():
                raise FilesystemError(f"Refusing to replace {path}: not a directory")
            return False
        logger.info("Removing previous release tree %s", path)
        try:
            shutil.rmtree(path)
        except OSError as e:
            raise FilesystemError(f"Cannot remove {path}: {e}") from e
        return True


def _check_member(member: tarfile.TarInfo, root: Path) -> None:
    target = (root / member.name).resolve()
    if not target.is_relative_to(root):
        raise FatalSourceError(f"Archive member escapes destination: {member.name}")
    if member.issym():
        link = (target.parent / member.linkname).resolve()
        if not link.is_relative_to(root):
            raise FatalSourceError(
                f"Archive symlink escapes destination: {member.name} -> {member.linkname}"
            )
    elif member.islnk():
        link = (root / member.linkname).resolve()
        if not link.is_relative_to(root):
            raise FatalSourceError(
                f"Archive hard link escapes destination: {member.name} -> {member.linkname}"
            )
