"""
Tests for ArchiveFetcher — downloads, checksums and safe extraction.
"""

import hashlib
import io
import tarfile

import pytest

from nodeprov.core.errors import (
    FatalPackageError,
    FatalSourceError,
    FilesystemError,
    TransientFetchError,
)
from nodeprov.core.services.archives import ArchiveFetcher, fetch_url, verify_checksum


def _sha256(path):
    return "sha256:" + hashlib.sha256(path.read_bytes()).hexdigest()


# ── Download ────────────────────────────────────────────────────────


class TestFetch:
    def test_fetch_file_url(self, release_dir):
        data = fetch_url((release_dir / "Release.key").as_uri())
        assert data.startswith(b"-----BEGIN PGP")

    def test_missing_file_is_fatal(self, tmp_path):
        with pytest.raises(FatalSourceError):
            fetch_url((tmp_path / "nope.tgz").as_uri())

    def test_missing_file_uses_callers_error(self, tmp_path):
        with pytest.raises(FatalPackageError):
            fetch_url((tmp_path / "nope.key").as_uri(), fatal=FatalPackageError)

    def test_checksum(self, release_dir):
        path = release_dir / "Release.key"
        assert verify_checksum(path, _sha256(path))
        assert verify_checksum(path, "sha256:" + _sha256(path).split(":")[1].upper())
        assert not verify_checksum(path, "sha256:" + "0" * 64)

    def test_checksum_mismatch_is_transient(self, release_dir, tmp_path):
        src = release_dir / "cni-plugins-amd64-v0.6.0.tgz"
        dest = tmp_path / "cni.tgz"
        with pytest.raises(TransientFetchError, match="Checksum mismatch"):
            ArchiveFetcher().download(src.as_uri(), dest, "sha256:" + "0" * 64)
        assert not dest.exists()


# ── Extraction ──────────────────────────────────────────────────────


class TestExtract:
    def test_install_extracts_with_modes(self, release_dir, sysroot):
        src = release_dir / "cni-plugins-amd64-v0.6.0.tgz"
        dest = sysroot / "opt/cni/bin"
        ArchiveFetcher().install(src.as_uri(), dest, _sha256(src))
        assert (dest / "bridge").is_file()
        assert (dest / "bridge").stat().st_mode & 0o111

    def test_extract_into_root_layout(self, release_dir, sysroot):
        src = release_dir / "cri-containerd-1.0.0-alpha.0.tar.gz"
        ArchiveFetcher().install(src.as_uri(), sysroot)
        assert (sysroot / "usr/local/bin/cri-containerd").is_file()
        assert (sysroot / "etc/systemd/system/containerd.service").is_file()

    def test_existing_directories_keep_their_mode(self, tmp_path, sysroot):
        (sysroot / "usr").mkdir()
        (sysroot / "usr").chmod(0o755)
        archive = tmp_path / "a.tar.gz"
        with tarfile.open(archive, "w:gz") as tar:
            info = tarfile.TarInfo("usr")
            info.type = tarfile.DIRTYPE
            info.mode = 0o700
            tar.addfile(info)
        ArchiveFetcher().extract(archive, sysroot)
        assert (sysroot / "usr").stat().st_mode & 0o777 == 0o755

    def test_path_escape_rejected(self, tmp_path, sysroot, tarball):
        archive = tarball(tmp_path / "evil.tgz", {"../../etc/passwd": "root::0:0"})
        with pytest.raises(FatalSourceError, match="escapes destination"):
            ArchiveFetcher().extract(archive, sysroot / "opt")
        assert not (tmp_path / "etc").exists()

    def test_symlink_escape_rejected(self, tmp_path, sysroot):
        archive = tmp_path / "link.tgz"
        with tarfile.open(archive, "w:gz") as tar:
            info = tarfile.TarInfo("bin/sh")
            info.type = tarfile.SYMTYPE
            info.linkname = "../../../../bin/sh"
            tar.addfile(info)
            data = b"x"
            payload = tarfile.TarInfo("bin/ok")
            payload.size = len(data)
            tar.addfile(payload, io.BytesIO(data))
        with pytest.raises(FatalSourceError, match="symlink escapes"):
            ArchiveFetcher().extract(archive, sysroot / "opt")
        # nothing is extracted when any member is rejected
        assert not (sysroot / "opt/bin/ok").exists()

    def test_corrupt_archive_is_fatal(self, tmp_path, sysroot):
        archive = tmp_path / "bad.tgz"
        archive.write_bytes(b"not a tarball")
        with pytest.raises(FatalSourceError, match="Cannot extract"):
            ArchiveFetcher().extract(archive, sysroot)


# ── Replacing a release tree ────────────────────────────────────────


class TestReplace:
    def test_previous_tree_removed_before_extraction(self, release_dir, sysroot):
        stale = sysroot / "usr/local/go/pkg/stale_from_old_go.a"
        stale.parent.mkdir(parents=True)
        stale.write_text("old")
        src = release_dir / "go1.9.2.linux-amd64.tar.gz"

        ArchiveFetcher().install(src.as_uri(), sysroot / "usr/local", replace=sysroot / "usr/local/go")

        assert not stale.exists()
        assert (sysroot / "usr/local/go/bin/go").is_file()
        assert (sysroot / "usr/local/go/VERSION").read_text() == "go1.9.2"

    def test_failed_download_keeps_previous_tree(self, tmp_path, sysroot):
        current = sysroot / "usr/local/go/bin/go"
        current.parent.mkdir(parents=True)
        current.write_text("#!/bin/sh\n")
        with pytest.raises(FatalSourceError):
            ArchiveFetcher().install(
                (tmp_path / "missing.tar.gz").as_uri(),
                sysroot / "usr/local",
                replace=sysroot / "usr/local/go",
            )
        assert current.is_file()

    def test_remove_tree(self, sysroot):
        tree = sysroot / "usr/local/go"
        (tree / "src").mkdir(parents=True)
        fetcher = ArchiveFetcher()
        assert fetcher.remove_tree(tree)
        assert not tree.exists()
        assert not fetcher.remove_tree(tree)

    def test_remove_tree_refuses_files(self, sysroot):
        target = sysroot / "go"
        target.write_text("not a directory")
        with pytest.raises(FilesystemError, match="not a directory"):
            ArchiveFetcher().remove_tree(target)
        assert target.exists()
