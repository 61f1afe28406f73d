"""
Tests for SourceBuilder — pinned checkouts, builds and installs.
"""

from pathlib import Path

import pytest

from nodeprov.adapters.base import CommandResult
from nodeprov.adapters.mock import MockRunner
from nodeprov.core.errors import FatalSourceError, TransientFetchError
from nodeprov.core.services.source_builder import (
    SourceBuilder,
    classify_git_failure,
    version_matches,
)

RUNC_URL = "https://github.com/opencontainers/runc.git"


@pytest.fixture
def workdir(sysroot):
    return sysroot / "var/lib/nodeprov/go/src/github.com/opencontainers/runc"


@pytest.fixture
def builder(fake_node):
    return SourceBuilder(fake_node.runner)


# ── Version matching ────────────────────────────────────────────────


class TestVersionMatches:
    @pytest.mark.parametrize(
        "output, expected",
        [
            ("runc version 1.0.0-rc4\ncommit: abc", "v1.0.0-rc4"),
            ("crio version 1.0.0\n", "v1.0.0"),
            ("go version go1.9.2 linux/amd64", "1.9.2"),
            ("cri-containerd: Version: 1.0.0-alpha.0", "1.0.0-alpha.0"),
        ],
    )
    def test_matches(self, output, expected):
        assert version_matches(output, expected)

    @pytest.mark.parametrize(
        "output, expected",
        [
            ("runc version 1.0.0-rc3", "v1.0.0-rc4"),
            ("runc version 1.0.0-rc40", "v1.0.0-rc4"),
            ("crio version 1.0.0-rc3", "v1.0.0"),
            ("crio version 11.0.0", "v1.0.0"),
            ("go version go1.9.21 linux/amd64", "1.9.2"),
            ("go version go1.19.2", "1.9.2"),
        ],
    )
    def test_rejects(self, output, expected):
        assert not version_matches(output, expected)


class TestClassifyGitFailure:
    def test_dns_is_transient(self):
        result = CommandResult.failure(["git"], stderr="fatal: unable to access: Could not resolve host: github.com")
        assert isinstance(classify_git_failure(result, "git clone"), TransientFetchError)

    def test_other_is_fatal(self):
        result = CommandResult.failure(["git"], stderr="fatal: repository not found")
        assert isinstance(classify_git_failure(result, "git clone"), FatalSourceError)


# ── Version check ───────────────────────────────────────────────────


class TestIsCurrent:
    def test_missing_binary(self, builder, sysroot):
        assert not builder.is_current(sysroot / "usr/local/sbin/runc", ["--version"], "v1.0.0-rc4")

    def test_reports_pinned_version(self, builder, fake_node, sysroot):
        binary = sysroot / "runc"
        binary.write_text("")
        fake_node.versions[str(binary)] = "runc version 1.0.0-rc4\n"
        assert builder.is_current(binary, ["--version"], "v1.0.0-rc4")

    def test_reports_other_version(self, builder, fake_node, sysroot):
        binary = sysroot / "runc"
        binary.write_text("")
        fake_node.versions[str(binary)] = "runc version 1.0.0-rc3\n"
        assert not builder.is_current(binary, ["--version"], "v1.0.0-rc4")

    def test_existence_only_without_version_args(self, builder, sysroot):
        binary = sysroot / "go-md2man"
        binary.write_text("")
        assert builder.is_current(binary, [], "v1.0.8")

    def test_version_check_failure_is_not_current(self, sysroot):
        runner = MockRunner()
        binary = sysroot / "runc"
        binary.write_text("")
        runner.set_failure([str(binary)], stderr="exec format error")
        assert not SourceBuilder(runner).is_current(binary, ["--version"], "v1.0.0-rc4")


# ── Fetch ───────────────────────────────────────────────────────────


class TestFetch:
    def test_clone_then_checkout(self, builder, fake_node, workdir):
        commit = builder.fetch(RUNC_URL, "v1.0.0-rc4", workdir)
        assert len(commit) == 40
        cmds = [c.command for c in fake_node.runner.call_log]
        assert ["git", "clone", RUNC_URL, str(workdir)] in cmds
        assert ["git", "-C", str(workdir), "reset", "--hard", commit] in cmds
        assert ["git", "-C", str(workdir), "clean", "-fdx"] in cmds

    def test_existing_checkout_is_fetched_not_cloned(self, builder, fake_node, workdir):
        builder.fetch(RUNC_URL, "v1.0.0-rc3", workdir)
        fake_node.runner.call_log.clear()
        builder.fetch(RUNC_URL, "v1.0.0-rc4", workdir)
        assert fake_node.runner.calls_matching("git", "clone") == []
        assert fake_node.runner.calls_matching("git", "-C", str(workdir), "fetch")

    def test_unusable_checkout_is_recloned(self, builder, fake_node, workdir):
        workdir.mkdir(parents=True)
        (workdir / "half-built.o").write_text("junk")
        builder.fetch(RUNC_URL, "v1.0.0-rc4", workdir)
        assert fake_node.runner.calls_matching("git", "clone")
        assert not (workdir / "half-built.o").exists()

    def test_unknown_revision_is_fatal(self, builder, workdir):
        with pytest.raises(FatalSourceError, match="Pinned revision v9.9.9 not found"):
            builder.fetch(RUNC_URL, "v9.9.9", workdir)

    def test_network_failure_is_transient(self, builder, fake_node, workdir):
        fake_node.network_failures["git"] = 1
        with pytest.raises(TransientFetchError, match="Could not resolve host"):
            builder.fetch(RUNC_URL, "v1.0.0-rc4", workdir)


# ── Build / install ─────────────────────────────────────────────────


class TestBuild:
    def test_build_tags_appended(self, builder, fake_node, workdir):
        builder.build(workdir, ["make"], ["seccomp", "apparmor"], {"GOPATH": "/x"})
        call = fake_node.runner.calls_matching("make")[0]
        assert call.command == ["make", "BUILDTAGS=seccomp apparmor"]
        assert call.cwd == str(workdir)
        assert call.env == {"GOPATH": "/x"}

    def test_build_failure_is_fatal(self, builder, fake_node, workdir):
        fake_node.failing_builds.add("github.com/opencontainers/runc")
        with pytest.raises(FatalSourceError, match="Error 2"):
            builder.build(workdir, build_tags=["seccomp"])

    def test_build_timeout_is_fatal(self, workdir):
        runner = MockRunner()
        runner.set_response(
            ["make"], CommandResult(command=["make"], returncode=-1, timed_out=True, error="timed out"),
        )
        with pytest.raises(FatalSourceError, match="timed out"):
            SourceBuilder(runner, build_timeout=5).build(workdir)


class TestInstall:
    def test_install_targets_run_in_order(self, builder, fake_node, workdir):
        builder.install(workdir, ["install", "install.config", "install.systemd"])
        targets = [c.command[1] for c in fake_node.runner.calls_matching("make")]
        assert targets == ["install", "install.config", "install.systemd"]

    def test_install_target_failure(self, workdir):
        runner = MockRunner()
        runner.set_failure(["make", "install.systemd"], stderr="install: cannot stat")
        with pytest.raises(FatalSourceError, match="install.systemd"):
            SourceBuilder(runner).install(workdir, ["install", "install.systemd"])

    def test_artifacts_copied(self, builder, workdir, sysroot):
        (workdir / "bin").mkdir(parents=True)
        (workdir / "bin/tool").write_text("#!/bin/sh\n")
        dest = sysroot / "usr/local/bin/tool"
        builder.install(workdir, [], {"bin/tool": dest})
        assert dest.read_text() == "#!/bin/sh\n"

    def test_missing_artifact_is_fatal(self, builder, workdir, sysroot):
        workdir.mkdir(parents=True)
        with pytest.raises(FatalSourceError, match="artifact missing"):
            builder.install(workdir, [], {"bin/tool": sysroot / "tool"})

    def test_go_install_produces_binary(self, builder, fake_node, sysroot):
        wd = sysroot / "var/lib/nodeprov/go/src/github.com/cpuguy83/go-md2man"
        builder.fetch("https://github.com/cpuguy83/go-md2man.git", "v1.0.8", wd)
        builder.build(wd, ["go", "install", "."])
        assert Path(fake_node.path("/var/lib/nodeprov/go/bin/go-md2man")).is_file()
