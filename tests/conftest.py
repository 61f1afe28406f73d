"""
Shared test fixtures and configuration.

``FakeNode`` simulates the parts of an Ubuntu node the provisioner
talks to (dpkg/apt, git, make/go, systemd, installed binaries) on top
of ``MockRunner``. Files land in a temporary sysroot, so whole
pipeline runs can be exercised and inspected without root.
"""

from __future__ import annotations

import hashlib
import io
import tarfile
import time
from dataclasses import dataclass, field
from pathlib import Path

import pytest

from nodeprov.adapters.base import CommandResult
from nodeprov.adapters.mock import MockRunner
from nodeprov.core.models.node import NodeConfig


@dataclass
class Product:
    """What a source checkout installs, and when."""

    binary: str                       # node path
    trigger: tuple[str, ...]          # command that installs it
    version_format: str | None = None  # "{v}" is replaced by the checked-out version


@dataclass
class Unit:
    enabled: bool = False
    active: bool = False
    failed: bool = False
    loaded: bool = True
    need_reload: bool = False
    active_since: float | None = None   # time.monotonic() of the last start


DEFAULT_PRODUCTS = {
    "github.com/opencontainers/runc": Product(
        binary="/usr/local/sbin/runc",
        trigger=("make", "install"),
        version_format="runc version {v}\ncommit: 3f2f8b84\nspec: 1.0.0\n",
    ),
    "github.com/kubernetes-incubator/cri-o": Product(
        binary="/usr/local/bin/crio",
        trigger=("make", "install"),
        version_format="crio version {v}\n",
    ),
    "github.com/cpuguy83/go-md2man": Product(
        binary="/var/lib/nodeprov/go/bin/go-md2man",
        trigger=("go", "install", "."),
    ),
}

DEFAULT_REFS = {
    "https://github.com/opencontainers/runc.git": {"v1.0.0-rc3", "v1.0.0-rc4"},
    "https://github.com/kubernetes-incubator/cri-o.git": {"v1.0.0-rc3", "v1.0.0"},
    "https://github.com/cpuguy83/go-md2man.git": {"v1.0.7", "v1.0.8"},
}

DEFAULT_UNITS = (
    "cc-proxy",
    "crio",
    "crio-shutdown",
    "docker",
    "containerd",
    "cri-containerd",
    "devicemapper-containerd",
    "kubelet",
)


def _sha(text: str) -> str:
    return hashlib.sha1(text.encode()).hexdigest()


@dataclass
class FakeNode:
    """In-memory node driven through ``MockRunner`` handlers."""

    sysroot: Path
    runner: MockRunner = field(default_factory=MockRunner)
    packages: set[str] = field(default_factory=set)
    unavailable: set[str] = field(default_factory=set)
    unindexed: set[str] = field(default_factory=set)          # locatable after apt-get update
    refs: dict[str, set[str]] = field(default_factory=lambda: {k: set(v) for k, v in DEFAULT_REFS.items()})
    products: dict[str, Product] = field(default_factory=lambda: dict(DEFAULT_PRODUCTS))
    units: dict[str, Unit] = field(default_factory=lambda: {u: Unit() for u in DEFAULT_UNITS})
    versions: dict[str, str] = field(default_factory=dict)   # resolved binary path → output
    failing_builds: set[str] = field(default_factory=set)    # checkout suffixes
    failing_starts: set[str] = field(default_factory=set)
    network_failures: dict[str, int] = field(default_factory=dict)  # command word → count
    restarts: list[str] = field(default_factory=list)
    reloads: int = 0
    failing_reloads: int = 0

    _checkouts: dict[str, str] = field(default_factory=dict)   # workdir → repo url
    _commits: dict[str, str] = field(default_factory=dict)     # sha → ref
    _heads: dict[str, str] = field(default_factory=dict)       # workdir → ref

    def __post_init__(self):
        self.runner.add_handler(self._handle)

    # ── helpers for tests ───────────────────────────────────────

    def path(self, node_path: str) -> Path:
        return self.sysroot / node_path.lstrip("/")

    def read(self, node_path: str) -> str:
        return self.path(node_path).read_text()

    def version_of(self, node_path: str) -> str | None:
        return self.versions.get(str(self.path(node_path)))

    def mutating_calls(self) -> list[list[str]]:
        """Commands that change node state (as opposed to queries)."""
        mutating = []
        for call in self.runner.call_log:
            cmd = call.command
            if cmd[:2] in (["apt-get", "install"], ["apt-get", "update"]):
                mutating.append(cmd)
            elif cmd[:1] in (["add-apt-repository"], ["make"]) or cmd[:2] == ["git", "clone"]:
                mutating.append(cmd)
            elif cmd[:1] == ["systemctl"] and cmd[1] in (
                "enable", "start", "restart", "daemon-reload",
            ):
                mutating.append(cmd)
        return mutating

    # ── dispatch ────────────────────────────────────────────────

    def _handle(self, cmd: list[str], opts: dict) -> CommandResult | None:
        word = cmd[0]
        if word == "dpkg-query":
            return self._dpkg_query(cmd)
        if word == "apt-get":
            return self._apt_get(cmd)
        if word == "add-apt-repository":
            return self._add_ppa(cmd)
        if word == "git":
            return self._git(cmd)
        if word in ("make", "go"):
            return self._build(cmd, opts.get("cwd"))
        if word == "systemctl":
            return self._systemctl(cmd)
        if word in self.versions:
            return CommandResult.success(cmd, stdout=self.versions[word])
        return None

    def _network_failure(self, cmd: list[str], word: str, stderr: str) -> CommandResult | None:
        if self.network_failures.get(word, 0) > 0:
            self.network_failures[word] -= 1
            return CommandResult.failure(cmd, stderr=stderr, returncode=100)
        return None

    # ── apt ─────────────────────────────────────────────────────

    def _dpkg_query(self, cmd: list[str]) -> CommandResult:
        pkg = cmd[-1]
        if pkg in self.packages:
            return CommandResult.success(cmd, stdout="install ok installed")
        return CommandResult.failure(
            cmd, stderr=f"dpkg-query: no packages found matching {pkg}",
        )

    def _apt_get(self, cmd: list[str]) -> CommandResult:
        if cmd[1] == "update":
            failure = self._network_failure(
                cmd, "apt-get", "E: Failed to fetch http://archive.ubuntu.com  Temporary failure resolving",
            )
            if failure:
                return failure
            self.unindexed.clear()
            return CommandResult.success(cmd)
        if cmd[1] == "install":
            failure = self._network_failure(
                cmd, "apt-get",
                "E: Failed to fetch http://archive.ubuntu.com/x.deb  Temporary failure resolving 'archive.ubuntu.com'",
            )
            if failure:
                return failure
            names = [a for a in cmd[2:] if not a.startswith("-")]
            missing = [n for n in names if n in self.unavailable or n in self.unindexed]
            if missing:
                return CommandResult.failure(
                    cmd, stderr=f"E: Unable to locate package {missing[0]}", returncode=100,
                )
            self.packages.update(names)
            return CommandResult.success(cmd)
        return None

    def _add_ppa(self, cmd: list[str]) -> CommandResult:
        ppa = cmd[-1].removeprefix("ppa:")
        owner, name = ppa.split("/", 1)
        target = self.path(f"/etc/apt/sources.list.d/{owner}-ubuntu-{name}-xenial.list")
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(f"deb http://ppa.launchpad.net/{ppa}/ubuntu xenial main\n")
        return CommandResult.success(cmd)

    # ── git ─────────────────────────────────────────────────────

    def _git(self, cmd: list[str]) -> CommandResult:
        if cmd[1] == "clone":
            failure = self._network_failure(
                cmd, "git",
                f"fatal: unable to access '{cmd[2]}': Could not resolve host: github.com",
            )
            if failure:
                return failure
            url, dest = cmd[2], Path(cmd[3])
            (dest / ".git").mkdir(parents=True, exist_ok=True)
            self._checkouts[str(dest)] = url
            return CommandResult.success(cmd)

        workdir, args = cmd[2], cmd[3:]
        url = self._checkouts.get(workdir, "")
        if args[0] == "rev-parse" and args[1] == "--git-dir":
            if (Path(workdir) / ".git").is_dir() and url:
                return CommandResult.success(cmd, stdout=".git\n")
            return CommandResult.failure(cmd, stderr="fatal: not a git repository", returncode=128)
        if args[0] == "rev-parse":
            ref = args[-1].removesuffix("^{commit}")
            if ref in self.refs.get(url, set()):
                sha = _sha(url + ref)
                self._commits[sha] = ref
                return CommandResult.success(cmd, stdout=sha + "\n")
            return CommandResult.failure(cmd, returncode=1)
        if args[0] == "reset":
            self._heads[workdir] = self._commits[args[-1]]
            return CommandResult.success(cmd)
        if args[0] == "fetch":
            return self._network_failure(
                cmd, "git", "fatal: unable to access: Could not resolve host: github.com",
            ) or CommandResult.success(cmd)
        return CommandResult.success(cmd)

    # ── build ───────────────────────────────────────────────────

    def _product_for(self, cwd: str | None) -> tuple[str, Product] | None:
        for suffix, product in self.products.items():
            if cwd and cwd.endswith(suffix):
                return suffix, product
        return None

    def _build(self, cmd: list[str], cwd: str | None) -> CommandResult:
        found = self._product_for(cwd)
        if found is None:
            return CommandResult.success(cmd)
        suffix, product = found

        is_build = cmd[0] == "make" and (len(cmd) == 1 or cmd[1].startswith("BUILDTAGS="))
        if (is_build or cmd[:2] == ["go", "install"]) and suffix in self.failing_builds:
            return CommandResult.failure(
                cmd, stderr=f"make: *** [{suffix.rsplit('/', 1)[-1]}] Error 2", returncode=2,
            )

        if tuple(cmd) == product.trigger:
            binary = self.path(product.binary)
            binary.parent.mkdir(parents=True, exist_ok=True)
            binary.write_text("#!/bin/sh\n")
            binary.chmod(0o755)
            ref = self._heads.get(cwd, "")
            if product.version_format:
                self.versions[str(binary)] = product.version_format.format(v=ref.lstrip("v"))
        return CommandResult.success(cmd)

    # ── systemd ─────────────────────────────────────────────────

    def _systemctl(self, cmd: list[str]) -> CommandResult:
        verb = cmd[1]
        if verb == "daemon-reload":
            if self.failing_reloads > 0:
                self.failing_reloads -= 1
                return CommandResult.failure(cmd, stderr="Failed to reload daemon: Connection timed out")
            self.reloads += 1
            for unit in self.units.values():
                unit.need_reload = False
            return CommandResult.success(cmd)

        name = cmd[-1] if verb != "show" else cmd[2]
        unit = self.units.setdefault(name, Unit(loaded=False))

        if verb == "show":
            state = "failed" if unit.failed else ("active" if unit.active else "inactive")
            lines = [
                f"ActiveState={state}",
                f"SubState={'running' if unit.active else 'dead'}",
                f"LoadState={'loaded' if unit.loaded else 'not-found'}",
                f"UnitFileState={'enabled' if unit.enabled else 'disabled'}",
                f"NeedDaemonReload={'yes' if unit.need_reload else 'no'}",
                f"ActiveEnterTimestampMonotonic={int(unit.active_since * 1_000_000) if unit.active_since else 0}",
            ]
            return CommandResult.success(cmd, stdout="\n".join(lines) + "\n")
        if verb == "is-active":
            return CommandResult(command=cmd, returncode=0 if unit.active else 3)
        if verb == "is-enabled":
            return CommandResult(command=cmd, returncode=0 if unit.enabled else 1)
        if verb == "enable":
            unit.enabled = True
            return CommandResult.success(cmd)
        if verb in ("start", "restart"):
            if verb == "restart":
                self.restarts.append(name)
            if name in self.failing_starts:
                unit.active, unit.failed = False, True
                return CommandResult.failure(
                    cmd, stderr=f"Job for {name}.service failed because the control process exited with error code.",
                )
            unit.active, unit.failed = True, False
            unit.active_since = time.monotonic()
            return CommandResult.success(cmd)
        return CommandResult.success(cmd)


# ── Archive fixtures ────────────────────────────────────────────


def make_tarball(path: Path, members: dict[str, str], mode: int = 0o755) -> Path:
    """Write a .tar.gz at ``path`` containing ``members`` (name → content)."""
    with tarfile.open(path, "w:gz") as tar:
        for name, content in members.items():
            data = content.encode()
            info = tarfile.TarInfo(name)
            info.size = len(data)
            info.mode = mode
            tar.addfile(info, io.BytesIO(data))
    return path


@pytest.fixture
def tarball():
    """``make_tarball`` as a fixture."""
    return make_tarball


@pytest.fixture
def sysroot(tmp_path: Path) -> Path:
    root = tmp_path / "root"
    root.mkdir()
    return root


@pytest.fixture
def fake_node(sysroot: Path) -> FakeNode:
    return FakeNode(sysroot=sysroot)


@pytest.fixture
def release_dir(tmp_path: Path) -> Path:
    """Release archives and keys served over ``file://``."""
    d = tmp_path / "releases"
    d.mkdir()
    (d / "Release.key").write_text(
        "-----BEGIN PGP PUBLIC KEY BLOCK-----\nmQENBFake\n-----END PGP PUBLIC KEY BLOCK-----\n"
    )
    make_tarball(d / "go1.9.2.linux-amd64.tar.gz", {"go/bin/go": "#!/bin/sh\n", "go/VERSION": "go1.9.2"})
    make_tarball(
        d / "cni-plugins-amd64-v0.6.0.tgz",
        {"./bridge": "#!/bin/sh\n", "./loopback": "#!/bin/sh\n", "./host-local": "#!/bin/sh\n"},
    )
    make_tarball(
        d / "cri-containerd-1.0.0-alpha.0.tar.gz",
        {
            "usr/local/bin/cri-containerd": "#!/bin/sh\n",
            "usr/local/bin/containerd": "#!/bin/sh\n",
            "etc/systemd/system/containerd.service": "[Unit]\nDescription=containerd\n",
            "etc/systemd/system/cri-containerd.service": "[Unit]\nDescription=cri-containerd\n",
        },
    )
    return d


def node_config_data(sysroot: Path, release_dir: Path, **overrides) -> dict:
    """Raw config mapping pointing every download at ``release_dir``."""
    base = release_dir.as_uri()
    data = {
        "sysroot": str(sysroot),
        "arch": "amd64",
        "clear_containers": {
            "repository": {
                "name": "cc-runtime",
                "uri": "http://download.opensuse.org/repositories/home:/clearcontainers:/clear-containers-3/xUbuntu_16.04/",
                "suite": "/",
                "key_url": f"{base}/Release.key",
            },
        },
        "cri": {
            "crio": {"go_url": f"{base}/go{{version}}.linux-{{arch}}.tar.gz"},
            "containerd": {"url": f"{base}/cri-containerd-{{version}}.tar.gz"},
        },
        "cni": {"url": f"{base}/cni-plugins-{{arch}}-{{version}}.tgz"},
        "retries": {"attempts": 3, "base_delay": 0, "max_delay": 0},
        "timeouts": {"service_activation": 5},
    }
    return _merge(data, overrides)


def _merge(base: dict, overrides: dict) -> dict:
    merged = dict(base)
    for key, value in overrides.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _merge(merged[key], value)
        else:
            merged[key] = value
    return merged


@pytest.fixture
def node_config(sysroot: Path, release_dir: Path, fake_node: FakeNode) -> NodeConfig:
    """Default node config with downloads served from ``release_dir``."""
    config = NodeConfig.model_validate(node_config_data(sysroot, release_dir))
    fake_node.versions[str(fake_node.path("/usr/local/go/bin/go"))] = (
        "go version go1.9.2 linux/amd64\n"
    )
    return config


@pytest.fixture
def make_config(sysroot: Path, release_dir: Path, node_config: NodeConfig):
    """Build a NodeConfig like ``node_config`` with nested overrides."""

    def make(**overrides) -> NodeConfig:
        return NodeConfig.model_validate(node_config_data(sysroot, release_dir, **overrides))

    return make
