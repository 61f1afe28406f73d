"""
NodeConfig — everything the node recipe can be told.

Defaults reproduce the reference node: Clear Containers 3 from the
openSUSE build service, runc v1.0.0-rc4 and CRI-O v1.0.0 built from
source, CNI plugins v0.6.0, device-mapper storage with a 95/1 thin
pool that autoextends by 20% at 80% usage.

Versions are pinned here and never discovered at run time.
"""

from __future__ import annotations

import platform
from typing import Literal

from pydantic import BaseModel, Field, model_validator

from nodeprov.core.models.actions import RepositorySpec

_ARCH_MAP = {"x86_64": "amd64", "aarch64": "arm64", "armv7l": "arm"}


def _detect_arch() -> str:
    machine = platform.machine().lower()
    return _ARCH_MAP.get(machine, machine)


# ── Storage ─────────────────────────────────────────────────────


class DeviceMapperConfig(BaseModel):
    """direct-lvm thin pool settings for one block device."""

    device: str
    thinp_percent: int = Field(95, ge=1, le=100)
    thinp_metapercent: int = Field(1, ge=1, le=100)
    autoextend_threshold: int = Field(80, ge=1, le=100)
    autoextend_percent: int = Field(20, ge=1, le=100)
    device_force: bool = True

    def storage_options(self) -> list[str]:
        """``dm.*`` options in the order the runtimes document them."""
        return [
            f"dm.directlvm_device={self.device}",
            f"dm.thinp_percent={self.thinp_percent}",
            f"dm.thinp_metapercent={self.thinp_metapercent}",
            f"dm.thinp_autoextend_threshold={self.autoextend_threshold}",
            f"dm.thinp_autoextend_percent={self.autoextend_percent}",
            f"dm.directlvm_device_force={'true' if self.device_force else 'false'}",
        ]


class StorageConfig(BaseModel):
    driver: Literal["devicemapper", "overlay2", "overlay", "vfs"] = "devicemapper"
    devicemapper: DeviceMapperConfig | None = None

    @model_validator(mode="after")
    def _devicemapper_needs_device(self) -> StorageConfig:
        if self.driver == "devicemapper" and self.devicemapper is None:
            raise ValueError("storage driver 'devicemapper' requires a 'devicemapper' block")
        return self

    @property
    def device(self) -> str | None:
        if self.driver == "devicemapper" and self.devicemapper:
            return self.devicemapper.device
        return None

    def options(self) -> list[str]:
        if self.driver == "devicemapper" and self.devicemapper:
            return self.devicemapper.storage_options()
        return []


# ── Runtimes ────────────────────────────────────────────────────

_CC_REPO = "home:/clearcontainers:/clear-containers-3/xUbuntu_16.04/"


class ClearContainersConfig(BaseModel):
    repository: RepositorySpec = Field(
        default_factory=lambda: RepositorySpec(
            name="cc-runtime",
            uri=f"http://download.opensuse.org/repositories/{_CC_REPO}",
            suite="/",
            key_url=(
                "https://download.opensuse.org/repositories/"
                "home:clearcontainers:clear-containers-3/xUbuntu_16.04/Release.key"
            ),
        )
    )
    packages: list[str] = Field(default_factory=lambda: ["cc-runtime"])
    storage_tools: list[str] = Field(
        default_factory=lambda: ["lvm2", "thin-provisioning-tools"]
    )
    runtime_path: str = "/usr/bin/cc-runtime"
    proxy_service: str = "cc-proxy"


class DockerConfig(BaseModel):
    """Docker integration (the docker daemon itself is expected on the node)."""

    enabled: bool = False
    dockerd: str = "/usr/bin/dockerd"
    debug: bool = True
    dropin_dir: str = "/etc/systemd/system/docker.service.d"
    dropin_name: str = "clr-containers.conf"
    daemon_config: str = "/etc/docker/daemon.json"
    storage: StorageConfig = Field(
        default_factory=lambda: StorageConfig(
            devicemapper=DeviceMapperConfig(device="/dev/sdd")
        )
    )


class CrioConfig(BaseModel):
    revision: str = "v1.0.0"
    repo_url: str = "https://github.com/kubernetes-incubator/cri-o.git"
    runc_revision: str = "v1.0.0-rc4"
    runc_repo_url: str = "https://github.com/opencontainers/runc.git"
    md2man_revision: str = "v1.0.8"
    md2man_repo_url: str = "https://github.com/cpuguy83/go-md2man.git"
    go_version: str = "1.9.2"
    go_url: str = "https://storage.googleapis.com/golang/go{version}.linux-{arch}.tar.gz"
    build_tags: list[str] = Field(default_factory=lambda: ["seccomp", "apparmor"])
    ppas: list[str] = Field(
        default_factory=lambda: ["projectatomic/ppa", "alexlarsson/flatpak"]
    )
    build_packages: list[str] = Field(
        default_factory=lambda: [
            "btrfs-tools",
            "gcc",
            "git",
            "libapparmor-dev",
            "libassuan-dev",
            "libc6-dev",
            "libdevmapper-dev",
            "libglib2.0-dev",
            "libgpg-error-dev",
            "libgpgme11-dev",
            "libostree-dev",
            "libseccomp-dev",
            "libselinux1-dev",
            "make",
            "pkg-config",
            "skopeo-containers",
        ]
    )
    binary: str = "/usr/local/bin/crio"
    runc_path: str = "/usr/local/sbin/runc"
    conmon_path: str = "/usr/local/libexec/crio/conmon"
    config_path: str = "/etc/crio/crio.conf"
    unit_dropin_dir: str = "/etc/systemd/system/crio.service.d"
    socket: str = "/var/run/crio.sock"
    root: str = "/var/lib/containers/storage"
    runroot: str = "/var/run/containers/storage"
    log_level: str = "debug"
    cgroup_manager: str = "cgroupfs"
    default_workload_trust: Literal["trusted", "untrusted"] = "untrusted"


class ContainerdConfig(BaseModel):
    version: str = "1.0.0-alpha.0"
    url: str = (
        "https://github.com/kubernetes-incubator/cri-containerd/releases/download/"
        "v{version}/cri-containerd-{version}.tar.gz"
    )
    checksum: str | None = None
    binary: str = "/usr/local/bin/cri-containerd"
    config_path: str = "/etc/containerd/config.toml"
    root: str = "/var/lib/containerd"
    state: str = "/run/containerd"
    socket: str = "/run/containerd/containerd.sock"
    cri_socket: str = "/var/run/cri-containerd.sock"
    debug_level: str = "debug"
    volume_group: str = "containerd"
    thinpool_profile: str = "/etc/lvm/profile/containerd-thinpool.profile"
    storage_unit: str = "/etc/systemd/system/devicemapper-containerd.service"
    packages: list[str] = Field(default_factory=lambda: ["socat"])


class CriConfig(BaseModel):
    """The CRI shim is a single explicit choice."""

    shim: Literal["crio", "containerd"] = "crio"
    storage: StorageConfig = Field(
        default_factory=lambda: StorageConfig(
            devicemapper=DeviceMapperConfig(device="/dev/sdc")
        )
    )
    crio: CrioConfig = Field(default_factory=CrioConfig)
    containerd: ContainerdConfig = Field(default_factory=ContainerdConfig)

    @property
    def service(self) -> str:
        return "crio" if self.shim == "crio" else "cri-containerd"

    @property
    def socket(self) -> str:
        return self.crio.socket if self.shim == "crio" else self.containerd.cri_socket


class CniConfig(BaseModel):
    version: str = "v0.6.0"
    url: str = (
        "https://github.com/containernetworking/plugins/releases/download/"
        "{version}/cni-plugins-{arch}-{version}.tgz"
    )
    checksum: str | None = None
    bin_dir: str = "/opt/cni/bin"
    conf_dir: str = "/etc/cni/net.d"
    marker_plugin: str = "bridge"


class KubeletConfig(BaseModel):
    dropin_dir: str = "/etc/systemd/system/kubelet.service.d"
    dropin_name: str = "10-cri.conf"
    service: str = "kubelet"
    environment_file: str = "/etc/default/kubelet"
    runtime_request_timeout: str = "30m"
    cloud_provider: str = "azure"
    cloud_config: str = "/etc/kubernetes/azure.json"


# ── Ambient ─────────────────────────────────────────────────────


class RetryConfig(BaseModel):
    attempts: int = Field(3, ge=1)
    base_delay: float = Field(2.0, ge=0)
    max_delay: float = Field(30.0, ge=0)


class TimeoutConfig(BaseModel):
    command: int = 120
    network: int = 600
    build: int = 3600
    service_activation: int = 60


class NodeConfig(BaseModel):
    """Root configuration model (``node.yml``)."""

    sysroot: str = "/"
    work_dir: str = "/var/lib/nodeprov"
    go_root: str = "/usr/local/go"
    arch: str = Field(default_factory=_detect_arch)

    clear_containers: ClearContainersConfig = Field(default_factory=ClearContainersConfig)
    docker: DockerConfig = Field(default_factory=DockerConfig)
    cri: CriConfig = Field(default_factory=CriConfig)
    cni: CniConfig = Field(default_factory=CniConfig)
    kubelet: KubeletConfig = Field(default_factory=KubeletConfig)

    retries: RetryConfig = Field(default_factory=RetryConfig)
    timeouts: TimeoutConfig = Field(default_factory=TimeoutConfig)

    @model_validator(mode="after")
    def _one_owner_per_device(self) -> NodeConfig:
        if not self.docker.enabled:
            return self
        docker_dev = self.docker.storage.device
        if docker_dev and docker_dev == self.cri.storage.device:
            raise ValueError(
                f"docker and the {self.cri.shim} CRI shim both claim device-mapper "
                f"device {docker_dev}; give each storage consumer its own device"
            )
        return self

    def revisions(self) -> dict[str, str]:
        """Pinned revision per component, keyed as steps reference them."""
        crio = self.cri.crio
        return {
            "go": crio.go_version,
            "go-md2man": crio.md2man_revision,
            "runc": crio.runc_revision,
            "cri-o": crio.revision,
            "cri-containerd": self.cri.containerd.version,
            "cni": self.cni.version,
        }
