"""
Node recipe — the step graph for a Clear Containers node.

    cc-runtime ─┬─ thin-provisioning-tools
                └─ cc-proxy
    [docker-runtime-config → docker-service]            (docker.enabled)

    crio shim:
      go-toolchain, crio-build-deps → go-md2man, runc → cri-o
        → crio-config → crio-service
    containerd shim:
      cri-containerd-deps → cri-containerd → containerd-config
        → containerd-service

    <shim> → cni-plugins → cni-config-dir
    <shim service>, cni-config-dir → kubelet-config → kubelet-reload

Steps hand values to each other through exports (``runtime_path``,
``cri_socket``...) rather than shared globals; every WriteConfig step
declares the outputs its templates read.
"""

from __future__ import annotations

import posixpath

from nodeprov.core.data import load_template
from nodeprov.core.models.actions import (
    BuildFromSource,
    FetchArchive,
    InstallPackages,
    ManageService,
    RepositorySpec,
    WriteConfig,
)
from nodeprov.core.models.node import NodeConfig
from nodeprov.core.models.step import Step
from nodeprov.core.models.template import ConfigTemplate, ServiceUnit

CRIO_SERVICE = "crio"
CONTAINERD_SERVICE = "containerd"
CRI_CONTAINERD_SERVICE = "cri-containerd"
STORAGE_UNIT = "devicemapper-containerd"


def build_node_steps(config: NodeConfig) -> list[Step]:
    """All steps for ``config``, in declaration order."""
    steps = _clear_containers_steps(config)
    if config.docker.enabled:
        steps += _docker_steps(config)
    if config.cri.shim == "crio":
        steps += _crio_steps(config)
        shim_step, shim_service_step = "cri-o", "crio-service"
    else:
        steps += _containerd_steps(config)
        shim_step, shim_service_step = "cri-containerd", "containerd-service"
    steps += _cni_steps(config, after=shim_step)
    steps += _kubelet_steps(config, after=[shim_service_step, "cni-config-dir"])
    return steps


def _dropin(directory: str, name: str) -> str:
    return posixpath.join(directory, name)


# ── Clear Containers ────────────────────────────────────────────


def _clear_containers_steps(config: NodeConfig) -> list[Step]:
    cc = config.clear_containers
    return [
        Step(
            name="cc-runtime",
            description="Install the Clear Containers runtime",
            action=InstallPackages(packages=cc.packages, repositories=[cc.repository]),
            exports={"cc_runtime_path": cc.runtime_path},
        ),
        Step(
            name="thin-provisioning-tools",
            description="Install LVM thin provisioning tools for device-mapper storage",
            action=InstallPackages(packages=cc.storage_tools),
            depends_on=["cc-runtime"],
        ),
        Step(
            name="cc-proxy",
            description="Enable and start the Clear Containers proxy",
            action=ManageService(
                units=[ServiceUnit(name=cc.proxy_service, state="enabled+active")],
                reload_definitions=True,
            ),
            depends_on=["cc-runtime"],
        ),
    ]


# ── Docker (optional) ───────────────────────────────────────────


def _docker_steps(config: NodeConfig) -> list[Step]:
    docker = config.docker
    dropin = _dropin(docker.dropin_dir, docker.dropin_name)
    storage = docker.storage
    return [
        Step(
            name="docker-runtime-config",
            description="Make cc-runtime docker's default runtime",
            action=WriteConfig(
                files=[
                    ConfigTemplate(
                        path=dropin,
                        body=load_template("docker-clr-containers.conf.j2"),
                        variables={"dockerd": docker.dockerd, "debug": docker.debug},
                        reason="docker service override adding cc-runtime",
                    ),
                    ConfigTemplate(
                        path=docker.daemon_config,
                        body=load_template("docker-daemon.json.j2"),
                        variables={
                            "daemon": {
                                "storage-driver": storage.driver,
                                "storage-opts": storage.options(),
                            },
                        },
                        reason="docker storage driver",
                    ),
                ],
            ),
            depends_on=["cc-runtime", "thin-provisioning-tools"],
            requires=["cc_runtime_path"],
        ),
        Step(
            name="docker-service",
            description="Restart docker on configuration change",
            action=ManageService(
                units=[
                    ServiceUnit(
                        name="docker",
                        state="restarted",
                        config_paths=[dropin, docker.daemon_config],
                    ),
                ],
                reload_definitions=True,
            ),
            depends_on=["docker-runtime-config"],
        ),
    ]


# ── CRI-O ───────────────────────────────────────────────────────


def _crio_steps(config: NodeConfig) -> list[Step]:
    crio = config.cri.crio
    go_root = config.go_root
    go_bin = posixpath.join(go_root, "bin")
    gopath_bin = posixpath.join(config.work_dir, "go", "bin")
    crio_conf = crio.config_path
    log_dropin = _dropin(crio.unit_dropin_dir, "10-log-level.conf")
    storage = config.cri.storage

    return [
        Step(
            name="go-toolchain",
            description=f"Install Go {crio.go_version}",
            action=FetchArchive(
                component="go",
                url=crio.go_url,
                dest=posixpath.dirname(go_root.rstrip("/")),
                creates=[posixpath.join(go_bin, "go")],
                version_command=[posixpath.join(go_bin, "go"), "version"],
                replaces=go_root.rstrip("/"),
            ),
            exports={"go_bin": go_bin},
        ),
        Step(
            name="crio-build-deps",
            description="Install CRI-O build dependencies",
            action=InstallPackages(
                packages=crio.build_packages,
                repositories=[
                    RepositorySpec(name=ppa.replace("/", "-"), kind="ppa", ppa=ppa)
                    for ppa in crio.ppas
                ],
            ),
        ),
        Step(
            name="go-md2man",
            description="Build go-md2man (needed for CRI-O man pages)",
            action=BuildFromSource(
                component="go-md2man",
                repo_url=crio.md2man_repo_url,
                checkout="github.com/cpuguy83/go-md2man",
                binary=posixpath.join(gopath_bin, "go-md2man"),
                version_args=[],
                build_command=["go", "install", "."],
                install_targets=[],
            ),
            depends_on=["go-toolchain", "crio-build-deps"],
            requires=["go_bin"],
        ),
        Step(
            name="runc",
            description=f"Build runc {crio.runc_revision}",
            action=BuildFromSource(
                component="runc",
                repo_url=crio.runc_repo_url,
                checkout="github.com/opencontainers/runc",
                binary=crio.runc_path,
                build_tags=crio.build_tags,
            ),
            depends_on=["go-toolchain", "crio-build-deps"],
            requires=["go_bin"],
            exports={"runtime_path": crio.runc_path},
        ),
        Step(
            name="cri-o",
            description=f"Build CRI-O {crio.revision}",
            action=BuildFromSource(
                component="cri-o",
                repo_url=crio.repo_url,
                checkout="github.com/kubernetes-incubator/cri-o",
                binary=crio.binary,
                build_tags=crio.build_tags,
                install_targets=["install", "install.config", "install.systemd"],
            ),
            depends_on=["runc", "go-md2man"],
            requires=["go_bin"],
            exports={"cri_socket": crio.socket, "cri_service": CRIO_SERVICE},
        ),
        Step(
            name="crio-config",
            description="Render CRI-O configuration",
            action=WriteConfig(
                files=[
                    ConfigTemplate(
                        path=crio_conf,
                        body=load_template("crio.conf.j2"),
                        variables={
                            "root": crio.root,
                            "runroot": crio.runroot,
                            "storage_driver": storage.driver,
                            "storage_options": storage.options(),
                            "log_level": crio.log_level,
                            "default_workload_trust": crio.default_workload_trust,
                            "conmon": crio.conmon_path,
                            "cgroup_manager": crio.cgroup_manager,
                            "cni_conf_dir": config.cni.conf_dir.rstrip("/"),
                            "cni_bin_dir": config.cni.bin_dir.rstrip("/"),
                        },
                        reason="CRI-O server configuration",
                    ),
                    ConfigTemplate(
                        path=log_dropin,
                        body=load_template("crio-log-level.conf.j2"),
                        variables={"crio_binary": crio.binary, "log_level": crio.log_level},
                        reason="CRI-O log level (unit drop-in)",
                    ),
                ],
            ),
            depends_on=["cri-o", "cc-runtime"],
            requires=["runtime_path", "cc_runtime_path", "cri_socket"],
        ),
        Step(
            name="crio-service",
            description="Start CRI-O, restarting it on configuration change",
            action=ManageService(
                units=[
                    ServiceUnit(
                        name=CRIO_SERVICE,
                        state="restarted",
                        config_paths=[crio_conf, log_dropin],
                    ),
                    ServiceUnit(name="crio-shutdown", state="enabled"),
                ],
                reload_definitions=True,
            ),
            depends_on=["crio-config"],
        ),
    ]


# ── cri-containerd ──────────────────────────────────────────────


def _containerd_steps(config: NodeConfig) -> list[Step]:
    ctd = config.cri.containerd
    storage = config.cri.storage
    dm = storage.devicemapper if storage.driver == "devicemapper" else None

    files = [
        ConfigTemplate(
            path=ctd.config_path,
            body=load_template("containerd-config.toml.j2"),
            variables={
                "root": ctd.root,
                "state": ctd.state,
                "socket": ctd.socket,
                "debug_level": ctd.debug_level,
            },
            reason="containerd daemon configuration",
        ),
    ]
    units = []
    if dm is not None:
        profile_name = posixpath.splitext(posixpath.basename(ctd.thinpool_profile))[0]
        files += [
            ConfigTemplate(
                path=ctd.thinpool_profile,
                body=load_template("containerd-thinpool.profile.j2"),
                variables={
                    "autoextend_threshold": dm.autoextend_threshold,
                    "autoextend_percent": dm.autoextend_percent,
                },
                reason="LVM thin pool autoextend profile",
            ),
            ConfigTemplate(
                path=ctd.storage_unit,
                body=load_template("devicemapper-containerd.service.j2"),
                variables={
                    "device": dm.device,
                    "device_force": dm.device_force,
                    "volume_group": ctd.volume_group,
                    "thinp_percent": dm.thinp_percent,
                    "thinp_metapercent": dm.thinp_metapercent,
                    "profile_name": profile_name,
                },
                reason="one-shot thin pool setup for containerd",
            ),
        ]
        units.append(ServiceUnit(name=STORAGE_UNIT, state="enabled+active"))

    units += [
        ServiceUnit(name=CONTAINERD_SERVICE, state="restarted", config_paths=[ctd.config_path]),
        ServiceUnit(name=CRI_CONTAINERD_SERVICE, state="enabled+active"),
    ]

    return [
        Step(
            name="cri-containerd-deps",
            description="Install cri-containerd dependencies",
            action=InstallPackages(packages=ctd.packages),
        ),
        Step(
            name="cri-containerd",
            description=f"Install cri-containerd {ctd.version}",
            action=FetchArchive(
                component="cri-containerd",
                url=ctd.url,
                dest="/",
                creates=[ctd.binary],
                checksum=ctd.checksum,
            ),
            depends_on=["cri-containerd-deps"],
            exports={"cri_socket": ctd.cri_socket, "cri_service": CRI_CONTAINERD_SERVICE},
        ),
        Step(
            name="containerd-config",
            description="Render containerd configuration",
            action=WriteConfig(files=files),
            depends_on=["cri-containerd", "cc-runtime", "thin-provisioning-tools"],
            requires=["cc_runtime_path"],
        ),
        Step(
            name="containerd-service",
            description="Start containerd and cri-containerd",
            action=ManageService(units=units, reload_definitions=True),
            depends_on=["containerd-config"],
        ),
    ]


# ── CNI ─────────────────────────────────────────────────────────


def _cni_steps(config: NodeConfig, after: str) -> list[Step]:
    cni = config.cni
    return [
        Step(
            name="cni-plugins",
            description=f"Install CNI plugins {cni.version}",
            action=FetchArchive(
                component="cni",
                url=cni.url,
                dest=cni.bin_dir,
                creates=[posixpath.join(cni.bin_dir, cni.marker_plugin)],
                checksum=cni.checksum,
            ),
            depends_on=[after],
            exports={"cni_bin_dir": cni.bin_dir},
        ),
        Step(
            name="cni-config-dir",
            description="Create the CNI network configuration directory",
            action=WriteConfig(directories=[cni.conf_dir]),
            depends_on=["cni-plugins"],
            exports={"cni_conf_dir": cni.conf_dir},
        ),
    ]


# ── Kubelet ─────────────────────────────────────────────────────


def _kubelet_steps(config: NodeConfig, after: list[str]) -> list[Step]:
    kubelet = config.kubelet
    dropin = _dropin(kubelet.dropin_dir, kubelet.dropin_name)
    return [
        Step(
            name="kubelet-config",
            description="Point the kubelet at the CRI shim socket",
            action=WriteConfig(
                files=[
                    ConfigTemplate(
                        path=dropin,
                        body=load_template("kubelet-cri.conf.j2"),
                        variables={
                            "environment_file": kubelet.environment_file,
                            "runtime_request_timeout": kubelet.runtime_request_timeout,
                            "cloud_provider": kubelet.cloud_provider,
                            "cloud_config": kubelet.cloud_config,
                        },
                        reason="kubelet remote container runtime",
                    ),
                ],
            ),
            depends_on=after,
            requires=["cri_socket", "cri_service"],
        ),
        Step(
            name="kubelet-reload",
            description="Reload the kubelet unit definition",
            action=ManageService(
                units=[ServiceUnit(name=kubelet.service, state="loaded")],
                reload_definitions=True,
            ),
            depends_on=["kubelet-config"],
        ),
    ]
