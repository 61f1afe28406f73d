"""
Step executors — per-action idempotency checks and apply functions.

Each action kind has a ``check`` (read-only: is the live system
already in the requested state?) and an ``apply`` (make it so).
Both are dispatched on ``action.kind``. Executors raise
``ProvisionError`` subclasses; turning those into results is the
pipeline's job.

Network-bound operations are wrapped in the run's retry policy.
Nothing else is retried.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from nodeprov.adapters.base import CommandRunner
from nodeprov.core.context import BuildContext
from nodeprov.core.errors import (
    FatalSourceError,
    FilesystemError,
    ServiceActivationError,
)
from nodeprov.core.models.actions import (
    BuildFromSource,
    FetchArchive,
    InstallPackages,
    ManageService,
    WriteConfig,
)
from nodeprov.core.models.step import Step
from nodeprov.core.models.template import ServiceUnit
from nodeprov.core.reliability.retry import NO_RETRY, RetryPolicy, call_with_retry
from nodeprov.core.services.archives import ArchiveFetcher
from nodeprov.core.services.config_writer import ConfigWriter
from nodeprov.core.services.packages import PackageInstaller
from nodeprov.core.services.service_manager import ServiceManager, ServiceStatus
from nodeprov.core.services.source_builder import SourceBuilder

logger = logging.getLogger(__name__)

SYSTEMD_UNIT_DIRS = (
    "/etc/systemd/system/",
    "/lib/systemd/system/",
    "/usr/lib/systemd/system/",
    "/usr/local/lib/systemd/system/",
)

_NEEDS_ENABLED = {"enabled+active", "restarted", "enabled"}
_NEEDS_ACTIVE = {"enabled+active", "active", "restarted"}


@dataclass
class NodeServices:
    """The services a run talks to the node through."""

    runner: CommandRunner
    writer: ConfigWriter
    packages: PackageInstaller
    builder: SourceBuilder
    archives: ArchiveFetcher
    services: ServiceManager


@dataclass
class StepEnv:
    """Per-step view of the run: the current context plus run-wide state."""

    context: BuildContext
    node: NodeServices
    retry: RetryPolicy = NO_RETRY
    changed_paths: set[str] = field(default_factory=set)
    reloaded_paths: set[str] = field(default_factory=set)
    sleep: Callable[[float], None] = time.sleep

    def retrying(self, fn: Callable[[], Any], label: str) -> Any:
        return call_with_retry(fn, self.retry, label=label, sleep=self.sleep)


@dataclass
class Outcome:
    """What an apply function did."""

    detail: str = ""
    changed: list[str] = field(default_factory=list)
    restarted: list[str] = field(default_factory=list)


# ── InstallPackages ─────────────────────────────────────────────


def _check_packages(step: Step, env: StepEnv) -> bool:
    action: InstallPackages = step.action
    pkgs = env.node.packages
    if not all(pkgs.has_repository(r) for r in action.repositories):
        return False
    return not pkgs.missing(action.packages)


def _apply_packages(step: Step, env: StepEnv) -> Outcome:
    action: InstallPackages = step.action
    pkgs = env.node.packages
    out = Outcome()

    added = []
    for repo in action.repositories:
        if env.retrying(lambda r=repo: pkgs.ensure_repository(r), f"add source {repo.name}"):
            added.append(repo.name)
            for path in (repo.list_path, repo.keyring_path):
                if path:
                    out.changed.append(path)

    # sources already present may come from a run whose index refresh failed
    refresh = bool(action.repositories) and not added
    installed = env.retrying(
        lambda: pkgs.install_packages(action.packages, refresh_index=refresh),
        f"install {step.name}",
    )
    parts = []
    if added:
        parts.append(f"sources added: {', '.join(added)}")
    parts.append(f"installed: {', '.join(installed)}" if installed else "packages present")
    out.detail = "; ".join(parts)
    return out


# ── BuildFromSource ─────────────────────────────────────────────


def _check_build(step: Step, env: StepEnv) -> bool:
    action: BuildFromSource = step.action
    ctx = env.context
    return env.node.builder.is_current(
        ctx.resolve(action.binary), action.version_args, ctx.revision(action.component),
    )


def _apply_build(step: Step, env: StepEnv) -> Outcome:
    action: BuildFromSource = step.action
    ctx = env.context
    builder = env.node.builder

    ref = ctx.revision(action.component)
    if not ref:
        raise FatalSourceError(f"No pinned revision configured for {action.component}")

    workdir = ctx.resolve(ctx.gopath / "src" / action.checkout)
    toolchain = ctx.toolchain_env()

    commit = env.retrying(
        lambda: builder.fetch(action.repo_url, ref, workdir), f"fetch {action.component}",
    )
    builder.build(workdir, action.build_command, action.build_tags, toolchain)
    builder.install(
        workdir,
        action.install_targets,
        {rel: ctx.resolve(dest) for rel, dest in action.artifacts.items()},
        toolchain,
    )

    if not builder.is_current(ctx.resolve(action.binary), action.version_args, ref):
        raise FatalSourceError(
            f"{action.binary} does not report {action.component} {ref} after install"
        )
    return Outcome(
        detail=f"built {action.component} {ref} ({commit[:12]})",
        changed=[action.binary, *action.artifacts.values()],
    )


# ── FetchArchive ────────────────────────────────────────────────


def _check_archive(step: Step, env: StepEnv) -> bool:
    action: FetchArchive = step.action
    ctx = env.context
    if not all(ctx.resolve(p).exists() for p in action.creates):
        return False
    version = ctx.revision(action.component)
    if action.version_command and version:
        cmd = [str(ctx.resolve(action.version_command[0])), *action.version_command[1:]]
        return env.node.builder.reports_version(cmd, version)
    return True


def _apply_archive(step: Step, env: StepEnv) -> Outcome:
    action: FetchArchive = step.action
    ctx = env.context
    version = ctx.revision(action.component) or ""
    url = action.resolved_url(version, ctx.arch)
    replace = ctx.resolve(action.replaces) if action.replaces else None

    env.retrying(
        lambda: env.node.archives.install(
            url, ctx.resolve(action.dest), action.checksum, replace=replace,
        ),
        f"fetch {action.component}",
    )

    absent = [p for p in action.creates if not ctx.resolve(p).exists()]
    if absent:
        raise FatalSourceError(f"{url} did not provide {', '.join(absent)}")
    return Outcome(
        detail=f"installed {action.component} {version or '(unversioned)'} into {action.dest}",
        changed=list(action.creates),
    )


# ── WriteConfig ─────────────────────────────────────────────────


def _render_all(step: Step, env: StepEnv) -> list[tuple[str, bytes, int]]:
    action: WriteConfig = step.action
    outputs = {name: env.context.outputs[name] for name in step.requires}
    return [
        (tpl.path, ConfigWriter.render(tpl.body, {**outputs, **tpl.variables}), tpl.mode)
        for tpl in action.files
    ]


def _check_config(step: Step, env: StepEnv) -> bool:
    action: WriteConfig = step.action
    writer = env.node.writer
    if not all(writer.target(d).is_dir() for d in action.directories):
        return False
    return all(writer.is_current(path, data) for path, data, _ in _render_all(step, env))


def _apply_config(step: Step, env: StepEnv) -> Outcome:
    action: WriteConfig = step.action
    writer = env.node.writer
    out = Outcome()

    rendered = _render_all(step, env)

    for directory in action.directories:
        if writer.ensure_directory(directory):
            out.changed.append(directory)

    for path, data, mode in rendered:
        if writer.write_if_changed(path, data, mode):
            out.changed.append(path)
            env.changed_paths.add(path)

    out.detail = f"wrote {', '.join(out.changed)}" if out.changed else "content current"
    return out


# ── ManageService ───────────────────────────────────────────────

# activation timestamps and file mtimes come from different clocks
_RESTART_SLACK = 1.0


def _unit_files_changed(env: StepEnv) -> list[str]:
    """Unit files written in this run that systemd has not reloaded yet."""
    return sorted(
        p for p in env.changed_paths - env.reloaded_paths if p.startswith(SYSTEMD_UNIT_DIRS)
    )


def _reload(env: StepEnv) -> None:
    pending = _unit_files_changed(env)
    env.node.services.reload_definitions()
    env.reloaded_paths.update(pending)


def _restart_owed(unit: ServiceUnit, st: ServiceStatus, env: StepEnv) -> bool:
    """Whether a restart-on-change unit runs with older config than is on disk.

    A config written in this run always counts. Otherwise a config file
    modified after the unit's last activation does, which covers runs
    interrupted between writing the config and restarting.
    """
    if unit.state != "restarted":
        return False
    if any(p in env.changed_paths for p in unit.config_paths):
        return True
    if not st.active or st.active_since is None:
        return False
    for path in unit.config_paths:
        mtime = env.node.writer.modified_at(path)
        if mtime is not None and mtime > st.active_since + _RESTART_SLACK:
            return True
    return False


def _check_service(step: Step, env: StepEnv) -> bool:
    action: ManageService = step.action
    svc = env.node.services

    if action.reload_definitions and _unit_files_changed(env):
        return False

    for unit in action.units:
        st = svc.status(unit.name)
        if action.reload_definitions and (st.need_reload or not st.loaded):
            return False
        if unit.state == "loaded":
            if not st.loaded:
                return False
            continue
        if _restart_owed(unit, st, env):
            return False
        if unit.state in _NEEDS_ENABLED and not svc.is_enabled(unit.name):
            return False
        if unit.state in _NEEDS_ACTIVE and not st.active:
            return False
    return True


def _apply_service(step: Step, env: StepEnv) -> Outcome:
    action: ManageService = step.action
    svc = env.node.services
    writer = env.node.writer
    out = Outcome()
    notes: list[str] = []

    if action.reload_definitions:
        stale = [u.name for u in action.units if svc.needs_reload(u.name)]
        if _unit_files_changed(env) or stale or any(
            not svc.status(u.name).loaded for u in action.units
        ):
            _reload(env)
            notes.append("reloaded unit definitions")

    for unit in action.units:
        name = unit.name
        if unit.state == "loaded":
            st = svc.status(name)
            if not st.loaded:
                raise ServiceActivationError(
                    f"unit {name} is not loaded (load state {st.load_state})",
                    service=name,
                    state=st.state,
                )
            continue

        if unit.state in _NEEDS_ENABLED and svc.enable(name):
            notes.append(f"enabled {name}")

        if unit.state == "restarted" and _restart_owed(unit, svc.status(name), env):
            empty = [p for p in unit.config_paths if not writer.is_nonempty(p)]
            if empty:
                raise FilesystemError(
                    f"refusing to restart {name}: config missing or empty: {', '.join(empty)}"
                )
            svc.restart(name)
            out.restarted.append(name)
            notes.append(f"restarted {name}")
        elif unit.state in _NEEDS_ACTIVE and svc.start(name):
            notes.append(f"started {name}")

    out.detail = "; ".join(notes) or "services converged"
    return out


# ── Dispatch ────────────────────────────────────────────────────

_CHECKS: dict[str, Callable[[Step, StepEnv], bool]] = {
    "packages": _check_packages,
    "build": _check_build,
    "archive": _check_archive,
    "config": _check_config,
    "service": _check_service,
}

_APPLIERS: dict[str, Callable[[Step, StepEnv], Outcome]] = {
    "packages": _apply_packages,
    "build": _apply_build,
    "archive": _apply_archive,
    "config": _apply_config,
    "service": _apply_service,
}


def is_satisfied(step: Step, env: StepEnv) -> bool:
    """Evaluate the step's idempotency check against the live system."""
    return _CHECKS[step.action.kind](step, env)


def apply_step(step: Step, env: StepEnv) -> Outcome:
    """Apply the step's action."""
    return _APPLIERS[step.action.kind](step, env)
