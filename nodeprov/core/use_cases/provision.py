"""
Provision use case — wire configuration into a runnable pipeline.

    config → BuildContext + services → recipe steps → ProvisioningPipeline
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from pathlib import Path

from nodeprov.adapters.base import CommandRunner
from nodeprov.adapters.shell.command import SubprocessRunner
from nodeprov.core.context import BuildContext
from nodeprov.core.data.node_recipe import build_node_steps
from nodeprov.core.engine.executors import NodeServices
from nodeprov.core.engine.pipeline import ProvisioningPipeline
from nodeprov.core.models.node import NodeConfig
from nodeprov.core.models.step import PipelineResult
from nodeprov.core.reliability.retry import RetryPolicy
from nodeprov.core.services.archives import ArchiveFetcher
from nodeprov.core.services.config_writer import ConfigWriter
from nodeprov.core.services.packages import PackageInstaller
from nodeprov.core.services.service_manager import ServiceManager
from nodeprov.core.services.source_builder import SourceBuilder

logger = logging.getLogger(__name__)


def build_context(config: NodeConfig) -> BuildContext:
    return BuildContext(
        sysroot=Path(config.sysroot),
        work_dir=Path(config.work_dir),
        toolchain_root=Path(config.go_root),
        arch=config.arch,
        revisions=config.revisions(),
    )


def build_services(
    config: NodeConfig,
    runner: CommandRunner | None = None,
    *,
    sleep: Callable[[float], None] = time.sleep,
    clock: Callable[[], float] = time.monotonic,
) -> NodeServices:
    """Create the node services for ``config`` on top of ``runner``."""
    runner = runner or SubprocessRunner()
    timeouts = config.timeouts
    writer = ConfigWriter(config.sysroot)
    return NodeServices(
        runner=runner,
        writer=writer,
        packages=PackageInstaller(runner, writer, timeout=timeouts.network),
        builder=SourceBuilder(
            runner,
            build_timeout=timeouts.build,
            network_timeout=timeouts.network,
            command_timeout=timeouts.command,
        ),
        archives=ArchiveFetcher(timeout=timeouts.network),
        services=ServiceManager(
            runner,
            activation_timeout=timeouts.service_activation,
            command_timeout=timeouts.command,
            sleep=sleep,
            clock=clock,
        ),
    )


def build_pipeline(
    config: NodeConfig,
    runner: CommandRunner | None = None,
    *,
    sleep: Callable[[float], None] = time.sleep,
    clock: Callable[[], float] = time.monotonic,
) -> ProvisioningPipeline:
    """Validate the node recipe for ``config`` and return a fresh pipeline."""
    retries = config.retries
    return ProvisioningPipeline(
        build_node_steps(config),
        build_context(config),
        build_services(config, runner, sleep=sleep, clock=clock),
        retry=RetryPolicy(
            attempts=retries.attempts,
            base_delay=retries.base_delay,
            max_delay=retries.max_delay,
        ),
        sleep=sleep,
    )


def provision(
    config: NodeConfig,
    runner: CommandRunner | None = None,
    *,
    sleep: Callable[[float], None] = time.sleep,
) -> PipelineResult:
    """Build the node recipe for ``config`` and run it once.

    Raises:
        StepGraphError: The recipe does not form a valid step graph.
        ProvisionError: The recipe cannot be built (e.g. a bundled
            template is unreadable). Failures while running are
            reported in the returned result instead.
    """
    pipeline = build_pipeline(config, runner, sleep=sleep)
    logger.info(
        "Provisioning node (shim=%s, docker=%s, sysroot=%s)",
        config.cri.shim,
        "on" if config.docker.enabled else "off",
        config.sysroot,
    )
    return pipeline.run()
