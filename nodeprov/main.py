"""
nodeprov — CLI entrypoint.

Usage:
    nodeprov
    python -m nodeprov.main

Takes no flags. Configuration comes from ``NODEPROV_CONFIG`` (or
``/etc/nodeprov/node.yml``), log levels from ``NODEPROV_LOG_*``.
Exit status 0 means the node is provisioned; anything else is the
exit code of the error that aborted the run.
"""

from __future__ import annotations

import os
import sys
from typing import NoReturn

import click

from nodeprov.core.config.loader import ConfigError, load_config
from nodeprov.core.errors import ProvisionError, StepGraphError
from nodeprov.core.observability.logging_config import setup_logging_from_env
from nodeprov.core.use_cases.provision import provision

EXIT_NOT_ROOT = 1


def _fail(message: str, code: int) -> NoReturn:
    click.secho(f"✗ {message}", fg="red", err=True)
    sys.exit(code)


@click.command()
def cli() -> None:
    """Provision this node: Clear Containers, runc, a CRI shim, CNI and the kubelet."""
    try:
        setup_logging_from_env()
    except OSError as e:
        _fail(f"cannot open log file: {e}", ConfigError.exit_code)

    try:
        config = load_config()
    except ConfigError as e:
        _fail(str(e), e.exit_code)

    if os.geteuid() != 0:
        _fail("nodeprov must run as root", EXIT_NOT_ROOT)

    try:
        result = provision(config)
    except StepGraphError as e:
        _fail(f"invalid step graph: {e}", ConfigError.exit_code)
    except ProvisionError as e:
        _fail(f"cannot build the node recipe ({e.kind}): {e}", e.exit_code)

    if result.completed:
        click.secho(f"✓ {result.diagnostic()}", fg="green")
        return
    _fail(result.diagnostic(), result.exit_code)


if __name__ == "__main__":
    cli()
