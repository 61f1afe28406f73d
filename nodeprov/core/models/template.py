"""
Configuration file and service unit models.
"""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, Field

ServiceState = Literal["enabled+active", "active", "restarted", "enabled", "loaded"]


class ConfigTemplate(BaseModel):
    """A configuration file to render and write.

    Attributes:
        path:      Absolute node path of the target file.
        body:      Jinja2 template source.
        variables: Values substituted at render time.
        mode:      File permissions for the written file.
        reason:    Why this file exists (shown in logs).
    """

    path: str
    body: str
    variables: dict[str, Any] = Field(default_factory=dict)
    mode: int = 0o644
    reason: str = ""


class ServiceUnit(BaseModel):
    """A service and the state it must end up in.

    States:
        enabled+active  enabled at boot and running
        active          running (boot enablement untouched)
        restarted       enabled and running, restarted when any of
                        ``config_paths`` changed during this run
        enabled         enabled at boot only (oneshot helpers)
        loaded          only its definition must be current; the
                        service is started by something else
    """

    name: str
    state: ServiceState = "enabled+active"
    config_paths: list[str] = Field(default_factory=list)
