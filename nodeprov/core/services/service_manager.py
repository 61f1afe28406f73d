"""
ServiceManager — systemd unit lifecycle.

Every mutating call is preceded by a probe so repeated runs issue no
``systemctl`` state changes once the node is converged. ``restart``
and ``enable_and_start`` wait for the unit to report ``active``
within a bounded time; a unit that lands in ``failed`` or never
settles raises ``ServiceActivationError`` carrying the service name
and the last observed state.

Nothing here is undone on failure.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable

from pydantic import BaseModel

from nodeprov.adapters.base import CommandRunner
from nodeprov.core.errors import ServiceActivationError

logger = logging.getLogger(__name__)

_SHOW_PROPERTIES = (
    "ActiveState",
    "SubState",
    "LoadState",
    "UnitFileState",
    "NeedDaemonReload",
    "ActiveEnterTimestampMonotonic",
)


class ServiceStatus(BaseModel):
    """Snapshot of ``systemctl show`` for one unit."""

    service: str
    state: str = "unknown"          # ActiveState
    sub_state: str = "unknown"
    load_state: str = "unknown"
    unit_file_state: str = ""
    need_reload: bool = False
    active_since: float | None = None   # wall-clock time of the last activation

    @property
    def active(self) -> bool:
        return self.state == "active"

    @property
    def loaded(self) -> bool:
        return self.load_state == "loaded"


class ServiceManager:
    """Drives systemd through ``systemctl``."""

    def __init__(
        self,
        runner: CommandRunner,
        *,
        activation_timeout: float = 60,
        poll_interval: float = 1.0,
        command_timeout: float = 120,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._runner = runner
        self.activation_timeout = activation_timeout
        self.poll_interval = poll_interval
        self.command_timeout = command_timeout
        self._sleep = sleep
        self._clock = clock

    # ── Probes ──────────────────────────────────────────────────

    def status(self, name: str) -> ServiceStatus:
        result = self._runner.run(
            ["systemctl", "show", name, f"--property={','.join(_SHOW_PROPERTIES)}"],
            timeout=self.command_timeout,
        )
        props: dict[str, str] = {}
        for line in result.stdout.splitlines():
            key, sep, val = line.strip().partition("=")
            if sep:
                props[key] = val
        return ServiceStatus(
            service=name,
            state=props.get("ActiveState") or "unknown",
            sub_state=props.get("SubState") or "unknown",
            load_state=props.get("LoadState") or "unknown",
            unit_file_state=props.get("UnitFileState", ""),
            need_reload=props.get("NeedDaemonReload") == "yes",
            active_since=_wall_time(props.get("ActiveEnterTimestampMonotonic", "")),
        )

    def is_active(self, name: str) -> bool:
        return self._runner.run(
            ["systemctl", "is-active", "--quiet", name], timeout=self.command_timeout,
        ).ok

    def is_enabled(self, name: str) -> bool:
        return self._runner.run(
            ["systemctl", "is-enabled", "--quiet", name], timeout=self.command_timeout,
        ).ok

    def needs_reload(self, name: str) -> bool:
        """Whether systemd reports the unit's definition changed on disk."""
        return self.status(name).need_reload

    # ── Mutations ───────────────────────────────────────────────

    def reload_definitions(self) -> None:
        logger.info("Reloading systemd unit definitions")
        result = self._runner.run(["systemctl", "daemon-reload"], timeout=self.command_timeout)
        if not result.ok:
            raise ServiceActivationError(
                f"systemctl daemon-reload failed: {result.summary()}",
                service="systemd",
            )

    def enable(self, name: str) -> bool:
        """Enable ``name`` at boot. Returns True if it was not enabled."""
        if self.is_enabled(name):
            return False
        logger.info("Enabling %s", name)
        self._systemctl("enable", name)
        return True

    def start(self, name: str) -> bool:
        """Start ``name`` if inactive and wait for it. Returns True if started."""
        if self.is_active(name):
            return False
        logger.info("Starting %s", name)
        self._systemctl("start", name)
        self.wait_active(name)
        return True

    def enable_and_start(self, name: str) -> bool:
        """Enable and start ``name``. Returns True if anything changed."""
        enabled = self.enable(name)
        started = self.start(name)
        return enabled or started

    def restart(self, name: str) -> None:
        """Restart ``name`` and wait until it is active again."""
        logger.info("Restarting %s", name)
        self._systemctl("restart", name)
        self.wait_active(name)

    def wait_active(self, name: str) -> ServiceStatus:
        deadline = self._clock() + self.activation_timeout
        while True:
            st = self.status(name)
            if st.active:
                logger.debug("%s is active (%s)", name, st.sub_state)
                return st
            if st.state == "failed":
                raise ServiceActivationError(
                    f"{name} failed to start (state={st.state}/{st.sub_state})",
                    service=name,
                    state=st.state,
                )
            if self._clock() >= deadline:
                raise ServiceActivationError(
                    f"{name} not active after {self.activation_timeout:.0f}s "
                    f"(state={st.state}/{st.sub_state})",
                    service=name,
                    state=st.state,
                )
            self._sleep(self.poll_interval)

    def _systemctl(self, verb: str, name: str) -> None:
        result = self._runner.run(["systemctl", verb, name], timeout=self.command_timeout)
        if not result.ok:
            state = self.status(name).state
            raise ServiceActivationError(
                f"systemctl {verb} {name} failed: {result.summary()}",
                service=name,
                state=state,
            )


def _wall_time(monotonic_usec: str) -> float | None:
    """Convert a systemd CLOCK_MONOTONIC timestamp (µs) to epoch seconds."""
    if not monotonic_usec.isdigit() or int(monotonic_usec) == 0:
        return None
    return time.time() - (time.monotonic() - int(monotonic_usec) / 1_000_000)
