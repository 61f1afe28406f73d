"""
Build context — the immutable environment shared across steps.

One ``BuildContext`` is created per run from configuration and owned
by the pipeline. Nothing mutates it: a step that produces values for
later steps (an install path, a socket address) declares them as
exports, and the pipeline merges them forward into a *new* context
with ``with_outputs()``.

Paths stored here are node paths (what the node's own services see).
``resolve()`` maps them under ``sysroot`` for everything this process
reads or writes, which is ``/`` on a real node.
"""

from __future__ import annotations

import os
from collections.abc import Mapping
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field


class BuildContext(BaseModel):
    """Immutable record of what every step may need to know."""

    model_config = ConfigDict(frozen=True)

    sysroot: Path = Path("/")
    work_dir: Path = Path("/var/lib/nodeprov")
    toolchain_root: Path = Path("/usr/local/go")
    arch: str = "amd64"
    revisions: dict[str, str] = Field(default_factory=dict)
    outputs: dict[str, str] = Field(default_factory=dict)

    @property
    def gopath(self) -> Path:
        """Go workspace used for source checkouts."""
        return self.work_dir / "go"

    def resolve(self, path: str | Path) -> Path:
        """Map a node path under the sysroot."""
        p = Path(path)
        if self.sysroot == Path("/") or not p.is_absolute():
            return p
        return self.sysroot / p.relative_to("/")

    def revision(self, component: str) -> str | None:
        """Pinned revision for a component, or None if unpinned."""
        return self.revisions.get(component)

    def with_outputs(self, outputs: Mapping[str, str]) -> BuildContext:
        """Return a new context with ``outputs`` merged over the current ones."""
        if not outputs:
            return self
        return self.model_copy(update={"outputs": {**self.outputs, **outputs}})

    def toolchain_env(self) -> dict[str, str]:
        """Environment for toolchain invocations (GOPATH, PATH)."""
        go_bin = self.outputs.get("go_bin") or str(self.toolchain_root / "bin")
        gopath = self.resolve(self.gopath)
        path = os.pathsep.join(
            [str(self.resolve(go_bin)), os.environ.get("PATH", ""), str(gopath / "bin")]
        )
        return {
            "GOPATH": str(gopath),
            "GOROOT": str(self.resolve(self.toolchain_root)),
            "PATH": path,
        }
