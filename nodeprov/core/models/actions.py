"""
Step actions — what a step does to the node.

Actions are plain data. The code that checks whether an action is
already satisfied and the code that applies it live in
``nodeprov.core.engine.executors``, dispatched on ``kind``.
"""

from __future__ import annotations

from pathlib import PurePosixPath
from typing import Annotated, Literal

from pydantic import BaseModel, Field, model_validator

from nodeprov.core.models.template import ConfigTemplate, ServiceUnit

APT_SOURCES_DIR = "/etc/apt/sources.list.d"
APT_KEYRINGS_DIR = "/etc/apt/keyrings"


class RepositorySpec(BaseModel):
    """A package source.

    ``deb`` sources are written as a list file with a ``signed-by``
    keyring; ``ppa`` sources are added with ``add-apt-repository``.
    """

    name: str
    kind: Literal["deb", "ppa"] = "deb"
    uri: str = ""
    suite: str = "/"
    components: list[str] = Field(default_factory=list)
    key_url: str | None = None
    ppa: str = ""               # "owner/archive" for kind=ppa

    @property
    def list_path(self) -> str:
        return f"{APT_SOURCES_DIR}/{self.name}.list"

    @property
    def keyring_path(self) -> str | None:
        if not self.key_url:
            return None
        return f"{APT_KEYRINGS_DIR}/{self.name}.asc"

    def source_line(self) -> str:
        """The ``deb`` line for this source."""
        signed = f"[signed-by={self.keyring_path}] " if self.keyring_path else ""
        parts = [f"deb {signed}{self.uri}", self.suite, *self.components]
        return " ".join(parts) + "\n"


class InstallPackages(BaseModel):
    kind: Literal["packages"] = "packages"
    packages: list[str] = Field(default_factory=list)
    repositories: list[RepositorySpec] = Field(default_factory=list)

    @property
    def idempotency_key(self) -> str:
        repos = ", ".join(r.name for r in self.repositories)
        key = f"packages installed: {', '.join(self.packages) or '-'}"
        return f"{key}; sources present: {repos}" if repos else key


class BuildFromSource(BaseModel):
    """Build a component from a pinned git revision.

    The revision comes from ``BuildContext.revisions[component]``.
    ``checkout`` is relative to ``$GOPATH/src``.
    """

    kind: Literal["build"] = "build"
    component: str
    repo_url: str
    checkout: str
    binary: str
    version_args: list[str] = Field(default_factory=lambda: ["--version"])
    build_command: list[str] = Field(default_factory=lambda: ["make"])
    build_tags: list[str] = Field(default_factory=list)
    install_targets: list[str] = Field(default_factory=lambda: ["install"])
    artifacts: dict[str, str] = Field(default_factory=dict)

    @property
    def idempotency_key(self) -> str:
        if not self.version_args:
            return f"{self.binary} exists"
        return f"{self.binary} reports pinned {self.component} revision"


class FetchArchive(BaseModel):
    """Install a release archive (``.tar.gz``) into ``dest``.

    ``url`` may contain ``{version}`` and ``{arch}`` placeholders.
    """

    kind: Literal["archive"] = "archive"
    component: str
    url: str
    dest: str
    creates: list[str] = Field(default_factory=list)
    version_command: list[str] = Field(default_factory=list)
    checksum: str | None = None     # "sha256:<hex>"
    replaces: str | None = None     # directory under dest removed before extraction

    @model_validator(mode="after")
    def _replaces_under_dest(self) -> FetchArchive:
        if self.replaces is None:
            return self
        dest = PurePosixPath(self.dest)
        replaces = PurePosixPath(self.replaces)
        if replaces == dest or not replaces.is_relative_to(dest):
            raise ValueError(f"replaces must be a directory below {self.dest}: {self.replaces}")
        return self

    def resolved_url(self, version: str, arch: str) -> str:
        return self.url.replace("{version}", version).replace("{arch}", arch)

    @property
    def idempotency_key(self) -> str:
        if self.version_command:
            return f"{self.version_command[0]} reports pinned {self.component} version"
        return f"{', '.join(self.creates)} present"


class WriteConfig(BaseModel):
    kind: Literal["config"] = "config"
    files: list[ConfigTemplate] = Field(default_factory=list)
    directories: list[str] = Field(default_factory=list)

    @property
    def idempotency_key(self) -> str:
        targets = [f.path for f in self.files] + self.directories
        return f"content current: {', '.join(targets)}"


class ManageService(BaseModel):
    kind: Literal["service"] = "service"
    units: list[ServiceUnit] = Field(default_factory=list)
    reload_definitions: bool = False

    @property
    def idempotency_key(self) -> str:
        states = ", ".join(f"{u.name}={u.state}" for u in self.units)
        return f"services in state: {states}"


Action = Annotated[
    InstallPackages | BuildFromSource | FetchArchive | WriteConfig | ManageService,
    Field(discriminator="kind"),
]
