"""
ConfigWriter — pure template rendering and atomic file writes.

Rendering never touches the filesystem: the same body and variables
always produce the same bytes. Writing goes through a temp file in
the target's directory that is fsync'd and then ``os.replace``'d over
the target, so a reader sees either the old file or the new one,
never a partial write.

All paths given to this class are node paths; they are mapped under
``sysroot`` before any filesystem access.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
from collections.abc import Mapping
from pathlib import Path
from typing import Any

from jinja2 import Environment, StrictUndefined
from jinja2 import TemplateError as JinjaTemplateError

from nodeprov.core.errors import FilesystemError, TemplateError

logger = logging.getLogger(__name__)


def _to_json(value: Any, indent: int | None = None) -> str:
    return json.dumps(value, indent=indent, sort_keys=indent is not None)


_ENV = Environment(
    undefined=StrictUndefined,
    keep_trailing_newline=True,
    autoescape=False,
)
_ENV.filters["to_json"] = _to_json


class ConfigWriter:
    """Renders configuration templates and writes them atomically."""

    def __init__(self, sysroot: str | Path = "/"):
        self.sysroot = Path(sysroot)

    # ── Rendering ───────────────────────────────────────────────

    @staticmethod
    def render(body: str, variables: Mapping[str, Any]) -> bytes:
        """Render ``body`` with ``variables``.

        Raises:
            TemplateError: A referenced variable is missing or the
                template does not parse.
        """
        try:
            return _ENV.from_string(body).render(**variables).encode("utf-8")
        except JinjaTemplateError as e:
            raise TemplateError(f"Template rendering failed: {e}") from e

    # ── Filesystem ──────────────────────────────────────────────

    def target(self, path: str | Path) -> Path:
        """Map a node path under the sysroot."""
        p = Path(path)
        if self.sysroot == Path("/") or not p.is_absolute():
            return p
        return self.sysroot / p.relative_to("/")

    def read(self, path: str | Path) -> bytes | None:
        """Current content of ``path``, or None if it does not exist."""
        try:
            return self.target(path).read_bytes()
        except FileNotFoundError:
            return None
        except OSError as e:
            raise FilesystemError(f"Cannot read {path}: {e}") from e

    def is_current(self, path: str | Path, data: bytes) -> bool:
        return self.read(path) == data

    def is_nonempty(self, path: str | Path) -> bool:
        target = self.target(path)
        return target.is_file() and target.stat().st_size > 0

    def modified_at(self, path: str | Path) -> float | None:
        """Modification time of ``path``, or None if it does not exist."""
        try:
            return self.target(path).stat().st_mtime
        except FileNotFoundError:
            return None
        except OSError as e:
            raise FilesystemError(f"Cannot stat {path}: {e}") from e

    def write_atomic(self, path: str | Path, data: bytes, mode: int = 0o644) -> Path:
        """Write ``data`` to ``path`` via temp file + rename.

        On any failure the temp file is removed and the previous
        content of ``path`` is left untouched.

        Raises:
            FilesystemError: The directory or file cannot be written.
        """
        target = self.target(path)
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(
                dir=target.parent,
                prefix=f".{target.name}.",
                suffix=".tmp",
            )
        except OSError as e:
            raise FilesystemError(f"Cannot write {path}: {e}") from e

        tmp = Path(tmp_path)
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(data)
                f.flush()
                os.fsync(f.fileno())
            os.chmod(tmp, mode)
            os.replace(tmp, target)
        except OSError as e:
            tmp.unlink(missing_ok=True)
            raise FilesystemError(f"Cannot write {path}: {e}") from e
        except BaseException:
            tmp.unlink(missing_ok=True)
            raise

        logger.debug("Wrote %s (%d bytes, mode %o)", target, len(data), mode)
        return target

    def write_if_changed(self, path: str | Path, data: bytes, mode: int = 0o644) -> bool:
        """Write only when the content differs. Returns True if written.

        A file whose content is already current but whose mode differs
        gets its mode fixed without counting as changed.
        """
        if self.is_current(path, data):
            target = self.target(path)
            if (target.stat().st_mode & 0o7777) != mode:
                try:
                    os.chmod(target, mode)
                except OSError as e:
                    raise FilesystemError(f"Cannot chmod {path}: {e}") from e
            logger.debug("%s unchanged", path)
            return False
        self.write_atomic(path, data, mode)
        logger.info("Updated %s", path)
        return True

    def ensure_directory(self, path: str | Path, mode: int = 0o755) -> bool:
        """Create ``path`` (and parents) if missing. Returns True if created."""
        target = self.target(path)
        if target.is_dir():
            return False
        try:
            target.mkdir(parents=True, exist_ok=True, mode=mode)
        except OSError as e:
            raise FilesystemError(f"Cannot create directory {path}: {e}") from e
        logger.info("Created directory %s", path)
        return True
