"""
Static data shipped with the package: configuration templates.

Templates live in ``nodeprov/core/data/templates/`` and are read once
per process.

Usage::

    from nodeprov.core.data import load_template

    body = load_template("crio.conf.j2")
"""

from __future__ import annotations

import logging
from functools import lru_cache
from pathlib import Path

from nodeprov.core.errors import TemplateError

logger = logging.getLogger(__name__)

_DATA_DIR = Path(__file__).parent
TEMPLATE_DIR = _DATA_DIR / "templates"


@lru_cache(maxsize=None)
def load_template(name: str) -> str:
    """Return the source of template ``name`` from the templates directory."""
    path = TEMPLATE_DIR / name
    try:
        body = path.read_text(encoding="utf-8")
    except OSError as e:
        raise TemplateError(f"Template {name} cannot be read: {e}") from e
    logger.debug("Loaded template %s (%d bytes)", name, len(body))
    return body


def available_templates() -> list[str]:
    return sorted(p.name for p in TEMPLATE_DIR.glob("*.j2"))
