"""
Template lookup.

The declaration form has exactly one template, configured by path. The
locator is a constant lookup plus an existence check; reading the bytes is
left to the renderer.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path

from zzld_form.app.core.errors import TemplateError

logger = logging.getLogger("zzld_form.template_locator")


@dataclass(frozen=True)
class TemplateRef:
    name: str
    path: Path


class TemplateLocator:
    def __init__(self, template_path: Path) -> None:
        self._path = Path(template_path)

    def resolve(self) -> TemplateRef:
        """Return the configured template, or raise TemplateError if absent."""
        if not self._path.is_file():
            logger.error(
                "template_missing",
                extra={"template_path": str(self._path)},
            )
            raise TemplateError(f"Form template not found: {self._path.name}")
        return TemplateRef(name=self._path.name, path=self._path)

    def is_available(self) -> bool:
        return self._path.is_file()
