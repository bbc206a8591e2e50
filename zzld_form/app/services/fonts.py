"""
Embedded font loading.

The declaration form is filled in Bulgarian, so the overlay text must use a
TrueType font whose glyph tables cover Cyrillic and are embedded into the
output. Base-14 PDF fonts are rejected here, at startup, instead of
producing unreadable output at render time.

reportlab keeps a process-wide font registry. Registration is guarded so
that loading the same font again is a no-op.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from pathlib import Path

from reportlab.pdfbase import pdfmetrics
from reportlab.pdfbase.ttfonts import TTFError, TTFont

from zzld_form.app.core.config import STANDARD_PDF_FONTS
from zzld_form.app.core.errors import FontConfigurationError

logger = logging.getLogger("zzld_form.fonts")

# Bulgarian alphabet, both cases.
REQUIRED_GLYPHS = (
    "АБВГДЕЖЗИЙКЛМНОПРСТУФХЦЧШЩЪЬЮЯ"
    "абвгдежзийклмнопрстуфхцчшщъьюя"
)

_registry_lock = threading.Lock()
_registered: dict[str, Path] = {}


@dataclass(frozen=True)
class FormFont:
    name: str
    path: Path

    @classmethod
    def load(cls, path: Path, name: str = "FormFont") -> "FormFont":
        """
        Register a TrueType font with reportlab once per process.

        Raises FontConfigurationError when the file is not a usable
        TrueType font or lacks Cyrillic glyphs.
        """
        path = Path(path).resolve()

        if name.lower() in STANDARD_PDF_FONTS or path.stem.lower() in STANDARD_PDF_FONTS:
            raise FontConfigurationError(
                f"Standard PDF font '{path.stem}' has no embedded glyphs"
            )

        with _registry_lock:
            existing = _registered.get(name)
            if existing is not None:
                if existing != path:
                    raise FontConfigurationError(
                        f"Font name '{name}' is already registered for {existing}"
                    )
                return cls(name=name, path=path)

            if not path.is_file():
                raise FontConfigurationError(f"Font file not found: {path}")

            try:
                font = TTFont(name, str(path))
            except (TTFError, OSError) as exc:
                raise FontConfigurationError(
                    f"Font file is not a usable TrueType font: {path.name}: {exc}"
                ) from exc

            missing = [
                ch for ch in REQUIRED_GLYPHS if ord(ch) not in font.face.charToGlyph
            ]
            if missing:
                raise FontConfigurationError(
                    f"Font {path.name} lacks Cyrillic glyphs: {''.join(missing)}"
                )

            pdfmetrics.registerFont(font)
            _registered[name] = path

        logger.info(
            "font_registered",
            extra={"font_name": name, "font_file": path.name},
        )
        return cls(name=name, path=path)
