"""
Process-wide logging setup.

Loggers across the service are named per module (``zzld_form.api``,
``zzld_form.blob_store``, ...) and log snake_case event names with context
passed through ``extra``. This module attaches a single stream handler that
renders those extras next to the event name. Records still propagate to
the root logger, so host-level handlers see them as well.
"""

import logging
import sys

_RESERVED_ATTRS = frozenset(
    logging.LogRecord("", 0, "", 0, "", None, None).__dict__.keys()
) | {"message", "asctime"}

_configured = False


class ContextFormatter(logging.Formatter):
    """Formatter that appends ``extra`` fields as key=value pairs."""

    def format(self, record: logging.LogRecord) -> str:
        base = super().format(record)
        context = {
            key: value
            for key, value in record.__dict__.items()
            if key not in _RESERVED_ATTRS and not key.startswith("_")
        }
        if not context:
            return base
        rendered = " ".join(f"{key}={value}" for key, value in sorted(context.items()))
        return f"{base} {rendered}"


def configure_logging(level: str = "INFO") -> None:
    """
    Configure the ``zzld_form`` logger hierarchy once per process.

    Subsequent calls only adjust the level.
    """
    global _configured

    root = logging.getLogger("zzld_form")
    root.setLevel(level)

    if _configured:
        return

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        ContextFormatter("[%(asctime)s] [%(levelname)s] %(name)s: %(message)s")
    )
    root.addHandler(handler)
    _configured = True
