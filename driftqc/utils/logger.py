"""
Logging setup for driftqc.

All modules obtain their logger through ``get_logger(__name__)`` so that every
record flows through the single ``driftqc`` namespace logger, which carries one
Rich console handler.
"""

import logging
import os
from typing import Optional

from rich.logging import RichHandler

ROOT_LOGGER_NAME = "driftqc"
LOG_LEVEL_ENV_VAR = "DRIFTQC_LOG_LEVEL"

_configured = False


def _resolve_level(level: Optional[str]) -> int:
    name = (level or os.environ.get(LOG_LEVEL_ENV_VAR) or "WARNING").upper()
    resolved = logging.getLevelName(name)
    if not isinstance(resolved, int):
        return logging.WARNING
    return resolved


def configure_logging(level: Optional[str] = None, force: bool = False) -> logging.Logger:
    """
    Attach the Rich handler to the package root logger.

    Args:
        level: Log level name; falls back to ``DRIFTQC_LOG_LEVEL`` then WARNING
        force: Re-apply configuration even if already configured

    Returns:
        The package root logger
    """
    global _configured

    root = logging.getLogger(ROOT_LOGGER_NAME)
    if _configured and not force:
        if level is not None:
            root.setLevel(_resolve_level(level))
        return root

    for handler in list(root.handlers):
        if isinstance(handler, RichHandler):
            root.removeHandler(handler)

    handler = RichHandler(rich_tracebacks=True, show_path=False, markup=False)
    handler.setFormatter(logging.Formatter("%(name)s: %(message)s"))
    root.addHandler(handler)
    root.setLevel(_resolve_level(level))
    root.propagate = False

    _configured = True
    return root


def get_logger(name: str) -> logging.Logger:
    """Return a logger nested under the ``driftqc`` namespace."""
    configure_logging()
    if name == ROOT_LOGGER_NAME or name.startswith(ROOT_LOGGER_NAME + "."):
        return logging.getLogger(name)
    return logging.getLogger(f"{ROOT_LOGGER_NAME}.{name}")
