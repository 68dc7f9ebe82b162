"""Logging setup for the CLI."""

import logging

from rich.console import Console
from rich.logging import RichHandler

LOG_FORMAT = "%(message)s"


def configure_logging(level: str = "INFO", console: Console | None = None) -> None:
    """Install a single RichHandler on the root logger.

    Calling this more than once replaces the previous handler rather than
    stacking duplicates.

    Args:
        level: Log level name (DEBUG, INFO, ...).
        console: Console to render to (stderr by default).
    """
    root = logging.getLogger()
    for handler in list(root.handlers):
        if getattr(handler, "_rpi_imagegen", False):
            root.removeHandler(handler)

    handler = RichHandler(
        console=console or Console(stderr=True),
        show_path=level == "DEBUG",
        rich_tracebacks=True,
        markup=False,
    )
    handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt="[%X]"))
    handler._rpi_imagegen = True  # type: ignore[attr-defined]

    root.addHandler(handler)
    root.setLevel(level)

    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(
        logging.DEBUG if level == "DEBUG" else logging.WARNING
    )


__all__ = ["configure_logging"]
