"""Console logging through rich."""

import logging

from rich.console import Console
from rich.logging import RichHandler

# Loggers that are too chatty at INFO
NOISY_LOGGERS = ("httpx", "httpcore", "uvicorn.access")


def setup_logging(level: str = "INFO") -> None:
    """Install a RichHandler on the root logger.

    Safe to call more than once; later calls only change the level.
    """
    root = logging.getLogger()
    root.setLevel(level.upper())

    if not any(isinstance(h, RichHandler) for h in root.handlers):
        handler = RichHandler(
            console=Console(stderr=True),
            rich_tracebacks=True,
            show_path=False,
            markup=False,
        )
        handler.setFormatter(logging.Formatter("%(message)s", datefmt="[%X]"))
        root.addHandler(handler)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
