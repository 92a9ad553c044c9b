"""Root logger setup for the CLI and the API server."""

import logging
from typing import Union


def configure_logging(level: Union[int, str] = logging.INFO, force: bool = False) -> None:
    """
    Initialise the root logger once. ``level`` accepts a logging constant or
    a level name such as ``"DEBUG"``. Pass ``force=True`` to reconfigure.
    """
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            level = logging.INFO

    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
        datefmt="%H:%M:%S",
        force=force,
    )
