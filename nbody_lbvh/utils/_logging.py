"""Logger setup shared by the simulation and the frame loop."""
from __future__ import annotations

import logging


def get_logger(name: str, verbose: bool = False) -> logging.Logger:
    """
    Return the logger *name*, printing INFO messages when *verbose*.

    A ``StreamHandler`` is attached on first verbose use; otherwise the level
    is WARNING and output goes wherever the application routes it.
    """
    logger = logging.getLogger(name)
    if verbose and not logger.hasHandlers():
        handler = logging.StreamHandler()
        handler.setLevel(logging.INFO)
        handler.setFormatter(logging.Formatter("[%(levelname)s] %(message)s"))
        logger.addHandler(handler)
    logger.setLevel(logging.INFO if verbose else logging.WARNING)
    return logger
