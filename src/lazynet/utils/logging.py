"""
Package logger.
"""

from __future__ import annotations

import logging

logger = logging.getLogger("lazynet")
logger.addHandler(logging.NullHandler())


def set_debug(enabled: bool = True) -> None:
    logger.setLevel(logging.DEBUG if enabled else logging.NOTSET)
