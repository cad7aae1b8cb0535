"""
Miscellaneous utilities shared across lazynet.
"""

from .logging import logger, set_debug
from .config import NetConfig, config

__all__ = ["logger", "set_debug", "NetConfig", "config"]
