"""
Shared helpers.
"""
import logging
import sys

from crm.core import config


_LOG_FORMAT = "%(asctime)s %(levelname)-8s %(name)s: %(message)s"
_configured = False


def _configure_root() -> None:
    global _configured
    if _configured:
        return
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter(_LOG_FORMAT))
    root = logging.getLogger("crm")
    root.addHandler(handler)
    root.setLevel(config.LOG_LEVEL)
    root.propagate = False
    _configured = True


def get_logger(name: str) -> logging.Logger:
    """
    Get a logger namespaced under the ``crm`` root logger.

    Usage:
        from crm.utils import get_logger
        log = get_logger(__name__)
    """
    _configure_root()
    if name == "crm" or name.startswith("crm."):
        return logging.getLogger(name)
    return logging.getLogger(f"crm.{name}")
