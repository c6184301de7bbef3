import logging
import os

logger = logging.getLogger("steadystream")
logger.addHandler(logging.NullHandler())

_FORMAT = "[steadystream] %(levelname)s: %(message)s"
_debug_handler: logging.Handler | None = None


def enable_debug(level: int = logging.DEBUG) -> None:
    """Enable debug logging for steadystream.

    Calling this more than once only adjusts the level; a single
    stderr handler is attached.
    """
    global _debug_handler
    logger.setLevel(level)
    if _debug_handler is None:
        _debug_handler = logging.StreamHandler()
        _debug_handler.setFormatter(logging.Formatter(_FORMAT))
        logger.addHandler(_debug_handler)


def disable_debug() -> None:
    """Detach the debug handler and restore the inherited level."""
    global _debug_handler
    if _debug_handler is not None:
        logger.removeHandler(_debug_handler)
        _debug_handler = None
    logger.setLevel(logging.NOTSET)


if os.environ.get("STEADYSTREAM_DEBUG", "").lower() in ("1", "true", "yes"):
    enable_debug()
