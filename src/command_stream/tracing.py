"""Logging setup and the per-invocation verbose trace switch."""

from __future__ import annotations

import logging
import sys

from .config import Config, get_config, trace_enabled

__all__ = ["LOG_FORMAT", "apply_trace_switch", "configure_logging"]

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"

_handler: logging.Handler | None = None


def configure_logging(config: Config | None = None, *, verbose: bool | None = None) -> logging.Logger:
    """Attach one handler and set levels for the command_stream namespace.

    The root logger stays at WARNING so third-party libraries stay quiet.
    Calling this again only adjusts the level.
    """
    global _handler
    config = config or get_config()
    verbose = config.verbose if verbose is None else verbose

    if _handler is None:
        if config.log_file:
            _handler = logging.FileHandler(config.log_file, encoding="utf-8")
        else:
            _handler = logging.StreamHandler(sys.stderr)
        _handler.setFormatter(logging.Formatter(LOG_FORMAT))
        logging.basicConfig(level=logging.WARNING, handlers=[_handler])

    package_logger = logging.getLogger("command_stream")
    package_logger.setLevel(logging.DEBUG if verbose else logging.INFO)
    if _handler not in logging.getLogger().handlers and _handler not in package_logger.handlers:
        # basicConfig is a no-op when the host already configured logging
        package_logger.addHandler(_handler)
        package_logger.propagate = False
    return package_logger


def apply_trace_switch() -> bool:
    """Turn on DEBUG tracing if the environment asks for it.

    Read on every invocation; never turns logging off once on.
    """
    if not trace_enabled():
        return False
    configure_logging(verbose=True)
    return True
