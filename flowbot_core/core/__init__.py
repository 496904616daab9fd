# Platform core utilities

from flowbot_core.core.logging import (
    LogFormat,
    configure_logging,
    get_logger,
)

__all__ = [
    "LogFormat",
    "configure_logging",
    "get_logger",
]
