"""
observability/ — structured logging for reactloop.
"""

from reactloop.observability.logger import (
    get_logger,
    session_context,
    setup_logging,
    setup_logging_from_settings,
)

__all__ = ["setup_logging", "setup_logging_from_settings", "get_logger", "session_context"]
