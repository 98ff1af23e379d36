"""observability/ — structured logging setup."""

from shardline.observability.logger import get_logger, setup_logging

__all__ = ["get_logger", "setup_logging"]
