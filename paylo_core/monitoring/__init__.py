"""Monitoring and observability package."""
from .logging import get_logger, mask_sensitive, setup_logging
from .metrics import metrics

__all__ = ["get_logger", "mask_sensitive", "metrics", "setup_logging"]
