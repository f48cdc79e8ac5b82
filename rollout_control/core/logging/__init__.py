"""Logging setup."""

from rollout_control.core.logging.structured import StructuredFormatter, setup_logging

__all__ = ["StructuredFormatter", "setup_logging"]
