"""Utility modules for Conductor."""

from conductor.utils.logging import bind_plan, get_logger, redact, setup_logging

__all__ = ["bind_plan", "get_logger", "redact", "setup_logging"]
