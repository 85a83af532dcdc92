"""Shared utility functions."""

from .logging import get_pipeline_logger, setup_logging
from .env import load_env

__all__ = ["setup_logging", "get_pipeline_logger", "load_env"]
