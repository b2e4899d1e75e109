"""Core configuration and utilities for CalcBase."""

from calcbase.core.config import settings
from calcbase.core.logging import setup_logging

__all__ = ["settings", "setup_logging"]
