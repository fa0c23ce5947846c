"""
Logging module for the supervisor.
Sets up console logging, relayed backend output and optional Loki shipping.
"""

from .setup import setup_logging

__all__ = ["setup_logging"]
