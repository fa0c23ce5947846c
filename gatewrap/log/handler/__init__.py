"""
Logging handlers for the supervisor.
Console output is configured directly in setup.py; this package holds the
handlers that ship logs elsewhere.
"""

from .loki import LokiHandler

__all__ = ["LokiHandler"]
