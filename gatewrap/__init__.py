"""Gateway Supervisor: runs a backend gateway behind a forwarding front port."""

__version__ = "0.1.0"
