"""
The Supervisor package.
Manages the lifecycle of the backend gateway process.

This package contains the ProcessManager class and its helper modules, which
together handle spawning, readiness probing, restart budgeting and stopping
of the backend.
"""
from .restart import RestartBudget
from .startup import ProbeResult, await_ready
from .supervisor import BackendProcessHandle, BackendState, ForcedKill, ProcessManager

__all__ = [
    'BackendProcessHandle', 'BackendState', 'ForcedKill', 'ProcessManager',
    'ProbeResult', 'RestartBudget', 'await_ready',
]
