"""
Exception hierarchy for the Gateway Supervisor.

Every error that can end the supervisor carries the process exit code it maps
to, so the entry point never has to translate exception types by hand.
"""

from gatewrap import settings


class SupervisorError(RuntimeError):
    """Base class for all supervisor failures."""
    exit_code: int = settings.EXIT_INTERNAL_ERROR


class ConfigError(SupervisorError):
    """The environment does not describe a runnable configuration."""
    exit_code = settings.EXIT_CONFIG_ERROR


class SpawnError(SupervisorError):
    """The backend executable could not be started."""
    exit_code = settings.EXIT_SPAWN_FAILURE


class ReadinessTimeout(SupervisorError):
    """The backend did not become ready within the startup window, or died while starting."""
    exit_code = settings.EXIT_READINESS_FAILURE


class BackendCrash(SupervisorError):
    """The backend kept exiting and the restart budget is spent."""
    exit_code = settings.EXIT_RESTART_BUDGET_EXHAUSTED


class IllegalTransition(SupervisorError):
    """A lifecycle state change was requested that the state machine does not allow."""


class SessionError(Exception):
    """
    A failure confined to a single proxied connection.

    Never escalated: the forwarder logs it and closes that one session.
    """
