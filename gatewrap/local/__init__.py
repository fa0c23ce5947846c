"""
Local package for the Gateway Supervisor.

Holds everything that runs inside the supervisor process apart from traffic
forwarding: configuration loading, the error hierarchy, backend process
supervision and the lifecycle controller tying them together.
"""
