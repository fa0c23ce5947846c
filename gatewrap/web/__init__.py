"""
Traffic forwarding package for the Gateway Supervisor.

Two forwarders share the external port's contract: HttpForwarder proxies HTTP
requests through a Starlette app served by Hypercorn, and TcpForwarder relays
raw bytes so that WebSocket upgrades and any other TCP protocol pass through.
"""

from gatewrap.web.relay import TcpForwarder
from gatewrap.web.server import HttpForwarder
from gatewrap.web.session import ConnectionSession, Forwarder, RelayState

__all__ = ["ConnectionSession", "Forwarder", "HttpForwarder", "RelayState", "TcpForwarder"]
