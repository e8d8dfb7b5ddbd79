"""
Proxy package for the broker.

Forwards logical requests to the upstream platform and implements the login
handshake as the only places where raw cookies cross the client boundary.
"""

from .actions import BootstrapAction
from .gateway import ProxyGateway
from .models import AccountInfo, LoginFailure, ProxyResult, RequestContext, UpstreamRequest

__all__ = [
    "AccountInfo",
    "BootstrapAction",
    "LoginFailure",
    "ProxyGateway",
    "ProxyResult",
    "RequestContext",
    "UpstreamRequest",
]
