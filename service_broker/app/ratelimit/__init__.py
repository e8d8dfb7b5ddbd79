"""
Rate limiting package for the broker.

Holds the process-wide admission queue that spaces out every outbound call
to the upstream platform, with escalating backoff on abuse signals.
"""

from .admission_queue import RateLimitTicket, UpstreamRateLimiter

__all__ = ["RateLimitTicket", "UpstreamRateLimiter"]
