"""
Transports moving job events between producers and workers.
"""

from jobforge.transport.base import MessageHandler, Transport
from jobforge.transport.redis import CleanupReport, RedisTransport

__all__ = [
    "Transport",
    "MessageHandler",
    "RedisTransport",
    "CleanupReport",
]
