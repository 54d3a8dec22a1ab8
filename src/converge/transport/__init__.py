"""Transports for converge (async only)."""

from contextlib import suppress

from converge.transport.base import Transport, raise_for_status
from converge.transport.memory import MemoryTransport

# Optional transports - only available when dependencies are installed
with suppress(ImportError):
    from converge.transport.http import HttpTransport

__all__ = [
    "HttpTransport",
    "MemoryTransport",
    "Transport",
    "raise_for_status",
]
