"""Real-time update ingestion."""
from .channel import UpdateIngestionChannel
from .transport import InMemoryTransport, PushTransport, TransportDisconnected

__all__ = ["InMemoryTransport", "PushTransport", "TransportDisconnected", "UpdateIngestionChannel"]
