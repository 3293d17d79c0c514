"""AI SDK stream protocol encoders."""

from parley.server.protocol.base import StreamEncoder
from parley.server.protocol.data_stream import DataStreamEncoder

__all__ = ["StreamEncoder", "DataStreamEncoder", "get_encoder"]


def get_encoder() -> StreamEncoder:
    """Get the stream encoder for the AI SDK Data Stream Protocol."""
    return DataStreamEncoder()
