"""
Stream Errors
=============

Exception types raised by the ingestion and delivery layers.

Fatal errors (the service cannot continue):
    - StreamEndedError: encoder pipe hit EOF or a read failed
    - BufferExhaustedError: no frame boundary within the buffer limit

Per-connection errors:
    - SessionWriteError: a write to a client connection failed
"""


class StreamError(Exception):
    """Base class for all stream errors."""
    pass


class StreamEndedError(StreamError):
    """Raised when the input pipe ends or cannot be read."""
    pass


class BufferExhaustedError(StreamError):
    """Raised when a frame does not fit into the reader buffer."""
    pass


class SessionWriteError(StreamError):
    """Raised when writing part of a response to a client fails."""
    pass
