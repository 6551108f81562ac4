"""
Stream Classes for Communication

Provides the Stream protocol and the implementations used to talk to a
Notecard over its serial command channel.
"""

from typing import Protocol, Optional, runtime_checkable

@runtime_checkable
class Stream(Protocol):
    """Protocol defining the interface for communication streams."""

    def close(self) -> bool:
        """Closes the stream connection."""
        ...

    def send(self, data: bytes) -> None:
        """Sends data over the stream. Raises OSError on failure."""
        ...

    def readline(self, timeout: Optional[float] = None) -> bytes:
        """
        Reads a line (up to and including the newline character).
        Returns b'' if no complete line arrived within the timeout.
        """
        ...
