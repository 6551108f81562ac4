import logging
from typing import List, Optional, Union

from .streams import Stream # Import the Stream protocol

class DummyStream(Stream):
    """
    A scripted in-memory stream for testing the Notecard connection.

    Queue response lines with ``program_response``; each ``readline`` pops
    one. An empty queue simulates a timeout.
    """

    def __init__(self, address: str = "dummy_addr"):
        self.log = logging.getLogger("DummyStream")
        self.address = address
        self.is_open = True
        self.sent_data: List[bytes] = []
        self.responses: List[bytes] = []
        self.fail_sends = 0
        self.log.debug(f"Initialized DummyStream for {address}")

    # --- Stream Protocol Methods --- #

    def close(self) -> bool:
        """Simulates closing the stream."""
        self.is_open = False
        self.log.debug(f"DummyStream closed for {self.address}")
        return True

    def send(self, data: bytes) -> None:
        """Records sent data."""
        if not self.is_open:
             raise OSError("Stream is closed")
        if self.fail_sends > 0:
            self.fail_sends -= 1
            raise OSError("simulated write failure")
        self.sent_data.append(bytes(data))

    def readline(self, timeout: Optional[float] = None) -> bytes:
        """Returns the next programmed line, or b'' to simulate a timeout."""
        if not self.is_open:
            raise OSError("Stream is closed")
        if not self.responses:
            return b''
        return self.responses.pop(0)

    def reset_input(self) -> None:
        pass

    # --- Test Helper Methods --- #

    def program_response(self, line: Union[str, bytes]) -> None:
        if isinstance(line, str):
            line = line.encode('utf-8')
        if not line.endswith(b'\n'):
            line += b'\n'
        self.responses.append(line)

    def joined(self) -> bytes:
        return b''.join(self.sent_data)
