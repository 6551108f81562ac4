"""
Notecard request/response channel.

Requests are single-line JSON objects terminated by a newline. The Notecard
answers each ``req`` with one JSON line; ``cmd`` requests get no answer.
Writes are broken into segments with a pause between them so the Notecard's
receive buffer is never overrun on slow links.
"""

import json
import time
import logging
import contextlib
from typing import Any, Dict, Iterator, Optional

from notecard_dfu.errors import ERR_CARD_IO, TransactionError
from notecard_dfu.streams.streams import Stream

# Serial defaults; safe for UART links at 9600 baud
DEFAULT_SEGMENT_MAX_LEN = 250
DEFAULT_SEGMENT_DELAY_MS = 250
DEFAULT_TRANSACTION_TIMEOUT = 30.0  # seconds


class NotecardConnection:
    """
    A request/response channel to one Notecard over an open Stream.

    The segment settings belong to the connection, so independent
    connections can be tuned without affecting each other.
    """

    def __init__(self, stream: Stream,
                 segment_max_len: int = DEFAULT_SEGMENT_MAX_LEN,
                 segment_delay_ms: int = DEFAULT_SEGMENT_DELAY_MS,
                 timeout: float = DEFAULT_TRANSACTION_TIMEOUT):
        if stream is None:
            raise ValueError("NotecardConnection requires a valid Stream object.")
        self.log = logging.getLogger("NotecardConnection")
        self.stream = stream
        self.segment_max_len = segment_max_len
        self.segment_delay_ms = segment_delay_ms
        self.timeout = timeout

    @contextlib.contextmanager
    def link_settings(self, max_len: int, delay_ms: int) -> Iterator["NotecardConnection"]:
        """
        Temporarily install segment settings, restoring the previous values on
        every exit path.
        """
        saved = (self.segment_max_len, self.segment_delay_ms)
        self.segment_max_len = max_len
        self.segment_delay_ms = delay_ms
        self.log.debug(f"Link settings: segment {max_len} bytes, delay {delay_ms} ms")
        try:
            yield self
        finally:
            self.segment_max_len, self.segment_delay_ms = saved
            self.log.debug("Restored original connection settings")

    def _write(self, data: bytes, name: str) -> None:
        seg_len = self.segment_max_len if self.segment_max_len > 0 else len(data)
        offset = 0
        try:
            while offset < len(data):
                segment = data[offset:offset + seg_len]
                self.stream.send(segment)
                offset += len(segment)
                if offset < len(data) and self.segment_delay_ms > 0:
                    time.sleep(self.segment_delay_ms / 1000.0)
        except OSError as e:
            raise TransactionError(f"error writing to Notecard: {e} {ERR_CARD_IO}", name) from e

    def _read_response(self, name: str, timeout: float) -> Dict[str, Any]:
        deadline = time.monotonic() + timeout
        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise TransactionError(f"transaction timeout {ERR_CARD_IO}", name)
            try:
                line = self.stream.readline(timeout=remaining)
            except OSError as e:
                raise TransactionError(f"error reading from Notecard: {e} {ERR_CARD_IO}", name) from e
            if not line:
                continue
            text = line.decode('utf-8', errors='replace').strip()
            if not text:
                continue
            try:
                rsp = json.loads(text)
            except json.JSONDecodeError as e:
                self.log.debug(f"Unparseable response line: {text!r}")
                raise TransactionError(f"invalid JSON response: {e} {ERR_CARD_IO}", name) from e
            if not isinstance(rsp, dict):
                raise TransactionError(f"unexpected response: {text} {ERR_CARD_IO}", name)
            return rsp

    def transaction(self, req: Dict[str, Any], timeout: Optional[float] = None) -> Dict[str, Any]:
        """
        Send one request and return the parsed response.

        Raises:
            TransactionError: the link failed (tagged {io}) or the Notecard
                returned an ``err`` field.
        """
        name = req.get("req") or req.get("cmd") or "?"
        payload = json.dumps(req, separators=(',', ':')).encode('utf-8') + b'\n'
        self.log.debug(f"Sending {name} ({len(payload)} bytes)")

        reset = getattr(self.stream, "reset_input", None)
        if reset is not None:
            reset()
        self._write(payload, name)

        if "cmd" in req and "req" not in req:
            return {}

        rsp = self._read_response(name, timeout if timeout is not None else self.timeout)
        if "err" in rsp:
            self.log.debug(f"{name} returned error: {rsp['err']}")
            raise TransactionError(str(rsp["err"]), name)
        return rsp

    def send_bytes(self, data: bytes) -> None:
        """Write a pre-framed buffer, bypassing JSON request framing."""
        self.log.debug(f"Sending {len(data)} raw bytes")
        self._write(data, "send-bytes")

    def close(self) -> None:
        if self.stream:
            self.stream.close()
