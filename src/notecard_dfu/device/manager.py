import json
import time
import logging
import threading
from typing import Any, Dict, Optional, Union

from ..errors import NotecardError, TransactionError
from ..progress import ProgressSink
from ..streams.streams import Stream
from ..streams.usb import DEFAULT_BAUD
from ..transport.sideload import SideloadResult, sideload_firmware
from .conn import Connection
from .notecard import DEFAULT_TRANSACTION_TIMEOUT, NotecardConnection

RECONNECT_ATTEMPTS = 10
RECONNECT_DELAY = 2.0  # seconds


class DeviceManager:
    """
    Manages the connection to a Notecard and the operations performed on it:
    single requests, version queries and firmware sideloads.

    The manager owns the stream. Sideloading Notecard firmware restarts the
    Notecard and drops the link, so ``reconnect`` re-opens the same port.
    """

    def __init__(self, port: Optional[str] = None, baud: int = DEFAULT_BAUD,
                 timeout: float = DEFAULT_TRANSACTION_TIMEOUT, verbose: bool = False,
                 stream: Optional[Stream] = None):
        """
        Args:
            port: Serial port; auto-detected on open() when None.
            baud: Baud rate for UART connections.
            timeout: Seconds to wait for each response.
            verbose: Include tracebacks in error logs.
            stream: An already opened stream (skips port handling, used by tests).
        """
        self.log = logging.getLogger("DeviceManager")
        self.port = port
        self.baud = baud
        self.timeout = timeout
        self.verbose = verbose
        self.conn: Optional[NotecardConnection] = None
        if stream is not None:
            self.conn = NotecardConnection(stream, timeout=timeout)

    @property
    def is_open(self) -> bool:
        return self.conn is not None

    def open(self) -> bool:
        """Opens the serial connection. Returns False if no Notecard could be reached."""
        if self.conn:
            return True

        if self.port:
            stream = Connection.usb(self.port, self.baud)
        else:
            stream, self.port = Connection.auto(self.baud)
        if stream is None:
            return False

        self.conn = NotecardConnection(stream, timeout=self.timeout)
        self.log.debug(f"DeviceManager connected on {self.port}")
        return True

    def close(self) -> None:
        """Closes the connection held by the manager."""
        if self.conn:
            try:
                self.conn.close()
                self.log.debug(f"Stream closed for port: {self.port}")
            except Exception as e:
                self.log.error(f"Error closing stream: {e}", exc_info=self.verbose)
            finally:
                self.conn = None
        else:
             self.log.debug("Close called but no active connection.")

    def reconnect(self, attempts: int = RECONNECT_ATTEMPTS, delay: float = RECONNECT_DELAY) -> bool:
        """
        Re-opens the port until the Notecard answers card.version.
        Used after a Notecard restart, when the USB device re-enumerates.
        """
        self.close()
        for attempt in range(1, attempts + 1):
            time.sleep(delay)
            self.log.debug(f"Reconnect attempt {attempt}/{attempts}...")
            if not self.open():
                continue
            try:
                self.version()
                self.log.info(f"Reconnected to Notecard on {self.port}")
                return True
            except NotecardError as e:
                self.log.debug(f"Notecard not ready yet: {e}")
                self.close()
        self.log.warning(f"Could not reconnect to Notecard after {attempts} attempts")
        return False

    def _require_conn(self) -> NotecardConnection:
        if not self.conn:
            raise TransactionError("not connected", None)
        return self.conn

    def request(self, req: Union[str, Dict[str, Any]]) -> Dict[str, Any]:
        """
        Sends one request, given as a dict or as JSON text.

        Raises:
            ValueError: the JSON text is not a request object.
            TransactionError: the request failed.
        """
        if isinstance(req, str):
            try:
                req = json.loads(req)
            except json.JSONDecodeError as e:
                raise ValueError(f"request is not valid JSON: {e}") from e
        if not isinstance(req, dict) or not ("req" in req or "cmd" in req):
            raise ValueError("request must be a JSON object with a 'req' or 'cmd' field")
        return self._require_conn().transaction(req)

    def version(self) -> Dict[str, Any]:
        """Returns the card.version response."""
        return self.request({"req": "card.version"})

    def sideload(self, firmware: bytes,
                 log_sink: Optional[ProgressSink] = None,
                 progress_sink: Optional[ProgressSink] = None,
                 filename: str = "firmware.bin",
                 upload_type: Optional[str] = None,
                 cancel: Optional[threading.Event] = None) -> SideloadResult:
        """Sideloads firmware onto the connected Notecard. Raises SideloadError on failure."""
        return sideload_firmware(self.conn, firmware, log_sink, progress_sink,
                                 filename=filename, upload_type=upload_type, cancel=cancel)
