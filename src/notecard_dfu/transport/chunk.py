"""
Delivery of one firmware chunk to the Notecard.

Two wire strategies:

* binary: the chunk is COBS-framed and written raw after a
  ``card.binary.put`` announcement, checked with ``card.binary``, and then
  committed with a ``dfu.put`` that carries ``binary:true`` and no payload;
* inline: the chunk travels base64-encoded in the ``payload`` field of the
  ``dfu.put`` request.

Nothing here retries. Errors propagate so the caller can resend the whole
chunk.
"""

import base64
import hashlib
import logging
from typing import Any, Dict, Optional

from ..errors import ChunkVerifyError, SideloadError
from . import cobs
from .utils import int_field

FRAME_DELIMITER = cobs.DEFAULT_DELIMITER


class ChunkTransport:
    """Sends chunks over a Notecard connection, binary when the device allows it."""

    def __init__(self, conn, binary_max: int = 0):
        """
        Args:
            conn: Object providing ``transaction(dict) -> dict`` and ``send_bytes(bytes)``.
            binary_max: Largest payload the binary sub-channel accepts; 0 disables it.
        """
        self.log = logging.getLogger("ChunkTransport")
        self.conn = conn
        self.binary_max = binary_max

    def uses_binary(self, length: int) -> bool:
        return self.binary_max > 0 and length <= self.binary_max

    def send(self, offset: int, chunk: bytes, md5: Optional[str] = None) -> Dict[str, Any]:
        """
        Deliver ``chunk`` for image offset ``offset``.

        Returns:
            The Notecard's response to the committing dfu.put.

        Raises:
            TransactionError: any request failed.
            ChunkVerifyError: the binary sub-channel received the wrong length.
            SideloadError: the chunk could not be framed.
        """
        if md5 is None:
            md5 = hashlib.md5(chunk).hexdigest()

        req: Dict[str, Any] = {
            "req": "dfu.put",
            "offset": offset,
            "length": len(chunk),
        }

        if self.uses_binary(len(chunk)):
            self._stage_binary(chunk)
            req["binary"] = True
        else:
            req["payload"] = base64.b64encode(chunk).decode('ascii')

        req["status"] = md5
        return self.conn.transaction(req)

    def _stage_binary(self, chunk: bytes) -> None:
        try:
            encoded = cobs.encode(chunk, FRAME_DELIMITER)
        except ValueError as e:
            raise SideloadError(f"failed to COBS encode payload: {e}") from e

        self.conn.transaction({"req": "card.binary.put", "cobs": len(encoded)})
        self.conn.send_bytes(encoded + bytes([FRAME_DELIMITER]))

        verify_rsp = self.conn.transaction({"req": "card.binary"})
        received = int_field(verify_rsp, "length")
        if received != len(chunk):
            raise ChunkVerifyError(
                f"notecard payload verification failed ({len(chunk)} sent, {received} received)")
        self.log.debug(f"Staged {len(chunk)} bytes ({len(encoded)} framed) on binary sub-channel")
