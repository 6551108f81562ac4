"""
Firmware sideload over the Notecard request channel.

The image is announced with a metadata-bearing ``dfu.put``, then sent in
chunks of the size the Notecard asks for, strictly in offset order. Each
chunk is acknowledged (including any ``pending`` wait) before the next one
starts. For Notecard firmware the Notecard restarts into the new image once
the last chunk lands, so the final stage polls ``dfu.status`` and treats
losing the link as the expected outcome of that restart.
"""

import time
import hashlib
import logging
import threading
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from ..errors import (
    ERR_CARD_IO,
    ERR_DFU_IN_PROGRESS,
    ERR_DFU_NOT_READY,
    ChunkVerifyError,
    SideloadCancelled,
    SideloadError,
    TransactionError,
    error_contains,
)
from ..firmware_utils import (
    UPLOAD_TYPE_NOTECARD,
    FirmwareMetadata,
    clean_filename,
    detect_upload_type,
)
from ..progress import (
    LEVEL_DEBUG,
    LEVEL_ERROR,
    LEVEL_INFO,
    LEVEL_WARNING,
    LOG_LEVELS,
    ProgressSink,
    SafeSink,
)
from .chunk import ChunkTransport
from .utils import bool_field, int_field, str_field, transfer_rate

# Link settings used for the duration of a sideload (favour USB throughput)
USB_SEGMENT_MAX_LEN = 1024
USB_SEGMENT_DELAY_MS = 5

DEFAULT_CHUNK_SIZE = 1024
CHUNK_RETRIES = 3
CHUNK_RETRY_DELAY = 1.0          # seconds
PENDING_POLL_INTERVAL = 0.75     # seconds
PENDING_POLL_LIMIT = 240
RESTART_POLL_COUNT = 60
RESTART_POLL_INTERVAL = 1.0      # seconds
RESTART_LOSS_LIMIT = 3
RESTART_HALFWAY = RESTART_POLL_COUNT // 2

DFU_IN_PROGRESS_TEXT = "firmware update is in progress"

# Outcomes of the post-transfer restart wait
RESTART_SKIPPED = "skipped"      # host firmware, nothing to wait for
RESTART_CONFIRMED = "confirmed"  # dfu.status reported pending:false
RESTART_ASSUMED = "assumed"      # link dropped while the Notecard restarted
RESTART_TIMEOUT = "timeout"      # poll budget ran out without an answer


class TransferSession:
    """Byte accounting for one sideload. offset + remaining == total_length always."""

    def __init__(self, total_length: int, chunk_size: int, binary_max: int = 0,
                 compression_mode: str = "", began_at: float = 0.0):
        if chunk_size <= 0:
            raise ValueError(f"chunk size must be positive, got {chunk_size}")
        self.total_length = total_length
        self.offset = 0
        self.remaining = total_length
        self.chunk_size = chunk_size
        self.binary_max = binary_max
        self.compression_mode = compression_mode
        self.began_at = began_at

    def next_length(self) -> int:
        return min(self.remaining, self.chunk_size)

    def advance(self, length: int) -> None:
        if length <= 0 or length > self.remaining:
            raise ValueError(f"cannot advance by {length} with {self.remaining} bytes remaining")
        self.offset += length
        self.remaining -= length

    def fraction_done(self) -> float:
        if self.total_length == 0:
            return 1.0
        return (self.total_length - self.remaining) / self.total_length


@dataclass
class SideloadResult:
    """Summary of a completed sideload."""
    total_bytes: int
    chunks: int
    chunk_size: int
    binary_max: int
    compression_mode: str
    upload_type: str
    elapsed_secs: int
    bytes_per_sec: float
    restart: str

    @property
    def restart_confirmed(self) -> bool:
        return self.restart in (RESTART_CONFIRMED, RESTART_ASSUMED)


class SideloadTransport:
    """
    Pushes a firmware image onto a Notecard with dfu.put requests.

    Typical use:

        transport = SideloadTransport(conn, data, progress_sink=LoggingSink())
        result = transport.execute()
    """

    def __init__(self, conn, firmware: bytes,
                 log_sink: Optional[ProgressSink] = None,
                 progress_sink: Optional[ProgressSink] = None,
                 filename: str = "firmware.bin",
                 upload_type: Optional[str] = None,
                 cancel: Optional[threading.Event] = None,
                 clock: Optional[Callable[[], float]] = None):
        """
        Args:
            conn: A NotecardConnection (or anything with ``transaction``,
                ``send_bytes`` and ``link_settings``).
            firmware: The complete image.
            log_sink: Receives log lines; optional.
            progress_sink: Receives progress updates; optional.
            filename: Name reported to the Notecard; any directory part is dropped.
            upload_type: UPLOAD_TYPE_NOTECARD or UPLOAD_TYPE_HOST. Detected from
                the image signature when omitted.
            cancel: Event that aborts the transfer at the next request or sleep.
            clock: Wall clock returning epoch seconds (defaults to time.time).
        """
        self.log = logging.getLogger("SideloadTransport")
        self.conn = conn
        self.firmware = firmware
        self.log_sink = SafeSink(log_sink)
        self.progress_sink = SafeSink(progress_sink)
        self.filename = clean_filename(filename) or "firmware.bin"
        self.upload_type = upload_type or detect_upload_type(firmware)
        self.cancel = cancel
        self.clock = clock or time.time

    # --- Output helpers ---

    def _emit(self, level: str, text: str, progress: Optional[float] = None) -> None:
        self.log.log(LOG_LEVELS.get(level, logging.INFO), text)
        self.log_sink.log_message(level, text)
        if progress is not None:
            self.progress_sink.report_progress(progress, 100, text)

    # --- Blocking primitives (cancellable) ---

    def _check_cancel(self) -> None:
        if self.cancel is not None and self.cancel.is_set():
            raise SideloadCancelled("firmware sideload cancelled")

    def _sleep(self, seconds: float) -> None:
        self._check_cancel()
        time.sleep(seconds)
        self._check_cancel()

    def _request(self, req: Dict[str, Any]) -> Dict[str, Any]:
        self._check_cancel()
        return self.conn.transaction(req)

    # --- Stages ---

    def execute(self) -> SideloadResult:
        """
        Runs the sideload.

        Returns:
            SideloadResult describing the transfer.

        Raises:
            SideloadError: on any fatal failure (SideloadCancelled if cancelled).
        """
        if not self.firmware:
            raise SideloadError("firmware image is empty")

        self._emit(LEVEL_INFO, "Starting firmware sideload process")
        try:
            with self.conn.link_settings(USB_SEGMENT_MAX_LEN, USB_SEGMENT_DELAY_MS):
                self._emit(LEVEL_DEBUG, "Optimizing connection settings for USB")
                binary_max = self._probe_binary()
                self._sync_time()
                self._emit(LEVEL_INFO, "Starting DFU operation...", 15)
                result = self._load(binary_max)
        except SideloadError as e:
            self._emit(LEVEL_ERROR, f"Failed to load firmware: {e}")
            raise

        self._emit(LEVEL_INFO, "Firmware sideload completed successfully", 100)
        return result

    def _probe_binary(self) -> int:
        self._emit(LEVEL_INFO, "Checking binary transfer capability...", 5)
        try:
            rsp = self._request({"req": "card.binary"})
        except TransactionError as e:
            if error_contains(e, ERR_CARD_IO):
                raise SideloadError(f"card I/O error during binary check: {e}") from e
            # Firmware without card.binary simply lacks the sub-channel
            self.log.debug(f"card.binary not available: {e}")
            rsp = {}

        binary_max = int_field(rsp, "max")
        if binary_max > 0:
            self._emit(LEVEL_INFO, f"Binary transfers supported (max: {binary_max} bytes)")
        else:
            binary_max = 0
            self._emit(LEVEL_WARNING, "Binary transfers not supported, using standard mode")
        return binary_max

    def _sync_time(self) -> None:
        epoch = int(self.clock())
        try:
            self._request({"req": "card.time", "time": epoch})
        except TransactionError as e:
            raise SideloadError(f"failed to set notecard time: {e}") from e
        self._emit(LEVEL_DEBUG, "Set Notecard time for firmware update")
        self.progress_sink.report_progress(10, 100, "Notecard time synchronized")

    def _initiate(self, metadata: FirmwareMetadata) -> Dict[str, Any]:
        self._emit(LEVEL_INFO, "Initiating firmware transfer...", 30)
        try:
            return self._request({
                "req": "dfu.put",
                "name": metadata.name,
                "body": metadata.to_body(),
            })
        except TransactionError as e:
            raise SideloadError(f"failed to initiate DFU: {e}") from e

    def _load(self, binary_max: int) -> SideloadResult:
        total_len = len(self.firmware)
        self._emit(LEVEL_INFO, f"Starting firmware transfer ({total_len} bytes)", 20)

        self._emit(LEVEL_DEBUG, "Generating firmware metadata...", 25)
        metadata = FirmwareMetadata.from_image(
            self.firmware, self.filename, self.upload_type, created=int(self.clock()))

        rsp = self._initiate(metadata)
        chunk_size = int_field(rsp, "length")
        if chunk_size <= 0:
            chunk_size = DEFAULT_CHUNK_SIZE
        if 0 < binary_max < chunk_size:
            # Every chunk must fit the binary sub-channel
            self.log.debug(f"Chunk size {chunk_size} exceeds binary max, using {binary_max}")
            chunk_size = binary_max
        compression_mode = str_field(rsp, "compression")
        if compression_mode:
            # Advertised only; chunks are always sent uncompressed
            self.log.debug(f"Notecard offers {compression_mode} compression; sending uncompressed")
        self._emit(LEVEL_DEBUG, f"Using chunk size: {chunk_size} bytes, compression: {compression_mode or 'none'}")

        session = TransferSession(total_len, chunk_size, binary_max, compression_mode,
                                  began_at=self.clock())
        transport = ChunkTransport(self.conn, binary_max)
        chunk_count = 0

        while session.remaining > 0:
            chunk_count += 1
            this_len = session.next_length()
            chunk = self.firmware[session.offset:session.offset + this_len]
            percent = session.fraction_done() * 100

            self.log.debug(f"Sending chunk {chunk_count}: {percent:.1f}% complete ({this_len} bytes)")
            self.log_sink.log_message(
                LEVEL_DEBUG, f"Sending chunk {chunk_count}: {percent:.1f}% complete ({this_len} bytes)")
            self.progress_sink.report_progress(
                30 + (percent / 100) * 50, 100,
                f"Transferring chunk {chunk_count}: {percent:.1f}% complete")

            rsp = self._send_chunk(transport, session.offset, chunk)
            session.advance(this_len)

            if bool_field(rsp, "pending"):
                self._wait_pending(session)

        elapsed_secs, rate = transfer_rate(total_len, session.began_at, self.clock())
        self._emit(LEVEL_INFO,
                   f"Transfer completed: {elapsed_secs} seconds ({rate:.0f} Bps, {chunk_count} chunks)", 80)

        restart = RESTART_SKIPPED
        if self.upload_type == UPLOAD_TYPE_NOTECARD:
            restart = self._wait_for_restart()

        self._emit(LEVEL_INFO, "Firmware update completed successfully!")
        return SideloadResult(
            total_bytes=total_len,
            chunks=chunk_count,
            chunk_size=chunk_size,
            binary_max=binary_max,
            compression_mode=compression_mode,
            upload_type=self.upload_type,
            elapsed_secs=elapsed_secs,
            bytes_per_sec=rate,
            restart=restart,
        )

    def _send_chunk(self, transport: ChunkTransport, offset: int, chunk: bytes) -> Dict[str, Any]:
        md5 = hashlib.md5(chunk).hexdigest()
        for attempt in range(CHUNK_RETRIES):
            if attempt > 0:
                self._sleep(CHUNK_RETRY_DELAY)
            self._check_cancel()
            try:
                return transport.send(offset, chunk, md5)
            except TransactionError as e:
                if error_contains(e, ERR_CARD_IO) and attempt < CHUNK_RETRIES - 1:
                    self._emit(LEVEL_WARNING,
                               f"I/O error sending chunk at offset {offset}, retrying ({attempt + 1}/{CHUNK_RETRIES}): {e}")
                    continue
                if error_contains(e, ERR_CARD_IO):
                    raise SideloadError(
                        f"failed to send chunk at offset {offset} after {CHUNK_RETRIES} retries: {e}") from e
                raise SideloadError(f"failed to send chunk at offset {offset}: {e}") from e
            except ChunkVerifyError as e:
                raise ChunkVerifyError(f"chunk at offset {offset}: {e}") from e
        # Unreachable: the last attempt either returns or raises
        raise SideloadError(f"failed to send chunk at offset {offset} after {CHUNK_RETRIES} retries")

    @staticmethod
    def _is_dfu_busy(exc: TransactionError) -> bool:
        return (error_contains(exc, ERR_DFU_NOT_READY)
                or error_contains(exc, ERR_DFU_IN_PROGRESS)
                or DFU_IN_PROGRESS_TEXT in str(exc))

    def _wait_pending(self, session: TransferSession) -> None:
        """Polls dfu.put until the Notecard has finished with the last chunk."""
        for _ in range(PENDING_POLL_LIMIT):
            try:
                rsp = self._request({"req": "dfu.put"})
            except TransactionError as e:
                if session.remaining == 0 and self._is_dfu_busy(e):
                    # The Notecard has moved on to applying the image
                    self.log.debug(f"Notecard busy applying update: {e}")
                    return
                raise SideloadError(f"error checking DFU status: {e}") from e

            # The Notecard omits false fields, so an absent flag means done
            if not bool_field(rsp, "pending"):
                return
            self._sleep(PENDING_POLL_INTERVAL)

        raise SideloadError(
            f"DFU still pending at offset {session.offset} after {PENDING_POLL_LIMIT} status checks")

    @staticmethod
    def _is_link_loss(exc: TransactionError) -> bool:
        text = str(exc).lower()
        return error_contains(exc, ERR_CARD_IO) or "connection" in text or "timeout" in text

    def _wait_for_restart(self) -> str:
        """
        Waits for the Notecard to finish installing its new firmware.

        Losing the link here is expected: the Notecard drops USB while it
        restarts. Either RESTART_LOSS_LIMIT consecutive losses, or any loss
        past the halfway point, counts as a completed update. Running out of
        polls is not an error; the caller decides whether to reconnect.
        """
        self._emit(LEVEL_INFO, "Waiting for firmware update to complete...", 85)

        lost_count = 0
        for i in range(RESTART_POLL_COUNT):
            try:
                rsp = self._request({"req": "dfu.status", "name": "card"})
            except TransactionError as e:
                if self._is_link_loss(e):
                    lost_count += 1
                    if lost_count == 1:
                        self._emit(LEVEL_INFO, "Connection lost (Notecard restarting)...", 90)
                    if lost_count >= RESTART_LOSS_LIMIT or i > RESTART_HALFWAY:
                        self._emit(LEVEL_INFO, "Firmware update completed!", 95)
                        return RESTART_ASSUMED
                else:
                    self.log.debug(f"dfu.status error while waiting: {e}")
            else:
                lost_count = 0
                if not bool_field(rsp, "pending"):
                    self._emit(LEVEL_INFO, "Firmware update completed!", 95)
                    return RESTART_CONFIRMED
            self._sleep(RESTART_POLL_INTERVAL)

        self._emit(LEVEL_WARNING,
                   f"No completion confirmation from Notecard after {RESTART_POLL_COUNT} seconds")
        return RESTART_TIMEOUT


def sideload_firmware(conn, firmware: bytes,
                      log_sink: Optional[ProgressSink] = None,
                      progress_sink: Optional[ProgressSink] = None,
                      **options: Any) -> SideloadResult:
    """
    Sideload ``firmware`` onto the Notecard behind ``conn``.

    Keyword options are passed to SideloadTransport (filename, upload_type,
    cancel, clock). Raises SideloadError on failure.
    """
    if conn is None:
        raise SideloadError("notecard not initialized")
    return SideloadTransport(conn, firmware, log_sink, progress_sink, **options).execute()
