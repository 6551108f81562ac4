import os
import base64
import logging
import threading
import unittest
from unittest.mock import call, patch

logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(name)s - %(levelname)s - %(message)s')

from ..device.dummy import ScriptedConnection
from ..errors import ChunkVerifyError, SideloadCancelled, SideloadError, TransactionError
from ..firmware_utils import NOTECARD_FIRMWARE_SIGNATURE, UPLOAD_TYPE_HOST, UPLOAD_TYPE_NOTECARD
from . import cobs
from . import sideload
from .sideload import (
    RESTART_ASSUMED,
    RESTART_CONFIRMED,
    RESTART_SKIPPED,
    RESTART_TIMEOUT,
    SideloadTransport,
    TransferSession,
    sideload_firmware,
)

NOW = 1700000000.0
IO_ERROR = TransactionError("serial port timeout {io}", "dfu.put")


def notecard_image(size=600):
    head = b"\x00" * 100
    return head + NOTECARD_FIRMWARE_SIGNATURE + b"\x01" * (size - len(head) - len(NOTECARD_FIRMWARE_SIGNATURE))


class RecordingSink:
    def __init__(self):
        self.messages = []
        self.progress = []

    def log_message(self, level, text):
        self.messages.append((level, text))

    def report_progress(self, current, total, text):
        self.progress.append(current)


class BrokenSink:
    def log_message(self, level, text):
        raise RuntimeError("sink exploded")

    def report_progress(self, current, total, text):
        raise RuntimeError("sink exploded")


class SideloadTestCase(unittest.TestCase):
    """Common fixture: a scripted Notecard and a patched sleep."""

    def setUp(self):
        self.conn = ScriptedConnection()
        self.set_chunk_size(1024)
        patcher = patch.object(sideload.time, "sleep")
        self.mock_sleep = patcher.start()
        self.addCleanup(patcher.stop)

    def set_chunk_size(self, size):
        def dfu_put(req):
            if "name" in req:
                return {"length": size}
            return {}
        self.conn.default("dfu.put", dfu_put)

    def enable_binary(self, binary_max=4096):
        conn = self.conn

        def card_binary(req):
            staged = len(cobs.decode(conn.raw[-1][:-1])) if conn.raw else 0
            return {"max": binary_max, "length": staged}
        conn.default("card.binary", card_binary)

    def run_sideload(self, firmware, **options):
        options.setdefault("clock", lambda: NOW)
        return SideloadTransport(self.conn, firmware, **options).execute()

    def chunk_requests(self):
        return [r for r in self.conn.sent("dfu.put") if "offset" in r]

    def status_polls(self):
        return [r for r in self.conn.sent("dfu.put") if len(r) == 1]

    def sleeps(self, seconds):
        return self.mock_sleep.call_args_list.count(call(seconds))


class TestTransfer(SideloadTestCase):

    def test_end_to_end_inline(self):
        firmware = os.urandom(3500)
        result = self.run_sideload(firmware, filename="/tmp/build/app.bin")

        chunks = self.chunk_requests()
        self.assertEqual([c["offset"] for c in chunks], [0, 1024, 2048, 3072])
        self.assertEqual([c["length"] for c in chunks], [1024, 1024, 1024, 428])
        reassembled = b"".join(base64.b64decode(c["payload"]) for c in chunks)
        self.assertEqual(reassembled, firmware)

        self.assertEqual(result.total_bytes, 3500)
        self.assertEqual(result.chunks, 4)
        self.assertEqual(result.chunk_size, 1024)
        self.assertEqual(result.binary_max, 0)
        self.assertGreaterEqual(result.elapsed_secs, 1)
        self.assertEqual(result.upload_type, UPLOAD_TYPE_HOST)
        self.assertEqual(result.restart, RESTART_SKIPPED)

    def test_request_order(self):
        self.run_sideload(b"z" * 10)
        self.assertEqual(self.conn.names(), ["card.binary", "card.time", "dfu.put", "dfu.put"])
        self.assertEqual(self.conn.requests[1], {"req": "card.time", "time": int(NOW)})

    def test_initiate_carries_metadata(self):
        firmware = b"firmware-image" * 10
        self.run_sideload(firmware, filename="C:\\builds\\app.bin")
        initiate = self.conn.sent("dfu.put")[0]
        self.assertEqual(initiate["name"], "app.bin")
        body = initiate["body"]
        self.assertEqual(body["length"], len(firmware))
        self.assertEqual(body["name"], "app.bin")
        self.assertEqual(body["source"], "app.bin")
        self.assertEqual(body["type"], UPLOAD_TYPE_HOST)
        self.assertEqual(body["created"], int(NOW))
        self.assertEqual(len(body["md5"]), 32)

    def test_end_to_end_binary(self):
        self.enable_binary()
        firmware = os.urandom(2500)
        result = self.run_sideload(firmware)

        self.assertEqual(result.binary_max, 4096)
        chunks = self.chunk_requests()
        self.assertTrue(all(c.get("binary") is True for c in chunks))
        self.assertTrue(all("payload" not in c for c in chunks))
        staged = b"".join(cobs.decode(frame[:-1]) for frame in self.conn.raw)
        self.assertEqual(staged, firmware)

    def test_chunk_size_clamped_to_binary_max(self):
        self.enable_binary(binary_max=512)
        firmware = os.urandom(1300)
        result = self.run_sideload(firmware)

        self.assertEqual(result.chunk_size, 512)
        chunks = self.chunk_requests()
        self.assertEqual([c["length"] for c in chunks], [512, 512, 276])
        self.assertTrue(all(c.get("binary") is True for c in chunks))
        staged = b"".join(cobs.decode(frame[:-1]) for frame in self.conn.raw)
        self.assertEqual(staged, firmware)

    def test_chunks_partition_the_image(self):
        for size in (1, 1023, 1024, 1025, 5000):
            with self.subTest(size=size):
                self.conn = ScriptedConnection()
                self.set_chunk_size(1024)
                self.run_sideload(b"\xAB" * size)
                chunks = self.chunk_requests()
                offsets = [c["offset"] for c in chunks]
                self.assertEqual(offsets, sorted(set(offsets)))
                self.assertEqual(sum(c["length"] for c in chunks), size)
                for c in chunks:
                    self.assertLessEqual(c["length"], 1024)

    def test_chunk_size_from_string_field(self):
        self.conn.script("dfu.put", {"length": "512"})
        self.run_sideload(b"q" * 1500)
        self.assertEqual([c["length"] for c in self.chunk_requests()], [512, 512, 476])

    def test_default_chunk_size_when_not_advertised(self):
        self.conn.script("dfu.put", {})
        result = self.run_sideload(b"q" * 2000)
        self.assertEqual(result.chunk_size, sideload.DEFAULT_CHUNK_SIZE)

    def test_compression_is_advisory(self):
        firmware = b"compressible" * 50
        self.conn.script("dfu.put", {"length": 1024, "compression": "qlz"})
        result = self.run_sideload(firmware)
        self.assertEqual(result.compression_mode, "qlz")
        payload = base64.b64decode(self.chunk_requests()[0]["payload"])
        self.assertEqual(payload, firmware)

    def test_link_settings_applied_and_restored(self):
        self.run_sideload(b"abc")
        self.assertEqual(self.conn.settings_history, [(1024, 5)])
        self.assertEqual((self.conn.segment_max_len, self.conn.segment_delay_ms), (250, 250))

    def test_link_settings_restored_after_failure(self):
        self.conn.script("card.time", TransactionError("clock rejected", "card.time"))
        with self.assertRaises(SideloadError) as ctx:
            self.run_sideload(b"abc")
        self.assertIn("failed to set notecard time", str(ctx.exception))
        self.assertEqual((self.conn.segment_max_len, self.conn.segment_delay_ms), (250, 250))
        self.assertNotIn("dfu.put", self.conn.names())

    def test_empty_image_rejected(self):
        with self.assertRaises(SideloadError):
            self.run_sideload(b"")
        self.assertEqual(self.conn.requests, [])

    def test_not_initialized(self):
        with self.assertRaises(SideloadError) as ctx:
            sideload_firmware(None, b"abc")
        self.assertIn("not initialized", str(ctx.exception))


class TestBinaryProbe(SideloadTestCase):

    def test_probe_io_error_is_fatal(self):
        self.conn.script("card.binary", TransactionError("read failed {io}", "card.binary"))
        with self.assertRaises(SideloadError) as ctx:
            self.run_sideload(b"abc")
        self.assertIn("card I/O error", str(ctx.exception))
        self.assertEqual(self.conn.names(), ["card.binary"])

    def test_probe_other_error_means_inline(self):
        self.conn.script("card.binary", TransactionError("unknown request", "card.binary"))
        result = self.run_sideload(b"abc")
        self.assertEqual(result.binary_max, 0)
        self.assertIn("payload", self.chunk_requests()[0])

    def test_probe_without_max_means_inline(self):
        self.conn.script("card.binary", {"connected": True})
        result = self.run_sideload(b"abc")
        self.assertEqual(result.binary_max, 0)

    def test_probe_max_as_string(self):
        self.enable_binary()
        self.conn.script("card.binary", {"max": "2048"})
        result = self.run_sideload(b"abc")
        self.assertEqual(result.binary_max, 2048)


class TestFailures(SideloadTestCase):

    def test_initiate_failure(self):
        self.conn.script("dfu.put", TransactionError("dfu busy", "dfu.put"))
        with self.assertRaises(SideloadError) as ctx:
            self.run_sideload(b"abc")
        self.assertIn("failed to initiate DFU", str(ctx.exception))

    def test_io_retry_then_success(self):
        self.conn.script("dfu.put", {"length": 1024}, IO_ERROR, IO_ERROR, {})
        result = self.run_sideload(b"r" * 500)

        self.assertEqual(result.chunks, 1)
        self.assertEqual(len(self.chunk_requests()), 3)
        self.assertEqual(self.sleeps(sideload.CHUNK_RETRY_DELAY), 2)

    def test_io_retries_exhausted(self):
        self.conn.script("dfu.put", {"length": 1024}, {}, IO_ERROR, IO_ERROR, IO_ERROR)
        with self.assertRaises(SideloadError) as ctx:
            self.run_sideload(b"r" * 1500)
        message = str(ctx.exception)
        self.assertIn("offset 1024", message)
        self.assertIn("after 3 retries", message)
        self.assertEqual([c["offset"] for c in self.chunk_requests()], [0, 1024, 1024, 1024])

    def test_binary_staging_io_error_resends_chunk(self):
        self.enable_binary()
        self.conn.script("card.binary.put", TransactionError("write failed {io}", "card.binary.put"))
        firmware = b"s" * 300
        result = self.run_sideload(firmware)

        self.assertEqual(result.chunks, 1)
        self.assertEqual(len(self.conn.sent("card.binary.put")), 2)
        # The failed attempt never reached the raw write
        self.assertEqual(len(self.conn.raw), 1)
        self.assertEqual(cobs.decode(self.conn.raw[0][:-1]), firmware)
        self.assertEqual(len(self.chunk_requests()), 1)
        self.assertEqual(self.sleeps(sideload.CHUNK_RETRY_DELAY), 1)

    def test_non_io_error_not_retried(self):
        self.conn.script("dfu.put", {"length": 1024}, TransactionError("md5 mismatch", "dfu.put"))
        with self.assertRaises(SideloadError) as ctx:
            self.run_sideload(b"r" * 500)
        self.assertIn("failed to send chunk at offset 0", str(ctx.exception))
        self.assertEqual(len(self.chunk_requests()), 1)
        self.assertEqual(self.sleeps(sideload.CHUNK_RETRY_DELAY), 0)

    def test_verify_failure_not_retried(self):
        self.enable_binary()
        self.conn.script("card.binary", {"max": 4096}, {"length": 3})
        with self.assertRaises(ChunkVerifyError) as ctx:
            self.run_sideload(b"v" * 100)
        self.assertIn("offset 0", str(ctx.exception))
        self.assertEqual(self.chunk_requests(), [])
        self.assertEqual(len(self.conn.sent("card.binary.put")), 1)

    def test_failure_reported_to_log_sink(self):
        sink = RecordingSink()
        self.conn.script("dfu.put", TransactionError("dfu busy", "dfu.put"))
        with self.assertRaises(SideloadError):
            self.run_sideload(b"abc", log_sink=sink)
        self.assertEqual(sink.messages[-1][0], "error")
        self.assertIn("Failed to load firmware", sink.messages[-1][1])


class TestPending(SideloadTestCase):

    def test_pending_polls_until_clear(self):
        self.conn.script("dfu.put", {"length": 1024},
                         {"pending": True},
                         {"pending": True}, {"pending": True}, {"pending": False})
        result = self.run_sideload(b"p" * 2048)

        self.assertEqual(result.chunks, 2)
        self.assertEqual(len(self.status_polls()), 3)
        self.assertEqual(self.sleeps(sideload.PENDING_POLL_INTERVAL), 2)
        # The second chunk follows the polls
        self.assertEqual(self.conn.sent("dfu.put")[-1]["offset"], 1024)

    def test_absent_pending_means_done(self):
        self.conn.script("dfu.put", {"length": 1024}, {"pending": True}, {})
        self.run_sideload(b"p" * 100)
        self.assertEqual(len(self.status_polls()), 1)

    def test_busy_after_last_chunk_is_success(self):
        busy = TransactionError(f"{sideload.DFU_IN_PROGRESS_TEXT} {{dfu-in-progress}}", "dfu.put")
        self.conn.script("dfu.put", {"length": 1024}, {"pending": True}, busy)
        result = self.run_sideload(b"p" * 100)
        self.assertEqual(result.chunks, 1)

    def test_busy_mid_transfer_is_fatal(self):
        busy = TransactionError("{dfu-not-ready}", "dfu.put")
        self.conn.script("dfu.put", {"length": 1024}, {"pending": True}, busy)
        with self.assertRaises(SideloadError) as ctx:
            self.run_sideload(b"p" * 2000)
        self.assertIn("error checking DFU status", str(ctx.exception))

    def test_pending_poll_limit(self):
        def always_pending(req):
            if "name" in req:
                return {"length": 1024}
            return {"pending": True}
        self.conn.default("dfu.put", always_pending)
        with patch.object(sideload, "PENDING_POLL_LIMIT", 5):
            with self.assertRaises(SideloadError) as ctx:
                self.run_sideload(b"p" * 100)
        self.assertIn("still pending", str(ctx.exception))
        self.assertEqual(len(self.status_polls()), 5)


class TestRestartWait(SideloadTestCase):

    def run_notecard(self, **options):
        return self.run_sideload(notecard_image(), **options)

    def test_upload_type_detected(self):
        self.conn.default("dfu.status", {"pending": False})
        result = self.run_notecard()
        self.assertEqual(result.upload_type, UPLOAD_TYPE_NOTECARD)
        self.assertEqual(self.conn.sent("dfu.put")[0]["body"]["type"], UPLOAD_TYPE_NOTECARD)

    def test_confirmed(self):
        self.conn.script("dfu.status", {"pending": True}, {"pending": False})
        result = self.run_notecard()
        self.assertEqual(result.restart, RESTART_CONFIRMED)
        self.assertTrue(result.restart_confirmed)
        self.assertEqual(self.conn.sent("dfu.status")[0], {"req": "dfu.status", "name": "card"})

    def test_consecutive_link_losses(self):
        lost = TransactionError("serial port timeout {io}", "dfu.status")
        self.conn.script("dfu.status", lost, lost, lost, {"pending": False})
        result = self.run_notecard()
        self.assertEqual(result.restart, RESTART_ASSUMED)
        self.assertTrue(result.restart_confirmed)
        self.assertEqual(len(self.conn.sent("dfu.status")), 3)

    def test_connection_text_counts_as_loss(self):
        lost = TransactionError("Connection reset by peer", "dfu.status")
        self.conn.script("dfu.status", lost, lost, lost)
        result = self.run_notecard()
        self.assertEqual(result.restart, RESTART_ASSUMED)

    def test_loss_streak_resets(self):
        lost = TransactionError("read failed {io}", "dfu.status")
        self.conn.script("dfu.status", lost, {"pending": True}, lost, lost, lost)
        result = self.run_notecard()
        self.assertEqual(result.restart, RESTART_ASSUMED)
        self.assertEqual(len(self.conn.sent("dfu.status")), 5)

    def test_single_loss_past_halfway(self):
        lost = TransactionError("read failed {io}", "dfu.status")
        replies = [{"pending": True}] * (sideload.RESTART_HALFWAY + 1) + [lost]
        self.conn.script("dfu.status", *replies)
        result = self.run_notecard()
        self.assertEqual(result.restart, RESTART_ASSUMED)
        self.assertEqual(len(self.conn.sent("dfu.status")), sideload.RESTART_HALFWAY + 2)

    def test_other_errors_ignored(self):
        self.conn.script("dfu.status", TransactionError("no such file", "dfu.status"), {"pending": False})
        result = self.run_notecard()
        self.assertEqual(result.restart, RESTART_CONFIRMED)

    def test_timeout_is_not_an_error(self):
        self.conn.default("dfu.status", {"pending": True})
        result = self.run_notecard()
        self.assertEqual(result.restart, RESTART_TIMEOUT)
        self.assertFalse(result.restart_confirmed)
        self.assertEqual(len(self.conn.sent("dfu.status")), sideload.RESTART_POLL_COUNT)
        self.assertEqual(self.sleeps(sideload.RESTART_POLL_INTERVAL), sideload.RESTART_POLL_COUNT)

    def test_host_firmware_skips_wait(self):
        result = self.run_sideload(b"host" * 100, upload_type=UPLOAD_TYPE_HOST)
        self.assertEqual(result.restart, RESTART_SKIPPED)
        self.assertEqual(self.conn.sent("dfu.status"), [])


class TestCancellation(SideloadTestCase):

    def test_cancel_before_start(self):
        cancel = threading.Event()
        cancel.set()
        with self.assertRaises(SideloadCancelled):
            self.run_sideload(b"abc", cancel=cancel)
        self.assertEqual(self.conn.requests, [])

    def test_cancel_between_chunks(self):
        cancel = threading.Event()

        def dfu_put(req):
            if "name" in req:
                return {"length": 1024}
            cancel.set()
            return {}
        self.conn.default("dfu.put", dfu_put)

        with self.assertRaises(SideloadCancelled):
            self.run_sideload(b"c" * 3000, cancel=cancel)
        self.assertEqual(len(self.chunk_requests()), 1)
        self.assertEqual((self.conn.segment_max_len, self.conn.segment_delay_ms), (250, 250))


class TestSinks(SideloadTestCase):

    def test_progress_is_monotonic(self):
        sink = RecordingSink()
        self.run_sideload(b"m" * 5000, progress_sink=sink)
        self.assertEqual(sink.progress[0], 5)
        self.assertEqual(sink.progress[-1], 100)
        self.assertEqual(sink.progress, sorted(sink.progress))
        self.assertIn(80, sink.progress)

    def test_log_sink_gets_summary(self):
        sink = RecordingSink()
        self.run_sideload(b"m" * 3500, log_sink=sink)
        texts = [text for _, text in sink.messages]
        self.assertTrue(any(t.startswith("Transfer completed: 1 seconds") for t in texts))
        self.assertTrue(any("4 chunks" in t for t in texts))

    def test_broken_sinks_do_not_break_transfer(self):
        result = self.run_sideload(b"m" * 100, log_sink=BrokenSink(), progress_sink=BrokenSink())
        self.assertEqual(result.chunks, 1)


class TestTransferSession(unittest.TestCase):

    def test_accounting(self):
        session = TransferSession(2500, 1024)
        lengths = []
        while session.remaining:
            n = session.next_length()
            lengths.append(n)
            session.advance(n)
            self.assertEqual(session.offset + session.remaining, 2500)
        self.assertEqual(lengths, [1024, 1024, 452])
        self.assertEqual(session.fraction_done(), 1.0)

    def test_invalid_values(self):
        with self.assertRaises(ValueError):
            TransferSession(100, 0)
        session = TransferSession(100, 64)
        with self.assertRaises(ValueError):
            session.advance(101)
        with self.assertRaises(ValueError):
            session.advance(0)


if __name__ == '__main__':
    unittest.main()
