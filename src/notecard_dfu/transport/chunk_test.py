import base64
import hashlib
import unittest

from ..device.dummy import ScriptedConnection
from ..errors import ChunkVerifyError, TransactionError
from . import cobs
from .chunk import ChunkTransport


class TestInlineChunk(unittest.TestCase):

    def setUp(self):
        self.conn = ScriptedConnection()
        self.transport = ChunkTransport(self.conn, binary_max=0)

    def test_payload_is_base64(self):
        chunk = b"\x00\x01\n\xffabc"
        self.transport.send(2048, chunk)

        self.assertEqual(self.conn.names(), ["dfu.put"])
        req = self.conn.requests[0]
        self.assertEqual(req["offset"], 2048)
        self.assertEqual(req["length"], len(chunk))
        self.assertEqual(base64.b64decode(req["payload"]), chunk)
        self.assertEqual(req["status"], hashlib.md5(chunk).hexdigest())
        self.assertNotIn("binary", req)
        self.assertEqual(self.conn.raw, [], "Inline chunks must not write raw bytes")

    def test_oversize_chunk_falls_back_to_inline(self):
        transport = ChunkTransport(self.conn, binary_max=100)
        transport.send(0, b"x" * 101)
        self.assertEqual(self.conn.names(), ["dfu.put"])
        self.assertIn("payload", self.conn.requests[0])

    def test_dfu_put_error_propagates(self):
        self.conn.script("dfu.put", TransactionError("timeout {io}", "dfu.put"))
        with self.assertRaises(TransactionError):
            self.transport.send(0, b"abc")


class TestBinaryChunk(unittest.TestCase):

    def setUp(self):
        self.conn = ScriptedConnection()
        self.transport = ChunkTransport(self.conn, binary_max=4096)

    def test_request_sequence(self):
        chunk = bytes(range(256)) * 4
        self.conn.script("card.binary", {"length": len(chunk)})
        self.conn.script("dfu.put", {"pending": False})

        rsp = self.transport.send(1024, chunk, "abc123")

        self.assertEqual(rsp, {"pending": False})
        self.assertEqual(self.conn.names(), ["card.binary.put", "card.binary", "dfu.put"])

        encoded = cobs.encode(chunk)
        self.assertEqual(self.conn.requests[0]["cobs"], len(encoded))
        self.assertEqual(self.conn.raw, [encoded + b"\n"])
        self.assertEqual(cobs.decode(self.conn.raw[0][:-1]), chunk)

        put = self.conn.requests[2]
        self.assertEqual(put, {"req": "dfu.put", "offset": 1024, "length": len(chunk),
                               "binary": True, "status": "abc123"})

    def test_length_mismatch_stops_before_dfu_put(self):
        self.conn.script("card.binary", {"length": 10})
        with self.assertRaises(ChunkVerifyError) as ctx:
            self.transport.send(0, b"y" * 20)
        self.assertIn("20 sent, 10 received", str(ctx.exception))
        self.assertNotIn("dfu.put", self.conn.names())

    def test_verify_length_as_string(self):
        self.conn.script("card.binary", {"length": "5"})
        self.transport.send(0, b"hello")
        self.assertEqual(self.conn.names()[-1], "dfu.put")


if __name__ == '__main__':
    unittest.main()
