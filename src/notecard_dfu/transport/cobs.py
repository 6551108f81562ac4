"""
COBS (Consistent Overhead Byte Stuffing) framing for the binary sub-channel.

The Notecard variant runs standard COBS, which removes every 0x00 from the
output, and then XORs each output byte with the frame delimiter. The
delimiter therefore never appears inside a frame and a single trailing
delimiter marks the end of it. The transfer uses ``\\n`` (0x0A).
"""

DEFAULT_DELIMITER = 0x0A

# Longest run of non-zero bytes a single code byte can describe
MAX_BLOCK = 0xFF


def encode(data: bytes, delimiter: int = DEFAULT_DELIMITER) -> bytes:
    """COBS-encode data. Does NOT append the delimiter."""
    out = bytearray()
    code_idx = 0
    out.append(0)  # placeholder for first code byte
    code = 1

    for b in data:
        if b == 0:
            out[code_idx] = code
            code_idx = len(out)
            out.append(0)
            code = 1
        else:
            out.append(b)
            code += 1
            if code == MAX_BLOCK:
                out[code_idx] = code
                code_idx = len(out)
                out.append(0)
                code = 1

    out[code_idx] = code

    if delimiter:
        for i in range(len(out)):
            out[i] ^= delimiter
    return bytes(out)


def decode(frame: bytes, delimiter: int = DEFAULT_DELIMITER) -> bytes:
    """COBS-decode a frame. Input must NOT include the trailing delimiter."""
    if not frame:
        return b""

    data = bytes(b ^ delimiter for b in frame) if delimiter else frame
    out = bytearray()
    idx = 0

    while idx < len(data):
        code = data[idx]
        if code == 0:
            raise ValueError("unexpected delimiter in COBS frame")
        idx += 1

        for _ in range(code - 1):
            if idx >= len(data):
                raise ValueError("COBS frame truncated")
            out.append(data[idx])
            idx += 1

        if code < MAX_BLOCK and idx < len(data):
            out.append(0)

    return bytes(out)


def max_encoded_length(length: int) -> int:
    """Worst-case frame size for a payload of the given length."""
    return length + (length // (MAX_BLOCK - 1)) + 1
