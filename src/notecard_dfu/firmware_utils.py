import os
import time
import zlib
import hashlib
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

# Upload type tags understood by dfu.put
UPLOAD_TYPE_NOTECARD = "notecard"
UPLOAD_TYPE_HOST = "firmware"

# Marks an image as Notecard firmware. This is not a security feature, it only
# keeps people from accidentally loading host firmware onto the Notecard.
NOTECARD_FIRMWARE_SIGNATURE = bytes([
    0x82, 0x1c, 0x6e, 0xb7, 0x18, 0xec, 0x4e, 0x6f,
    0xb3, 0x9e, 0xc1, 0xe9, 0x8f, 0x22, 0xe9, 0xf6,
])


def is_notecard_firmware(data: bytes) -> bool:
    """True if the image carries the Notecard firmware signature."""
    return NOTECARD_FIRMWARE_SIGNATURE in data


def detect_upload_type(data: bytes) -> str:
    return UPLOAD_TYPE_NOTECARD if is_notecard_firmware(data) else UPLOAD_TYPE_HOST


def clean_filename(filename: str) -> str:
    """Strip any directory prefix, for either separator style."""
    filename = filename.split("/")[-1]
    filename = filename.split("\\")[-1]
    return filename


@dataclass(frozen=True)
class FirmwareMetadata:
    """Description of a firmware image, sent once with the initiating dfu.put."""
    created: int
    source: str
    md5: str
    crc32: int
    length: int
    name: str
    upload_type: str

    @classmethod
    def from_image(cls, data: bytes, filename: str, upload_type: str,
                   created: Optional[int] = None) -> "FirmwareMetadata":
        name = clean_filename(filename)
        return cls(
            created=int(time.time()) if created is None else created,
            source=name,
            md5=hashlib.md5(data).hexdigest(),
            crc32=zlib.crc32(data) & 0xffffffff,
            length=len(data),
            name=name,
            upload_type=upload_type,
        )

    def to_body(self) -> Dict[str, Any]:
        """Body object for dfu.put, using the Notehub upload metadata field names."""
        return {
            "created": self.created,
            "source": self.source,
            "md5": self.md5,
            "crc32": self.crc32,
            "length": self.length,
            "name": self.name,
            "type": self.upload_type,
        }


def validate_firmware_file(filename, logger, expected_size=None):
    """
    Validate a firmware file before it is sideloaded

    Args:
        filename: Path to firmware file
        logger: Logger object for output
        expected_size: Expected size in bytes (optional)

    Returns:
        bool: True if the file is usable, False otherwise
    """
    try:
        actual_size = os.path.getsize(filename)
    except OSError as e:
        logger.error(f"Error getting file size for {filename}: {e}")
        return False

    if actual_size == 0:
        logger.error(f"Firmware file is empty: {filename}")
        return False

    if expected_size is not None and actual_size != expected_size:
        logger.error(f"Size mismatch! Expected: {expected_size}, Got: {actual_size}")
        return False

    logger.info(f"File size: {actual_size} bytes (0x{actual_size:X})")
    return True


def load_firmware(filename: str, logger: Optional[logging.Logger] = None) -> bytes:
    """
    Read a firmware image from disk.

    Raises:
        OSError: if the file cannot be read
        ValueError: if the file is empty
    """
    logger = logger or logging.getLogger("firmware")
    with open(filename, "rb") as f:
        data = f.read()
    if not data:
        raise ValueError(f"Firmware file is empty: {filename}")

    if is_notecard_firmware(data):
        logger.info(f"{clean_filename(filename)}: Notecard firmware ({len(data)} bytes)")
    else:
        logger.info(f"{clean_filename(filename)}: host firmware ({len(data)} bytes)")
    return data
