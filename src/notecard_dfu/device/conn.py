import logging
from typing import Optional, Tuple

from ..streams.usb import USBStream, BLUES_USB_VID, DEFAULT_BAUD
from ..streams.streams import Stream

class Connection:
    """Handles detection and creation of Notecard communication streams."""

    @staticmethod
    def usb(port: str, baud: int = DEFAULT_BAUD) -> Optional[Stream]:
        """
        Attempts to establish a serial connection.

        Args:
            port: The serial port identifier (e.g., /dev/ttyACM0 or COM3).
            baud: Baud rate; ignored by USB CDC ports, required for UART.

        Returns:
            A Stream instance if successful, None otherwise.
        """
        log = logging.getLogger("Connection.usb")
        log.info(f"Attempting serial connection to {port}...")
        try:
            stream = USBStream(address=port, baud=baud)
            log.info(f"Serial connection successful to {port}.")
            return stream
        except Exception as e:
            log.error(f"Failed to open serial connection to {port}: {e}")
            return None

    @staticmethod
    def find_port() -> Optional[str]:
        """Picks the most likely Notecard port: Blues VID first, then any USB serial port."""
        ports = USBStream.list_ports()
        if not ports:
            return None
        blues_ports = [p for p in ports if p.get('vid') == BLUES_USB_VID]
        if blues_ports:
            return blues_ports[0]['port']
        usb_ports = [p for p in ports if 'usb' in (p.get('hwid') or '').lower()]
        selected = usb_ports[0] if usb_ports else ports[0]
        return selected['port']

    @staticmethod
    def auto(baud: int = DEFAULT_BAUD) -> Tuple[Optional[Stream], str]:
        """
        Automatically detects and connects to the first available Notecard.

        Returns:
            A tuple containing the connected Stream object and its port,
            or (None, "") if no device is found or connection fails.
        """
        log = logging.getLogger("Connection.auto")
        log.info("Scanning for Notecard serial ports...")
        port = Connection.find_port()
        if not port:
            log.info("Auto-detection failed: no serial ports found.")
            return None, ""

        log.info(f"Found candidate port: {port}")
        stream = Connection.usb(port, baud)
        if stream:
            return stream, port
        log.warning(f"Found port {port}, but failed to establish connection.")
        return None, ""
