import time
import logging
import serial
import serial.tools.list_ports
from typing import Optional, List, Dict

from notecard_dfu.streams.streams import Stream

# Constants
SERIAL_TIMEOUT = 0.3  # seconds
DEFAULT_BAUD = 9600
BLUES_USB_VID = 0x30A4

class USBStream(Stream):
    """USB / UART serial connection to a Notecard, established on initialization."""

    def __init__(self, address: str, baud: int = DEFAULT_BAUD):
        """
        Initialize and open serial connection. Raises serial.SerialException on failure.
        """
        self.address = address
        self.serial: Optional[serial.Serial] = None
        self.log = logging.getLogger("USBStream")
        self._read_buffer = b''

        self.log.debug(f"Attempting to open {address} at {baud} baud...")
        try:
            self.serial = serial.Serial(
                port=address,
                baudrate=baud,
                timeout=SERIAL_TIMEOUT
            )
            self.serial.reset_input_buffer()
            self.log.info(f"Serial port opened successfully: {address}")

        except (serial.SerialException, OSError) as e:
            self.log.error(f"Serial connection error during init: {str(e)}")
            if self.serial and self.serial.is_open:
                 try:
                     self.serial.close()
                 except Exception: # Ignore close errors during init failure
                     pass
            self.serial = None
            raise serial.SerialException(f"Failed to open Notecard port {address}: {e}") from e

    def close(self) -> bool:
        """Close serial connection"""
        closed_successfully = True
        if self.serial:
            try:
                if self.serial.is_open:
                    self.log.debug("Closing serial port...")
                    self.serial.close()
                    self.log.debug("Serial port closed.")
                else:
                    self.log.debug("Serial port was already closed.")
            except Exception as e:
                self.log.error(f"Error closing serial connection: {str(e)}")
                closed_successfully = False
            finally:
                # Always set self.serial to None after attempting close
                self.serial = None
                self._read_buffer = b''
        else:
             self.log.debug("Close called but self.serial is already None.")

        return closed_successfully

    def send(self, data: bytes) -> None:
        """Send data over serial connection"""
        if not self.serial:
            raise OSError("serial port is not open")
        try:
            self.serial.write(data)
            self.serial.flush()
        except serial.SerialException as e:
            # SerialException is an IOError subclass; keep the port name in the message
            raise OSError(f"serial write to {self.address} failed: {e}") from e

    def readline(self, timeout: Optional[float] = None) -> bytes:
        """
        Read a line from the serial connection.
        Returns b'' if no newline arrives before the timeout.
        """
        if not self.serial:
            raise OSError("serial port is not open")

        deadline = time.monotonic() + (timeout if timeout is not None else SERIAL_TIMEOUT)
        try:
            while True:
                found_pos = self._read_buffer.find(b'\n')
                if found_pos != -1:
                    # Include the terminator in the returned line
                    line = self._read_buffer[:found_pos + 1]
                    self._read_buffer = self._read_buffer[found_pos + 1:]
                    return line

                if time.monotonic() >= deadline:
                    return b''

                waiting = self.serial.in_waiting
                new_data = self.serial.read(waiting or 1)
                if new_data:
                    self._read_buffer += new_data

        except serial.SerialException as e:
            raise OSError(f"serial read from {self.address} failed: {e}") from e

    def reset_input(self) -> None:
        """Drop anything buffered from a previous, abandoned request."""
        self._read_buffer = b''
        if self.serial:
            try:
                self.serial.reset_input_buffer()
            except (serial.SerialException, OSError) as e:
                self.log.debug(f"Error resetting input buffer: {e}")

    @staticmethod
    def list_ports() -> List[Dict[str, str]]:
        """List available serial ports (Static method - no self.log)."""
        ports = []
        try:
            for port in serial.tools.list_ports.comports():
                ports.append({
                    'port': port.device,
                    'description': port.description,
                    'hwid': port.hwid,
                    'vid': port.vid,
                })
        except Exception as e:
            # Use root logger for static method error
            logging.error(f"Error listing serial ports: {str(e)}")
        return ports
