from notecard_dfu.streams.streams import Stream
from notecard_dfu.streams.usb import USBStream, SERIAL_TIMEOUT, BLUES_USB_VID
from notecard_dfu.streams.dummy import DummyStream

__all__ = ["Stream", "USBStream", "DummyStream", "SERIAL_TIMEOUT", "BLUES_USB_VID"]
