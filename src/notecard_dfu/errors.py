"""
Exception types and Notecard error classification.

The Notecard reports failures as text in the ``err`` field of a response.
Well-known conditions are marked with a ``{tag}`` somewhere in that text,
so classification is a substring match on the tag.
"""

from typing import Optional

ERR_CARD_IO = "{io}"
ERR_DFU_NOT_READY = "{dfu-not-ready}"
ERR_DFU_IN_PROGRESS = "{dfu-in-progress}"


class NotecardError(Exception):
    """Base class for all errors raised by this package."""
    pass


class TransactionError(NotecardError):
    """A request to the Notecard failed, either on the link or on the device."""

    def __init__(self, err: str, request: Optional[str] = None):
        self.err = err
        self.request = request
        if request:
            super().__init__(f"{request}: {err}")
        else:
            super().__init__(err)


class SideloadError(NotecardError):
    """Fatal error during a firmware sideload."""
    pass


class SideloadCancelled(SideloadError):
    """The caller cancelled a sideload in progress."""
    pass


class ChunkVerifyError(SideloadError):
    """The Notecard did not receive the number of bytes we staged."""
    pass


def error_contains(exc: BaseException, tag: str) -> bool:
    """True if the error text carries the given tag (e.g. ERR_CARD_IO)."""
    if exc is None:
        return False
    text = exc.err if isinstance(exc, TransactionError) else str(exc)
    return tag in text
