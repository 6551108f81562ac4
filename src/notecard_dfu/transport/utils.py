import logging
from typing import Any, Mapping, Tuple

log = logging.getLogger("transport.utils")


def int_field(rsp: Mapping[str, Any], key: str, default: int = 0) -> int:
    """
    Read an integer field from a Notecard response.

    Depending on how the response was decoded the same field can arrive as an
    int, a float or a numeric string. Fallback order:

      1. bool       -> default (JSON true/false is never a count)
      2. int        -> as is
      3. float      -> truncated, if finite
      4. str        -> int(), then float(), after stripping whitespace
      5. otherwise  -> default

    Args:
        rsp: Response dictionary (may be None)
        key: Field name
        default: Value returned when the field is absent or not numeric

    Returns:
        The decoded integer
    """
    if not rsp or key not in rsp:
        return default
    value = rsp[key]
    if isinstance(value, bool):
        return default
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        if value != value or value in (float("inf"), float("-inf")):
            return default
        return int(value)
    if isinstance(value, str):
        text = value.strip()
        try:
            return int(text)
        except ValueError:
            pass
        try:
            return int(float(text))
        except (ValueError, OverflowError):
            log.debug(f"Field {key!r} is not numeric: {value!r}")
            return default
    return default


def bool_field(rsp: Mapping[str, Any], key: str, default: bool = False) -> bool:
    """Read a boolean field. Only a real JSON boolean counts."""
    if not rsp:
        return default
    value = rsp.get(key, default)
    return value if isinstance(value, bool) else default


def str_field(rsp: Mapping[str, Any], key: str, default: str = "") -> str:
    if not rsp:
        return default
    value = rsp.get(key, default)
    return value if isinstance(value, str) else default


def transfer_rate(total_bytes: int, began: float, now: float) -> Tuple[int, float]:
    """
    Elapsed whole seconds (never less than 1) and bytes per second for a transfer.
    """
    elapsed_secs = int(now - began) + 1
    if elapsed_secs < 1:
        elapsed_secs = 1
    return elapsed_secs, total_bytes / elapsed_secs
