"""Modbus exception code mapping and helpers.

Provides a canonical mapping of standard Modbus exception codes to
human-readable descriptions so errors raised by the client carry the
same wording everywhere.
"""
from typing import Optional

# Standard Modbus exception codes (Modbus Application Protocol v1.1b3)
MODBUS_EXCEPTION_CODES = {
    1: "Illegal Function",
    2: "Illegal Data Address",
    3: "Illegal Data Value",
    4: "Server Device Failure",
    5: "Acknowledge",
    6: "Server Device Busy",
    8: "Memory Parity Error",
    10: "Gateway Path Unavailable",
    11: "Gateway Target Device Failed to Respond",
}

ILLEGAL_FUNCTION = 1
ILLEGAL_DATA_ADDRESS = 2
ILLEGAL_DATA_VALUE = 3


def get_modbus_exception_text(code: Optional[int]) -> Optional[str]:
    """Return a human-readable description for a Modbus exception code.

    If `code` is None or unknown, returns None.
    """
    if code is None:
        return None
    return MODBUS_EXCEPTION_CODES.get(int(code))


def describe_exception(code: int) -> str:
    text = get_modbus_exception_text(code)
    if text is None:
        return f"Unknown exception: {code}"
    return text
