"""Modbus/TCP protocol constants shared by the codec, framer and client."""
from __future__ import annotations

from enum import IntEnum


class FunctionCode(IntEnum):
    """Public function codes supported by the client."""

    READ_COILS = 0x01
    READ_DISCRETE_INPUTS = 0x02
    READ_HOLDING_REGISTERS = 0x03
    READ_INPUT_REGISTERS = 0x04
    WRITE_SINGLE_COIL = 0x05
    WRITE_SINGLE_REGISTER = 0x06
    WRITE_MULTIPLE_COILS = 0x0F
    WRITE_MULTIPLE_REGISTERS = 0x10


EXCEPTION_FLAG = 0x80

# Single coil write sentinels
COIL_ON = 0xFF00
COIL_OFF = 0x0000

# Protocol limits (Modbus Application Protocol v1.1b3)
MAX_ADDRESS = 0xFFFF
MAX_REGISTER_VALUE = 0xFFFF
MAX_UNIT_ID = 0xFF
MAX_COILS_READ = 2000
MAX_DISCRETE_INPUTS_READ = 2000
MAX_REGISTERS_READ = 125
MAX_COILS_WRITE = 1968
MAX_REGISTERS_WRITE = 123

# MBAP header
MBAP_HEADER_LENGTH = 7
MBAP_LENGTH_OFFSET = 4
PROTOCOL_ID = 0x0000
TRANSACTION_ID_MODULO = 0x10000

DEFAULT_PORT = 502
DEFAULT_UNIT_ID = 1
DEFAULT_TIMEOUT = 5.0
DEFAULT_RECONNECT_INTERVAL = 5.0
