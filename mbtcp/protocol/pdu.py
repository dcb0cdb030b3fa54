"""Stateless encoders and decoders for Modbus protocol data units.

Request builders validate their arguments and return a ``ModbusPDU``;
nothing invalid ever reaches the framer. Response decoders take the PDU of
a non-exception response and return one of the typed result objects below.
"""
from __future__ import annotations

import struct
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Sequence

from mbtcp.commands.validators import (
    validate_address,
    validate_quantity,
    validate_registers,
    validate_sequence,
    validate_uint16,
)
from mbtcp.constants import (
    COIL_OFF,
    COIL_ON,
    MAX_COILS_READ,
    MAX_COILS_WRITE,
    MAX_DISCRETE_INPUTS_READ,
    MAX_REGISTERS_READ,
    MAX_REGISTERS_WRITE,
    FunctionCode,
)
from mbtcp.errors import ModbusProtocolError, ModbusValidationError


@dataclass
class ModbusPDU:
    """Modbus Protocol Data Unit - function code plus its body."""
    function_code: int
    data: bytes

    def to_bytes(self) -> bytes:
        return bytes([self.function_code]) + self.data

    @classmethod
    def from_bytes(cls, data: bytes) -> "ModbusPDU":
        if len(data) < 1:
            raise ModbusProtocolError("PDU requires at least 1 byte (function code)")
        return cls(function_code=data[0], data=bytes(data[1:]))

    @property
    def is_exception(self) -> bool:
        return bool(self.function_code & 0x80)


@dataclass(frozen=True)
class BitsResult:
    values: List[bool]
    byte_count: int


@dataclass(frozen=True)
class RegistersResult:
    values: List[int]
    byte_count: int


@dataclass(frozen=True)
class WriteCoilResult:
    address: int
    value: bool


@dataclass(frozen=True)
class WriteRegisterResult:
    address: int
    value: int


@dataclass(frozen=True)
class WriteMultipleResult:
    address: int
    quantity: int


# --- bit packing ---

def pack_bits(values: Sequence[bool]) -> bytes:
    """Pack booleans LSB-first into bytes (first value is bit 0 of byte 0)."""
    out = bytearray((len(values) + 7) // 8)
    for i, v in enumerate(values):
        if v:
            out[i // 8] |= 1 << (i % 8)
    return bytes(out)


def unpack_bits(data: bytes) -> List[bool]:
    return [bool((byte >> bit) & 1) for byte in data for bit in range(8)]


# --- request builders ---

_READ_LIMITS = {
    FunctionCode.READ_COILS: MAX_COILS_READ,
    FunctionCode.READ_DISCRETE_INPUTS: MAX_DISCRETE_INPUTS_READ,
    FunctionCode.READ_HOLDING_REGISTERS: MAX_REGISTERS_READ,
    FunctionCode.READ_INPUT_REGISTERS: MAX_REGISTERS_READ,
}


def build_read_request(function_code: int, address: int, quantity: int) -> ModbusPDU:
    """FC01-FC04: address(2) + quantity(2)."""
    maximum = _READ_LIMITS.get(function_code)
    if maximum is None:
        raise ModbusValidationError(f"Invalid function code for read: {function_code}")
    validate_address(address)
    validate_quantity(quantity, maximum)
    return ModbusPDU(function_code, struct.pack(">HH", address, quantity))


def build_write_single_coil(address: int, value: bool) -> ModbusPDU:
    validate_address(address)
    return ModbusPDU(
        FunctionCode.WRITE_SINGLE_COIL,
        struct.pack(">HH", address, COIL_ON if value else COIL_OFF),
    )


def build_write_single_register(address: int, value: int) -> ModbusPDU:
    validate_address(address)
    validate_uint16(value)
    return ModbusPDU(FunctionCode.WRITE_SINGLE_REGISTER, struct.pack(">HH", address, value))


def build_write_multiple_coils(address: int, values: Sequence[bool]) -> ModbusPDU:
    validate_address(address)
    bits = validate_sequence(values, MAX_COILS_WRITE)
    payload = pack_bits(bits)
    header = struct.pack(">HHB", address, len(bits), len(payload))
    return ModbusPDU(FunctionCode.WRITE_MULTIPLE_COILS, header + payload)


def build_write_multiple_registers(address: int, values: Sequence[int]) -> ModbusPDU:
    validate_address(address)
    regs = validate_registers(values, MAX_REGISTERS_WRITE)
    header = struct.pack(">HHB", address, len(regs), len(regs) * 2)
    return ModbusPDU(
        FunctionCode.WRITE_MULTIPLE_REGISTERS,
        header + struct.pack(f">{len(regs)}H", *regs),
    )


# --- response decoders ---

def _byte_counted(pdu: ModbusPDU) -> bytes:
    if len(pdu.data) < 1:
        raise ModbusProtocolError("Response missing byte count")
    byte_count = pdu.data[0]
    body = pdu.data[1:1 + byte_count]
    if len(body) < byte_count:
        raise ModbusProtocolError(
            f"Response truncated: byte count {byte_count}, got {len(body)} bytes"
        )
    return body


def _echo(pdu: ModbusPDU) -> tuple:
    if len(pdu.data) < 4:
        raise ModbusProtocolError(f"Write response too short ({len(pdu.data)} bytes)")
    return struct.unpack(">HH", pdu.data[:4])


def decode_bits(pdu: ModbusPDU, quantity: Optional[int] = None) -> BitsResult:
    body = _byte_counted(pdu)
    if quantity is not None and len(body) != (quantity + 7) // 8:
        raise ModbusProtocolError(
            f"Byte count {len(body)} does not match {quantity} requested bits"
        )
    values = unpack_bits(body)
    if quantity is not None:
        values = values[:quantity]
    return BitsResult(values=values, byte_count=len(body))


def decode_registers(pdu: ModbusPDU, quantity: Optional[int] = None) -> RegistersResult:
    body = _byte_counted(pdu)
    if len(body) % 2:
        raise ModbusProtocolError(f"Odd register byte count {len(body)}")
    count = len(body) // 2
    if quantity is not None and count != quantity:
        raise ModbusProtocolError(
            f"Got {count} registers, {quantity} requested"
        )
    values = list(struct.unpack(f">{count}H", body))
    return RegistersResult(values=values, byte_count=len(body))


def decode_write_single_coil(pdu: ModbusPDU, quantity: Optional[int] = None) -> WriteCoilResult:
    address, value = _echo(pdu)
    return WriteCoilResult(address=address, value=value == COIL_ON)


def decode_write_single_register(pdu: ModbusPDU, quantity: Optional[int] = None) -> WriteRegisterResult:
    address, value = _echo(pdu)
    return WriteRegisterResult(address=address, value=value)


def decode_write_multiple(pdu: ModbusPDU, quantity: Optional[int] = None) -> WriteMultipleResult:
    address, count = _echo(pdu)
    return WriteMultipleResult(address=address, quantity=count)


DECODERS: Dict[int, Callable[[ModbusPDU, Optional[int]], object]] = {
    FunctionCode.READ_COILS: decode_bits,
    FunctionCode.READ_DISCRETE_INPUTS: decode_bits,
    FunctionCode.READ_HOLDING_REGISTERS: decode_registers,
    FunctionCode.READ_INPUT_REGISTERS: decode_registers,
    FunctionCode.WRITE_SINGLE_COIL: decode_write_single_coil,
    FunctionCode.WRITE_SINGLE_REGISTER: decode_write_single_register,
    FunctionCode.WRITE_MULTIPLE_COILS: decode_write_multiple,
    FunctionCode.WRITE_MULTIPLE_REGISTERS: decode_write_multiple,
}


def decode_response(function_code: int, pdu: ModbusPDU, quantity: Optional[int] = None):
    """Decode ``pdu`` with the decoder registered for the request's ``function_code``."""
    decoder = DECODERS.get(function_code)
    if decoder is None:
        raise ModbusProtocolError(f"No decoder for function code 0x{function_code:02X}")
    return decoder(pdu, quantity)
