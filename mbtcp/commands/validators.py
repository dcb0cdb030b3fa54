from typing import Iterable, List, Sequence

from mbtcp.constants import MAX_ADDRESS, MAX_REGISTER_VALUE, MAX_UNIT_ID
from mbtcp.errors import ModbusValidationError
from mbtcp.modbus_exceptions import ILLEGAL_DATA_ADDRESS, ILLEGAL_DATA_VALUE


def _is_int(value) -> bool:
    # bool is an int subclass but never a valid address or register value
    return isinstance(value, int) and not isinstance(value, bool)


def validate_address(address: int) -> int:
    if not _is_int(address):
        raise ModbusValidationError(f"Address must be an integer: {address!r}", ILLEGAL_DATA_ADDRESS)
    if address < 0 or address > MAX_ADDRESS:
        raise ModbusValidationError(f"Address out of range: {address}", ILLEGAL_DATA_ADDRESS)
    return address


def validate_quantity(quantity: int, maximum: int, minimum: int = 1) -> int:
    if not _is_int(quantity):
        raise ModbusValidationError(f"Quantity must be an integer: {quantity!r}", ILLEGAL_DATA_VALUE)
    if quantity < minimum or quantity > maximum:
        raise ModbusValidationError(
            f"Quantity out of range: {quantity} (allowed: {minimum}-{maximum})", ILLEGAL_DATA_VALUE
        )
    return quantity


def validate_uint16(value: int) -> int:
    if not _is_int(value):
        raise ModbusValidationError(f"Register value must be an integer: {value!r}", ILLEGAL_DATA_VALUE)
    if value < 0 or value > MAX_REGISTER_VALUE:
        raise ModbusValidationError(f"Register value out of range: {value}", ILLEGAL_DATA_VALUE)
    return value


def validate_unit_id(unit_id: int) -> int:
    if not _is_int(unit_id) or unit_id < 0 or unit_id > MAX_UNIT_ID:
        raise ModbusValidationError(f"Unit id out of range: {unit_id!r}")
    return unit_id


def validate_sequence(values: Sequence, maximum: int) -> List:
    if not isinstance(values, (list, tuple)):
        raise ModbusValidationError("Values must be a list or tuple", ILLEGAL_DATA_VALUE)
    validate_quantity(len(values), maximum)
    return list(values)


def validate_registers(registers: Iterable[int], maximum: int) -> List[int]:
    regs = validate_sequence(registers, maximum)
    for index, r in enumerate(regs):
        try:
            validate_uint16(r)
        except ModbusValidationError as exc:
            raise ModbusValidationError(f"{exc} at index {index}", ILLEGAL_DATA_VALUE) from None
    return regs
