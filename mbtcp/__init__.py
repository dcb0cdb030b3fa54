"""Asyncio Modbus/TCP client with concurrent transaction correlation."""

__version__ = "0.1.0"

from .client import ModbusClient
from .config import ClientConfig, load_config
from .constants import FunctionCode
from .errors import (
    ConnectionClosedError,
    ModbusError,
    ModbusExceptionError,
    ModbusProtocolError,
    ModbusValidationError,
    NotConnectedError,
    RequestTimeoutError,
)
from .protocol.pdu import (
    BitsResult,
    RegistersResult,
    WriteCoilResult,
    WriteMultipleResult,
    WriteRegisterResult,
)
from .transports.manager import ConnectionManager, ConnectionState, LifecycleEvent
from .transports.reconnect import ExponentialBackoff, FixedInterval, ReconnectPolicy

__all__ = [
    "BitsResult",
    "ClientConfig",
    "ConnectionClosedError",
    "ConnectionManager",
    "ConnectionState",
    "ExponentialBackoff",
    "FixedInterval",
    "FunctionCode",
    "LifecycleEvent",
    "ModbusClient",
    "ModbusError",
    "ModbusExceptionError",
    "ModbusProtocolError",
    "ModbusValidationError",
    "NotConnectedError",
    "ReconnectPolicy",
    "RegistersResult",
    "RequestTimeoutError",
    "WriteCoilResult",
    "WriteMultipleResult",
    "WriteRegisterResult",
    "load_config",
]
