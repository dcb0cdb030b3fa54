"""Error taxonomy raised by the Modbus/TCP client.

Every error surfaces to the caller of the operation that caused it.
Connection-level failures are additionally reported through the
``LifecycleEvent.ERROR`` channel of the connection manager.
"""
from __future__ import annotations

from typing import Optional

from .modbus_exceptions import describe_exception


class ModbusError(Exception):
    """Base class for all client errors. ``code`` is an optional Modbus exception code."""

    def __init__(self, message: str, code: Optional[int] = None) -> None:
        super().__init__(message)
        self.code = code


class ModbusValidationError(ModbusError, ValueError):
    """Input rejected before anything was written to the wire."""
    pass


class NotConnectedError(ModbusError):
    def __init__(self, message: str = "Not connected") -> None:
        super().__init__(message)


class ConnectionClosedError(ModbusError):
    def __init__(self, message: str = "Connection closed") -> None:
        super().__init__(message)


class RequestTimeoutError(ModbusError):
    def __init__(self, message: str = "Request timeout", transaction_id: Optional[int] = None) -> None:
        super().__init__(message)
        self.transaction_id = transaction_id


class ModbusProtocolError(ModbusError):
    """Response frame could not be decoded or did not match its request."""
    pass


class ModbusExceptionError(ModbusError):
    """Remote device answered with an exception response."""

    def __init__(self, code: int, function_code: Optional[int] = None) -> None:
        self.reason = describe_exception(code)
        self.function_code = function_code
        super().__init__(self.reason, code)

    def __str__(self) -> str:
        if self.function_code is None:
            return f"{self.reason} (0x{self.code:02X})"
        return f"{self.reason} (0x{self.code:02X}) for function 0x{self.function_code:02X}"
