import logging
from typing import Callable, Dict, Optional, Sequence

from mbtcp.commands.validators import validate_unit_id
from mbtcp.config import ClientConfig
from mbtcp.constants import DEFAULT_PORT, DEFAULT_RECONNECT_INTERVAL, DEFAULT_TIMEOUT, DEFAULT_UNIT_ID, FunctionCode
from mbtcp.protocol import pdu as codec
from mbtcp.protocol.pdu import (
    BitsResult,
    ModbusPDU,
    RegistersResult,
    WriteCoilResult,
    WriteMultipleResult,
    WriteRegisterResult,
)
from mbtcp.transports.manager import ConnectionManager, ConnectionState, LifecycleEvent, TransportFactory
from mbtcp.transports.reconnect import ReconnectPolicy

logger = logging.getLogger("mbtcp.client")


class ModbusClient:
    """Asyncio Modbus/TCP client.

    Several requests may be in flight at once over the single connection;
    each call awaits its own response, matched by transaction id.

    Usage:
        async with ModbusClient("192.168.1.10", unit_id=3) as client:
            regs = await client.read_holding_registers(0, 10)
            print(regs.values)
    """

    def __init__(
        self,
        host: str = "localhost",
        port: int = DEFAULT_PORT,
        *,
        unit_id: int = DEFAULT_UNIT_ID,
        timeout: float = DEFAULT_TIMEOUT,
        reconnect: bool = True,
        reconnect_interval: float = DEFAULT_RECONNECT_INTERVAL,
        config: Optional[ClientConfig] = None,
        reconnect_policy: Optional[ReconnectPolicy] = None,
        transport_factory: Optional[TransportFactory] = None,
    ):
        if config is None:
            config = ClientConfig(
                host=host,
                port=port,
                unit_id=unit_id,
                timeout=timeout,
                reconnect=reconnect,
                reconnect_interval=reconnect_interval,
            )
        config.validate()
        self.config = config
        self.manager = ConnectionManager(
            config,
            transport_factory=transport_factory,
            reconnect_policy=reconnect_policy,
        )

    @classmethod
    def from_uri(cls, uri: str, **kwargs) -> "ModbusClient":
        return cls(config=ClientConfig.from_uri(uri), **kwargs)

    def __repr__(self) -> str:
        return f"<ModbusClient {self.config.host}:{self.config.port} {self.manager.state.value}>"

    # --- connection ---

    @property
    def connected(self) -> bool:
        return self.manager.connected

    @property
    def state(self) -> ConnectionState:
        return self.manager.state

    async def connect(self) -> None:
        await self.manager.connect()

    async def disconnect(self) -> None:
        await self.manager.disconnect()

    def subscribe(self, event, callback: Callable) -> Callable[[], None]:
        return self.manager.subscribe(event, callback)

    def on_connected(self, callback: Callable[[], None]) -> Callable[[], None]:
        return self.manager.subscribe(LifecycleEvent.CONNECTED, callback)

    def on_disconnected(self, callback: Callable[[], None]) -> Callable[[], None]:
        return self.manager.subscribe(LifecycleEvent.DISCONNECTED, callback)

    def on_error(self, callback: Callable[[BaseException], None]) -> Callable[[], None]:
        return self.manager.subscribe(LifecycleEvent.ERROR, callback)

    def add_observer(self, callback: Callable[[Dict], None]) -> None:
        self.manager.add_observer(callback)

    async def __aenter__(self):
        """Called on 'async with' enter."""
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        """Called on 'async with' exit."""
        await self.disconnect()

    # --- requests ---

    def _unit(self, unit_id: Optional[int]) -> int:
        return self.config.unit_id if unit_id is None else validate_unit_id(unit_id)

    async def _execute(self, unit_id: Optional[int], pdu: ModbusPDU, quantity: Optional[int] = None):
        unit = self._unit(unit_id)
        logger.debug("request unit=%d fc=0x%02X", unit, pdu.function_code)
        return await self.manager.request(unit, pdu, quantity)

    async def read_coils(self, address: int, quantity: int, unit_id: Optional[int] = None) -> BitsResult:
        """FC01. ``values`` holds exactly ``quantity`` booleans."""
        pdu = codec.build_read_request(FunctionCode.READ_COILS, address, quantity)
        return await self._execute(unit_id, pdu, quantity)

    async def read_discrete_inputs(self, address: int, quantity: int, unit_id: Optional[int] = None) -> BitsResult:
        """FC02. ``values`` holds exactly ``quantity`` booleans."""
        pdu = codec.build_read_request(FunctionCode.READ_DISCRETE_INPUTS, address, quantity)
        return await self._execute(unit_id, pdu, quantity)

    async def read_holding_registers(self, address: int, quantity: int, unit_id: Optional[int] = None) -> RegistersResult:
        pdu = codec.build_read_request(FunctionCode.READ_HOLDING_REGISTERS, address, quantity)
        return await self._execute(unit_id, pdu, quantity)

    async def read_input_registers(self, address: int, quantity: int, unit_id: Optional[int] = None) -> RegistersResult:
        pdu = codec.build_read_request(FunctionCode.READ_INPUT_REGISTERS, address, quantity)
        return await self._execute(unit_id, pdu, quantity)

    async def write_single_coil(self, address: int, value: bool, unit_id: Optional[int] = None) -> WriteCoilResult:
        pdu = codec.build_write_single_coil(address, value)
        return await self._execute(unit_id, pdu)

    async def write_single_register(self, address: int, value: int, unit_id: Optional[int] = None) -> WriteRegisterResult:
        pdu = codec.build_write_single_register(address, value)
        return await self._execute(unit_id, pdu)

    async def write_multiple_coils(self, address: int, values: Sequence[bool], unit_id: Optional[int] = None) -> WriteMultipleResult:
        pdu = codec.build_write_multiple_coils(address, values)
        return await self._execute(unit_id, pdu)

    async def write_multiple_registers(self, address: int, values: Sequence[int], unit_id: Optional[int] = None) -> WriteMultipleResult:
        pdu = codec.build_write_multiple_registers(address, values)
        return await self._execute(unit_id, pdu)

    async def read(self, function_code: int, address: int, quantity: int, unit_id: Optional[int] = None):
        """Dispatch a read by function code (0x01-0x04)."""
        pdu = codec.build_read_request(function_code, address, quantity)
        return await self._execute(unit_id, pdu, quantity)

