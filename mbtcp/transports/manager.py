import asyncio
import logging
from enum import Enum
from typing import Callable, Dict, List, Optional

from mbtcp.config import ClientConfig
from mbtcp.constants import PROTOCOL_ID
from mbtcp.core.correlator import TransactionCorrelator
from mbtcp.errors import ConnectionClosedError, ModbusProtocolError, NotConnectedError
from mbtcp.protocol.framers import FrameAssembler, build_frame, parse_frame
from mbtcp.protocol.pdu import ModbusPDU

from .base import TransportInterface
from .reconnect import FixedInterval, ReconnectPolicy
from .tcp import TcpTransport

logger = logging.getLogger("mbtcp.transports.manager")

TransportFactory = Callable[[], TransportInterface]


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


class LifecycleEvent(str, Enum):
    """Connection lifecycle signals.

    CONNECTED and DISCONNECTED callbacks take no arguments; ERROR callbacks
    receive the exception.
    """

    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    ERROR = "error"


class ConnectionManager:
    """Own one transport and drive its connect/disconnect/reconnect cycle.

    Incoming bytes are reassembled by a ``FrameAssembler`` and handed to a
    ``TransactionCorrelator``; outgoing requests get a transaction id, are
    written, and only then have their timeout armed. Everything runs on the
    event loop that called ``connect``; no locking is involved.
    """

    def __init__(
        self,
        config: ClientConfig,
        transport_factory: Optional[TransportFactory] = None,
        reconnect_policy: Optional[ReconnectPolicy] = None,
    ):
        self.config = config
        self.transport: Optional[TransportInterface] = None
        self.reconnect_enabled = config.reconnect
        self.reconnect_policy: ReconnectPolicy = reconnect_policy or FixedInterval(config.reconnect_interval)
        self._transport_factory = transport_factory or self._create_tcp_transport
        self._state = ConnectionState.DISCONNECTED
        self._assembler = FrameAssembler()
        self._correlator = TransactionCorrelator()
        self._connect_future: Optional[asyncio.Future] = None
        self._rx_task: Optional[asyncio.Task] = None
        self._reconnect_handle: Optional[asyncio.TimerHandle] = None
        self._reconnect_task: Optional[asyncio.Task] = None
        self._subscribers: Dict[LifecycleEvent, List[Callable]] = {event: [] for event in LifecycleEvent}
        self._observers: List[Callable[[Dict], None]] = []

    def _create_tcp_transport(self) -> TransportInterface:
        return TcpTransport(self.config.host, self.config.port, connect_timeout=self.config.connect_timeout)

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def connected(self) -> bool:
        return self._state is ConnectionState.CONNECTED

    @property
    def pending_count(self) -> int:
        return len(self._correlator)

    @property
    def reconnect_scheduled(self) -> bool:
        return self._reconnect_handle is not None

    # --- notifications ---

    def subscribe(self, event, callback: Callable) -> Callable[[], None]:
        """Register ``callback`` for a lifecycle event; returns an unsubscribe function."""
        key = LifecycleEvent(event)
        self._subscribers[key].append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers[key]:
                self._subscribers[key].remove(callback)

        return unsubscribe

    def _emit(self, event: LifecycleEvent, *args) -> None:
        callbacks = list(self._subscribers[event])
        if not callbacks and event is LifecycleEvent.ERROR:
            logger.warning("Connection error for %s:%s (no error subscribers): %s",
                           self.config.host, self.config.port, args[0] if args else None)
            return
        for cb in callbacks:
            try:
                cb(*args)
            except Exception:
                logger.exception("Lifecycle callback for %s failed", event.value)

    def add_observer(self, callback: Callable[[Dict], None]) -> None:
        """Observe raw traffic: ``callback({"direction": "TX"|"RX", "data": "<HEX>"})``."""
        self._observers.append(callback)

    def _log(self, direction: str, data: bytes) -> None:
        logger.debug("%s %d bytes: %s", direction, len(data), data.hex().upper())
        if not self._observers:
            return
        entry = {"direction": direction, "data": data.hex().upper()}
        for observer in list(self._observers):
            try:
                observer(entry)
            except Exception:
                logger.exception("Traffic observer failed")

    # --- lifecycle ---

    async def connect(self) -> None:
        if self._state is ConnectionState.CONNECTED:
            return
        if self._connect_future is not None:
            # join the attempt already in flight
            await asyncio.shield(self._connect_future)
            return

        loop = asyncio.get_running_loop()
        attempt = loop.create_future()
        self._connect_future = attempt
        self._state = ConnectionState.CONNECTING
        transport = self._transport_factory()
        logger.debug("Connecting to %s:%s", self.config.host, self.config.port)

        try:
            await transport.connect()
        except asyncio.CancelledError:
            if self._connect_future is attempt:
                self._connect_future = None
                self._state = ConnectionState.DISCONNECTED
            if not attempt.done():
                attempt.cancel()
            raise
        except Exception as exc:
            if self._connect_future is attempt:
                self._connect_future = None
                self._state = ConnectionState.DISCONNECTED
            logger.info("Connect to %s:%s failed: %s", self.config.host, self.config.port, exc)
            self._settle(attempt, exc)
            self._emit(LifecycleEvent.ERROR, exc)
            self._schedule_reconnect()
            raise

        if self._connect_future is not attempt:
            # disconnect() was called while the connect was in flight
            await transport.disconnect()
            raise ConnectionClosedError("Disconnected while connecting")

        self.transport = transport
        self._state = ConnectionState.CONNECTED
        self._connect_future = None
        self._cancel_reconnect()
        self.reconnect_policy.reset()
        self._assembler.reset()
        self._rx_task = loop.create_task(self._rx_loop(transport))
        logger.info("Connected to %s:%s", self.config.host, self.config.port)
        self._emit(LifecycleEvent.CONNECTED)
        attempt.set_result(None)

    @staticmethod
    def _settle(future: asyncio.Future, exc: BaseException) -> None:
        if future.done():
            return
        future.set_exception(exc)
        # joined callers re-raise it; nobody else needs to see it
        future.exception()

    async def disconnect(self) -> None:
        """Stop the connection and disable automatic reconnection.

        Pending requests fail with ``ConnectionClosedError`` before this
        coroutine yields. The transport close is requested, not awaited.
        """
        self._cancel_reconnect()
        self.reconnect_enabled = False

        reconnect_task, self._reconnect_task = self._reconnect_task, None
        if reconnect_task is not None and reconnect_task is not asyncio.current_task():
            reconnect_task.cancel()

        attempt, self._connect_future = self._connect_future, None
        if attempt is not None:
            self._settle(attempt, ConnectionClosedError("Disconnecting"))

        transport, self.transport = self.transport, None
        self._state = ConnectionState.DISCONNECTED
        failed = self._correlator.fail_all(lambda: ConnectionClosedError("Disconnecting"))
        if failed:
            logger.debug("disconnect: failed %d pending requests", failed)

        rx_task, self._rx_task = self._rx_task, None
        if rx_task is not None and rx_task is not asyncio.current_task():
            rx_task.cancel()
        self._assembler.reset()

        if transport is not None:
            logger.info("Disconnecting from %s:%s", self.config.host, self.config.port)
            await transport.disconnect()

    def enable_reconnect(self) -> None:
        """Re-enable automatic reconnection after an explicit ``disconnect()``."""
        self.reconnect_enabled = True

    # --- receive path ---

    async def _rx_loop(self, transport: TransportInterface) -> None:
        error: Optional[BaseException] = None
        try:
            while True:
                data = await transport.receive()
                if not data:
                    break
                self._on_data(data)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            error = exc

        if self.transport is transport:
            self._handle_close(error)
            await transport.disconnect()

    def _on_data(self, data: bytes) -> None:
        for raw in self._assembler.feed(data):
            self._log("RX", raw)
            try:
                frame = parse_frame(raw)
            except ModbusProtocolError as exc:
                logger.warning("Dropping malformed frame %s: %s", raw.hex().upper(), exc)
                continue
            if frame.header.protocol_id != PROTOCOL_ID:
                logger.warning("Dropping frame with protocol id %d", frame.header.protocol_id)
                continue
            self._correlator.dispatch(frame)

    def _handle_close(self, error: Optional[BaseException]) -> None:
        self.transport = None
        self._rx_task = None
        self._state = ConnectionState.DISCONNECTED
        self._assembler.reset()
        failed = self._correlator.fail_all(ConnectionClosedError)
        if error is not None:
            logger.info("Connection to %s:%s lost: %s", self.config.host, self.config.port, error)
            self._emit(LifecycleEvent.ERROR, error)
        else:
            logger.info("Connection to %s:%s closed by peer", self.config.host, self.config.port)
        if failed:
            logger.debug("failed %d pending requests after connection loss", failed)
        self._emit(LifecycleEvent.DISCONNECTED)
        self._schedule_reconnect()

    # --- reconnect ---

    def _schedule_reconnect(self) -> None:
        if not self.reconnect_enabled or self._reconnect_handle is not None:
            return
        delay = self.reconnect_policy.next_delay()
        logger.info("Reconnecting to %s:%s in %.1fs", self.config.host, self.config.port, delay)
        loop = asyncio.get_running_loop()
        self._reconnect_handle = loop.call_later(delay, self._on_reconnect_timer)

    def _cancel_reconnect(self) -> None:
        if self._reconnect_handle is not None:
            self._reconnect_handle.cancel()
            self._reconnect_handle = None

    def _on_reconnect_timer(self) -> None:
        self._reconnect_handle = None
        if not self.reconnect_enabled or self._state is not ConnectionState.DISCONNECTED:
            logger.debug("Skipping reconnect (state=%s)", self._state.value)
            return
        task = asyncio.get_running_loop().create_task(self.connect())
        task.add_done_callback(self._on_reconnect_done)
        self._reconnect_task = task

    def _on_reconnect_done(self, task: asyncio.Task) -> None:
        if self._reconnect_task is task:
            self._reconnect_task = None
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            # already reported through ERROR; the next attempt is scheduled
            logger.debug("Reconnect attempt failed: %s", exc)

    # --- request path ---

    async def submit(self, unit_id: int, pdu: ModbusPDU, quantity: Optional[int] = None) -> asyncio.Future:
        """Write one request and return the future its response will settle."""
        transport = self.transport
        if self._state is not ConnectionState.CONNECTED or transport is None:
            raise NotConnectedError()

        transaction_id = self._correlator.next_id()
        frame = build_frame(transaction_id, unit_id, pdu)
        future = self._correlator.register(transaction_id, pdu.function_code, quantity)
        self._log("TX", frame)
        try:
            await transport.send(frame)
        except asyncio.CancelledError:
            self._correlator.discard(transaction_id)
            raise
        except Exception as exc:
            self._correlator.discard(transaction_id)
            if future.done():
                future.exception()
            else:
                future.cancel()
            raise ConnectionClosedError(f"Write failed: {exc}") from exc

        self._correlator.arm(transaction_id, self.config.timeout)
        return future

    async def request(self, unit_id: int, pdu: ModbusPDU, quantity: Optional[int] = None):
        future = await self.submit(unit_id, pdu, quantity)
        return await future
