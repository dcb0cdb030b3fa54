import asyncio
import logging

import pytest

from mbtcp.config import ClientConfig
from mbtcp.errors import ConnectionClosedError, ModbusExceptionError, NotConnectedError, RequestTimeoutError
from mbtcp.modbus_exceptions import ILLEGAL_FUNCTION
from mbtcp.protocol.framers import build_frame
from mbtcp.protocol.pdu import ModbusPDU, build_read_request
from mbtcp.transports.manager import ConnectionManager, ConnectionState, LifecycleEvent
from mbtcp.transports.mock import MockTransport
from mbtcp.transports.reconnect import ExponentialBackoff


class TransportFactory:
    """Hands out MockTransports; the first ``failures`` of them refuse to connect."""

    def __init__(self, responder=None, failures: int = 0):
        self.responder = responder
        self.failures = failures
        self.created = []

    def __call__(self):
        error = ConnectionRefusedError("refused") if len(self.created) < self.failures else None
        transport = MockTransport(responder=self.responder, connect_error=error)
        self.created.append(transport)
        return transport


def _manager(factory, **overrides):
    cfg = ClientConfig(host="mock", timeout=1.0, reconnect_interval=0.01)
    for key, value in overrides.items():
        setattr(cfg, key, value)
    return ConnectionManager(cfg, transport_factory=factory)


async def _wait_for(predicate, timeout=1.0):
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.005)


def _read_pdu():
    return build_read_request(0x03, 0, 1)


@pytest.mark.asyncio
async def test_connect_emits_connected():
    events = []
    m = _manager(TransportFactory())
    m.subscribe(LifecycleEvent.CONNECTED, lambda: events.append("connected"))
    assert m.state is ConnectionState.DISCONNECTED
    await m.connect()
    assert m.connected
    assert m.state is ConnectionState.CONNECTED
    assert events == ["connected"]
    # already connected: no new attempt
    await m.connect()
    assert events == ["connected"]
    await m.disconnect()
    assert not m.connected


@pytest.mark.asyncio
async def test_concurrent_connects_share_one_attempt():
    factory = TransportFactory()
    m = _manager(factory)
    await asyncio.gather(m.connect(), m.connect(), m.connect())
    assert len(factory.created) == 1
    assert m.connected
    await m.disconnect()


@pytest.mark.asyncio
async def test_joined_callers_see_connect_failure():
    factory = TransportFactory(failures=1)
    m = _manager(factory, reconnect=False)
    results = await asyncio.gather(m.connect(), m.connect(), return_exceptions=True)
    assert all(isinstance(r, ConnectionRefusedError) for r in results)
    assert len(factory.created) == 1
    assert m.state is ConnectionState.DISCONNECTED


@pytest.mark.asyncio
async def test_failed_connect_reports_error_and_reconnects():
    errors = []
    connected = []
    factory = TransportFactory(failures=2)
    m = _manager(factory)
    m.subscribe("error", errors.append)
    m.subscribe("connected", lambda: connected.append(True))

    with pytest.raises(ConnectionRefusedError):
        await m.connect()
    assert m.reconnect_scheduled

    await _wait_for(lambda: m.connected)
    assert len(factory.created) == 3
    assert len(errors) == 2
    assert connected == [True]
    assert not m.reconnect_scheduled
    await m.disconnect()


@pytest.mark.asyncio
async def test_unobserved_error_is_logged_not_raised(caplog):
    m = _manager(TransportFactory(failures=1), reconnect=False)
    with caplog.at_level(logging.WARNING, logger="mbtcp.transports.manager"):
        with pytest.raises(ConnectionRefusedError):
            await m.connect()
    assert "no error subscribers" in caplog.text


@pytest.mark.asyncio
async def test_failing_callback_does_not_break_engine():
    m = _manager(TransportFactory())

    def boom():
        raise RuntimeError("callback failure")

    m.subscribe(LifecycleEvent.CONNECTED, boom)
    await m.connect()
    assert m.connected
    await m.disconnect()


@pytest.mark.asyncio
async def test_unsubscribe():
    events = []
    m = _manager(TransportFactory())
    unsubscribe = m.subscribe(LifecycleEvent.CONNECTED, lambda: events.append(1))
    unsubscribe()
    await m.connect()
    assert events == []
    await m.disconnect()


@pytest.mark.asyncio
async def test_request_when_not_connected():
    m = _manager(TransportFactory())
    with pytest.raises(NotConnectedError):
        await m.request(1, _read_pdu(), 1)


@pytest.mark.asyncio
async def test_request_roundtrip_through_device(device):
    device.holding[0] = 4242
    m = _manager(TransportFactory(responder=device.handle_stream))
    await m.connect()
    result = await m.request(1, _read_pdu(), 1)
    assert result.values == [4242]
    assert m.pending_count == 0
    await m.disconnect()


@pytest.mark.asyncio
async def test_unsupported_function_rejected_by_device(device):
    m = _manager(TransportFactory(responder=device.handle_stream))
    await m.connect()
    with pytest.raises(ModbusExceptionError) as info:
        await m.request(1, ModbusPDU(0x07, b""))
    assert info.value.code == ILLEGAL_FUNCTION
    assert info.value.function_code == 0x07
    await m.disconnect()


@pytest.mark.asyncio
async def test_disconnect_fails_outstanding_requests():
    factory = TransportFactory()
    m = _manager(factory)
    await m.connect()
    tasks = [asyncio.create_task(m.request(1, _read_pdu(), 1)) for _ in range(2)]
    await _wait_for(lambda: m.pending_count == 2)

    await m.disconnect()

    assert m.pending_count == 0
    for task in tasks:
        with pytest.raises(ConnectionClosedError):
            await task
    assert not m.reconnect_scheduled
    assert not m.reconnect_enabled
    assert not factory.created[0].connected


@pytest.mark.asyncio
async def test_peer_close_fails_pending_and_reconnects():
    events = []
    factory = TransportFactory()
    m = _manager(factory)
    m.subscribe(LifecycleEvent.DISCONNECTED, lambda: events.append("disconnected"))
    m.subscribe(LifecycleEvent.CONNECTED, lambda: events.append("connected"))
    await m.connect()
    task = asyncio.create_task(m.request(1, _read_pdu(), 1))
    await _wait_for(lambda: m.pending_count == 1)

    factory.created[0].close_from_remote()

    with pytest.raises(ConnectionClosedError):
        await task
    assert m.pending_count == 0
    await _wait_for(lambda: m.connected)
    assert events == ["connected", "disconnected", "connected"]
    assert len(factory.created) == 2
    await m.disconnect()


@pytest.mark.asyncio
async def test_peer_close_without_reconnect_stays_down():
    factory = TransportFactory()
    m = _manager(factory, reconnect=False)
    await m.connect()
    factory.created[0].close_from_remote()
    await _wait_for(lambda: m.state is ConnectionState.DISCONNECTED)
    await asyncio.sleep(0.05)
    assert len(factory.created) == 1
    assert not m.reconnect_scheduled


@pytest.mark.asyncio
async def test_reconnect_survives_long_backoff():
    policy = ExponentialBackoff(initial=1.0, maximum=60.0, jitter=0.0)
    policy._attempt = 1100
    cfg = ClientConfig(host="mock", timeout=1.0)
    m = ConnectionManager(cfg, transport_factory=TransportFactory(failures=1), reconnect_policy=policy)
    results = await asyncio.wait_for(
        asyncio.gather(m.connect(), m.connect(), return_exceptions=True), 1.0
    )
    assert all(isinstance(r, ConnectionRefusedError) for r in results)
    assert m.reconnect_scheduled
    await m.disconnect()


@pytest.mark.asyncio
async def test_disconnect_disables_reconnect_until_enabled():
    factory = TransportFactory()
    m = _manager(factory, reconnect_interval=10.0)
    await m.connect()
    await m.disconnect()

    # reconnected by hand: a peer close must not schedule a retry
    await m.connect()
    factory.created[1].close_from_remote()
    await _wait_for(lambda: m.state is ConnectionState.DISCONNECTED)
    assert not m.reconnect_scheduled

    m.enable_reconnect()
    await m.connect()
    factory.created[2].close_from_remote()
    await _wait_for(lambda: m.state is ConnectionState.DISCONNECTED)
    assert m.reconnect_scheduled
    await m.disconnect()
    assert not m.reconnect_scheduled


@pytest.mark.asyncio
async def test_disconnect_cancels_reconnect_attempt_in_flight():
    m = _manager(TransportFactory(), reconnect_interval=0.0)
    m._on_reconnect_timer()
    task = m._reconnect_task
    assert task is not None
    await asyncio.sleep(0)
    await m.disconnect()
    await asyncio.gather(task, return_exceptions=True)
    assert task.done()
    assert m._reconnect_task is None
    assert not m.connected


@pytest.mark.asyncio
async def test_only_one_reconnect_timer_pending():
    m = _manager(TransportFactory(), reconnect_interval=10.0)
    m._schedule_reconnect()
    handle = m._reconnect_handle
    m._schedule_reconnect()
    assert m._reconnect_handle is handle
    await m.disconnect()
    assert handle.cancelled()


@pytest.mark.asyncio
async def test_reconnect_timer_skipped_when_already_connected():
    factory = TransportFactory()
    m = _manager(factory)
    await m.connect()
    m._on_reconnect_timer()
    await asyncio.sleep(0.02)
    assert len(factory.created) == 1
    await m.disconnect()


@pytest.mark.asyncio
async def test_disconnect_while_connecting():
    m = _manager(TransportFactory())
    task = asyncio.create_task(m.connect())
    await asyncio.sleep(0)
    assert m.state is ConnectionState.CONNECTING
    await m.disconnect()
    with pytest.raises(ConnectionClosedError):
        await task
    assert not m.connected


@pytest.mark.asyncio
async def test_timeout_then_late_response_is_ignored(device):
    factory = TransportFactory()
    m = _manager(factory, timeout=0.02)
    await m.connect()
    with pytest.raises(RequestTimeoutError):
        await m.request(1, _read_pdu(), 1)
    assert m.pending_count == 0

    # late reply for the expired transaction
    factory.created[0].feed(build_frame(1, 1, ModbusPDU(0x03, bytes([2, 0, 1]))))
    await asyncio.sleep(0.01)
    assert m.connected

    factory.created[0].responder = device.handle_stream
    result = await m.request(1, _read_pdu(), 1)
    assert result.values == [0]
    await m.disconnect()


@pytest.mark.asyncio
async def test_foreign_protocol_id_and_malformed_frames_dropped(device):
    factory = TransportFactory()
    m = _manager(factory)
    await m.connect()
    task = asyncio.create_task(m.request(1, _read_pdu(), 1))
    await _wait_for(lambda: m.pending_count == 1)
    transport = factory.created[0]

    foreign = bytearray(build_frame(1, 1, ModbusPDU(0x03, bytes([2, 0, 5]))))
    foreign[3] = 1
    transport.feed(bytes(foreign))
    transport.feed(bytes.fromhex("0001 0000 0001 01"))
    await asyncio.sleep(0.01)
    assert m.pending_count == 1

    transport.feed(build_frame(1, 1, ModbusPDU(0x03, bytes([2, 0, 6]))))
    assert (await task).values == [6]
    await m.disconnect()


@pytest.mark.asyncio
async def test_traffic_observer(device):
    entries = []
    m = _manager(TransportFactory(responder=device.handle_stream))
    m.add_observer(entries.append)
    await m.connect()
    await m.request(1, _read_pdu(), 1)
    await m.disconnect()
    assert [e["direction"] for e in entries] == ["TX", "RX"]
    assert entries[0]["data"] == "00010000000601030000" + "0001"
