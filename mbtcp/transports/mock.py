import asyncio
from typing import Callable, List, Optional, Union

from .base import TransportInterface

Responder = Callable[[bytes], Union[bytes, List[bytes], None]]


class MockTransport(TransportInterface):
    """In-memory transport for exercising the engine without a network.

    Every frame passed to ``send`` is recorded in ``sent``. When a
    ``responder`` is given it is called with each sent frame and whatever
    it returns (bytes or a list of chunks) is queued for ``receive``.
    Tests can also inject bytes directly with ``feed`` and simulate the
    peer hanging up with ``close_from_remote``.
    """

    def __init__(self, responder: Optional[Responder] = None, connect_error: Optional[BaseException] = None):
        self.connected = False
        self.responder = responder
        self.connect_error = connect_error
        self.connect_calls = 0
        self.sent: List[bytes] = []
        self.rx_queue: asyncio.Queue = asyncio.Queue()

    async def connect(self):
        self.connect_calls += 1
        await asyncio.sleep(0)
        if self.connect_error is not None:
            raise self.connect_error
        self.connected = True

    async def disconnect(self):
        self.connected = False
        self.rx_queue.put_nowait(b"")

    async def send(self, data: bytes):
        if not self.connected:
            raise ConnectionError("MockTransport: not connected")
        self.sent.append(bytes(data))
        if self.responder is None:
            return
        reply = self.responder(bytes(data))
        if reply is None:
            return
        for chunk in ([reply] if isinstance(reply, (bytes, bytearray)) else reply):
            self.rx_queue.put_nowait(bytes(chunk))

    async def receive(self) -> bytes:
        return await self.rx_queue.get()

    def feed(self, data: bytes) -> None:
        self.rx_queue.put_nowait(bytes(data))

    def close_from_remote(self) -> None:
        self.connected = False
        self.rx_queue.put_nowait(b"")
