import asyncio
import logging
from typing import Optional

from .base import TransportInterface

logger = logging.getLogger("mbtcp.transports.tcp")

READ_CHUNK = 4096


class TcpTransport(TransportInterface):
    def __init__(self, host: str, port: int, connect_timeout: Optional[float] = None):
        self.host = host
        self.port = port
        self.connect_timeout = connect_timeout
        self.reader: Optional[asyncio.StreamReader] = None
        self.writer: Optional[asyncio.StreamWriter] = None
        self.connected = False

    async def connect(self):
        if self.connected:
            return
        logger.debug("TcpTransport.connect: opening %s:%s", self.host, self.port)
        opener = asyncio.open_connection(self.host, self.port)
        if self.connect_timeout is not None:
            self.reader, self.writer = await asyncio.wait_for(opener, timeout=self.connect_timeout)
        else:
            self.reader, self.writer = await opener
        self.connected = True

    async def disconnect(self):
        # request the close but do not wait for the peer to acknowledge it
        self.connected = False
        writer, self.writer = self.writer, None
        self.reader = None
        if writer is not None:
            writer.close()

    async def send(self, data: bytes):
        if not self.connected or not self.writer:
            raise ConnectionError("TcpTransport: not connected")
        self.writer.write(data)
        await self.writer.drain()

    async def receive(self) -> bytes:
        if not self.connected or not self.reader:
            return b""
        data = await self.reader.read(READ_CHUNK)
        if not data:
            # remote closed
            self.connected = False
        return data
