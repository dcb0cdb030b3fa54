from abc import ABC, abstractmethod


class TransportInterface(ABC):
    """A single reliable, ordered byte stream.

    ``receive`` returns the next chunk as it arrives from the peer (chunk
    boundaries carry no meaning) and ``b""`` once the peer has closed.
    """

    connected: bool = False

    @abstractmethod
    async def connect(self):
        pass

    @abstractmethod
    async def disconnect(self):
        pass

    @abstractmethod
    async def send(self, data: bytes):
        pass

    @abstractmethod
    async def receive(self) -> bytes:
        pass
