"""MBAP framing for Modbus/TCP.

``build_frame`` wraps a PDU in the 7-byte MBAP header for transmission;
``FrameAssembler`` turns an arbitrarily chunked byte stream back into
complete frames. The assembler never exposes a partial frame: bytes stay
buffered until the length announced in the header has fully arrived.

Usage:
  assembler = FrameAssembler()
  for raw in assembler.feed(chunk):
      frame = parse_frame(raw)
"""
from __future__ import annotations

import struct
from dataclasses import dataclass
from typing import Iterator

from mbtcp.constants import MBAP_HEADER_LENGTH, MBAP_LENGTH_OFFSET, PROTOCOL_ID
from mbtcp.errors import ModbusProtocolError

from .pdu import ModbusPDU


@dataclass
class MBAPHeader:
    """Modbus TCP Application Protocol header."""
    transaction_id: int   # 2 bytes - client-assigned request identifier
    protocol_id: int      # 2 bytes - always 0 for Modbus
    length: int           # 2 bytes - number of following bytes (unit_id + pdu)
    unit_id: int          # 1 byte - device address behind the endpoint

    def to_bytes(self) -> bytes:
        return struct.pack(
            ">HHHB",
            self.transaction_id,
            self.protocol_id,
            self.length,
            self.unit_id,
        )

    @classmethod
    def from_bytes(cls, data: bytes) -> "MBAPHeader":
        if len(data) < MBAP_HEADER_LENGTH:
            raise ModbusProtocolError("MBAP header requires at least 7 bytes")
        trans_id, proto_id, length, unit_id = struct.unpack(">HHHB", data[:MBAP_HEADER_LENGTH])
        return cls(
            transaction_id=trans_id,
            protocol_id=proto_id,
            length=length,
            unit_id=unit_id,
        )


@dataclass
class Frame:
    """A fully reassembled Modbus/TCP message."""
    header: MBAPHeader
    pdu: ModbusPDU

    @property
    def transaction_id(self) -> int:
        return self.header.transaction_id

    @property
    def unit_id(self) -> int:
        return self.header.unit_id

    @property
    def function_code(self) -> int:
        return self.pdu.function_code


def build_frame(transaction_id: int, unit_id: int, pdu: ModbusPDU) -> bytes:
    """Build a Modbus TCP frame from components."""
    pdu_bytes = pdu.to_bytes()
    header = MBAPHeader(
        transaction_id=transaction_id,
        protocol_id=PROTOCOL_ID,
        length=1 + len(pdu_bytes),  # unit_id + pdu
        unit_id=unit_id,
    )
    return header.to_bytes() + pdu_bytes


def parse_frame(data: bytes) -> Frame:
    """Parse one complete frame as yielded by ``FrameAssembler``."""
    if len(data) < MBAP_HEADER_LENGTH + 1:
        raise ModbusProtocolError(f"TCP frame too short ({len(data)} bytes)")
    header = MBAPHeader.from_bytes(data)
    pdu = ModbusPDU.from_bytes(data[MBAP_HEADER_LENGTH:])
    return Frame(header=header, pdu=pdu)


class FrameAssembler:
    """Reassemble MBAP frames from partial or merged stream reads."""

    def __init__(self) -> None:
        self._buffer = bytearray()

    @property
    def pending(self) -> int:
        """Number of buffered bytes not yet part of a complete frame."""
        return len(self._buffer)

    def reset(self) -> None:
        self._buffer.clear()

    def feed(self, chunk: bytes) -> Iterator[bytes]:
        """Append ``chunk`` and yield every complete frame now available."""
        self._buffer.extend(chunk)
        while len(self._buffer) >= MBAP_HEADER_LENGTH:
            (length,) = struct.unpack_from(">H", self._buffer, MBAP_LENGTH_OFFSET)
            total = MBAP_HEADER_LENGTH - 1 + length
            if len(self._buffer) < total:
                # wait for the rest of this frame
                return
            frame = bytes(self._buffer[:total])
            del self._buffer[:total]
            yield frame
