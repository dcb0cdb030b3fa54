"""Shared fixtures: an in-memory Modbus/TCP device used behind MockTransport and TCP servers."""
from __future__ import annotations

import struct
from typing import Dict, List, Optional

import pytest

from mbtcp.modbus_exceptions import ILLEGAL_DATA_ADDRESS, ILLEGAL_DATA_VALUE, ILLEGAL_FUNCTION
from mbtcp.protocol.framers import FrameAssembler


def pack_bits(values: List[bool]) -> bytes:
    out = bytearray((len(values) + 7) // 8)
    for i, v in enumerate(values):
        if v:
            out[i // 8] |= 1 << (i % 8)
    return bytes(out)


def mbap(transaction_id: int, unit_id: int, pdu: bytes, protocol_id: int = 0) -> bytes:
    return struct.pack(">HHHB", transaction_id, protocol_id, len(pdu) + 1, unit_id) + pdu


class FakeDevice:
    """Minimal Modbus/TCP responder backed by four in-memory tables."""

    def __init__(self, size: int = 256) -> None:
        self.size = size
        self.coils: List[bool] = [False] * size
        self.discrete: List[bool] = [False] * size
        self.holding: List[int] = [0] * size
        self.input: List[int] = [0] * size
        self.requests: List[bytes] = []
        self.silent = False
        self._assembler = FrameAssembler()

    def handle_stream(self, chunk: bytes) -> List[bytes]:
        return [r for r in (self.handle(f) for f in self._assembler.feed(chunk)) if r is not None]

    def handle(self, frame: bytes) -> Optional[bytes]:
        self.requests.append(frame)
        if self.silent:
            return None
        tid, _, _, unit = struct.unpack(">HHHB", frame[:7])
        fc = frame[7]
        body = frame[8:]
        try:
            pdu = self._dispatch(fc, body)
        except _DeviceException as exc:
            pdu = bytes([fc | 0x80, exc.code])
        return mbap(tid, unit, pdu)

    def _check(self, address: int, count: int) -> None:
        if address + count > self.size:
            raise _DeviceException(ILLEGAL_DATA_ADDRESS)

    def _dispatch(self, fc: int, body: bytes) -> bytes:
        if fc in (1, 2):
            address, count = struct.unpack(">HH", body[:4])
            self._check(address, count)
            table = self.coils if fc == 1 else self.discrete
            data = pack_bits(table[address:address + count])
            return bytes([fc, len(data)]) + data
        if fc in (3, 4):
            address, count = struct.unpack(">HH", body[:4])
            self._check(address, count)
            table = self.holding if fc == 3 else self.input
            values = table[address:address + count]
            return bytes([fc, count * 2]) + struct.pack(f">{count}H", *values)
        if fc == 5:
            address, value = struct.unpack(">HH", body[:4])
            self._check(address, 1)
            if value not in (0x0000, 0xFF00):
                raise _DeviceException(ILLEGAL_DATA_VALUE)
            self.coils[address] = value == 0xFF00
            return bytes([fc]) + body[:4]
        if fc == 6:
            address, value = struct.unpack(">HH", body[:4])
            self._check(address, 1)
            self.holding[address] = value
            return bytes([fc]) + body[:4]
        if fc == 15:
            address, count, _ = struct.unpack(">HHB", body[:5])
            self._check(address, count)
            packed = body[5:]
            for i in range(count):
                self.coils[address + i] = bool((packed[i // 8] >> (i % 8)) & 1)
            return struct.pack(">BHH", fc, address, count)
        if fc == 16:
            address, count, _ = struct.unpack(">HHB", body[:5])
            self._check(address, count)
            values = struct.unpack(f">{count}H", body[5:5 + count * 2])
            self.holding[address:address + count] = list(values)
            return struct.pack(">BHH", fc, address, count)
        raise _DeviceException(ILLEGAL_FUNCTION)


class _DeviceException(Exception):
    def __init__(self, code: int) -> None:
        self.code = code


@pytest.fixture
def device() -> FakeDevice:
    return FakeDevice()
