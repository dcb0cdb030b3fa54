"""Transaction correlation for concurrent Modbus/TCP requests.

Each outstanding request is represented by a ``Transaction`` holding an
``asyncio.Future``. Responses may complete in any order; they are matched
purely by the 16-bit transaction id from the MBAP header.
"""
from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, Optional

from mbtcp.constants import EXCEPTION_FLAG, TRANSACTION_ID_MODULO
from mbtcp.errors import (
    ModbusError,
    ModbusExceptionError,
    ModbusProtocolError,
    RequestTimeoutError,
)
from mbtcp.protocol.framers import Frame
from mbtcp.protocol.pdu import decode_response

logger = logging.getLogger("mbtcp.core.correlator")


@dataclass
class Transaction:
    transaction_id: int
    function_code: int
    future: asyncio.Future
    quantity: Optional[int] = None
    timer: Optional[asyncio.TimerHandle] = None
    created: float = field(default_factory=time.monotonic)

    def cancel_timer(self) -> None:
        if self.timer is not None:
            self.timer.cancel()
            self.timer = None


class TransactionCorrelator:
    """Allocate transaction ids and match response frames to their waiters."""

    def __init__(self, loop: Optional[asyncio.AbstractEventLoop] = None) -> None:
        self._loop = loop
        self._last_id = 0
        self._pending: Dict[int, Transaction] = {}

    def __len__(self) -> int:
        return len(self._pending)

    def __contains__(self, transaction_id: int) -> bool:
        return transaction_id in self._pending

    def _get_loop(self) -> asyncio.AbstractEventLoop:
        return self._loop or asyncio.get_running_loop()

    def next_id(self) -> int:
        """Return the next free transaction id.

        The counter wraps from 65535 to 0. Ids that are still outstanding
        are skipped rather than reused.
        """
        if len(self._pending) >= TRANSACTION_ID_MODULO:
            raise ModbusError("No free transaction id: all 65536 transactions outstanding")
        candidate = (self._last_id + 1) % TRANSACTION_ID_MODULO
        while candidate in self._pending:
            logger.debug("next_id: skipping outstanding transaction id %d", candidate)
            candidate = (candidate + 1) % TRANSACTION_ID_MODULO
        self._last_id = candidate
        return candidate

    def register(self, transaction_id: int, function_code: int, quantity: Optional[int] = None) -> asyncio.Future:
        future = self._get_loop().create_future()
        self._pending[transaction_id] = Transaction(
            transaction_id=transaction_id,
            function_code=function_code,
            future=future,
            quantity=quantity,
        )
        return future

    def arm(self, transaction_id: int, timeout: float) -> None:
        """Start the timeout timer; called once the request has been written."""
        txn = self._pending.get(transaction_id)
        if txn is None:
            return
        txn.timer = self._get_loop().call_later(timeout, self._expire, transaction_id)

    def discard(self, transaction_id: int) -> Optional[Transaction]:
        txn = self._pending.pop(transaction_id, None)
        if txn is not None:
            txn.cancel_timer()
        return txn

    def _expire(self, transaction_id: int) -> None:
        txn = self._pending.pop(transaction_id, None)
        if txn is None:
            return
        txn.timer = None
        elapsed = time.monotonic() - txn.created
        logger.debug("transaction %d timed out after %.3fs", transaction_id, elapsed)
        if not txn.future.done():
            txn.future.set_exception(RequestTimeoutError(transaction_id=transaction_id))

    def dispatch(self, frame: Frame) -> bool:
        """Complete the transaction matching ``frame``.

        Returns False when no transaction is waiting for this id (late
        response after a timeout, or one abandoned by a disconnect).
        """
        txn = self._pending.pop(frame.transaction_id, None)
        if txn is None:
            logger.debug("Discarding response for unknown transaction id %d", frame.transaction_id)
            return False
        txn.cancel_timer()
        if txn.future.done():
            # caller gave up (cancelled) before the response arrived
            return True

        fc = frame.function_code
        if fc & EXCEPTION_FLAG:
            if len(frame.pdu.data) < 1:
                txn.future.set_exception(ModbusProtocolError("Exception response missing exception code"))
            else:
                txn.future.set_exception(ModbusExceptionError(frame.pdu.data[0], fc & ~EXCEPTION_FLAG))
            return True

        if fc != txn.function_code:
            txn.future.set_exception(ModbusProtocolError(
                f"Function code mismatch: sent 0x{txn.function_code:02X}, received 0x{fc:02X}"
            ))
            return True

        try:
            result = decode_response(txn.function_code, frame.pdu, txn.quantity)
        except ModbusProtocolError as exc:
            txn.future.set_exception(exc)
        else:
            txn.future.set_result(result)
        return True

    def fail_all(self, make_error: Callable[[], BaseException]) -> int:
        """Fail every outstanding transaction and clear the table.

        ``make_error`` is called once per transaction so each caller gets
        its own exception instance.
        """
        pending, self._pending = self._pending, {}
        for txn in pending.values():
            txn.cancel_timer()
            if not txn.future.done():
                txn.future.set_exception(make_error())
        return len(pending)
