"""Serialized command/response exchange with the gateway shell.

One Transaction at a time: a command line is written, response bytes are
accumulated, and the transaction completes either when its ``until``
predicate accepts the bytes received since the write (default: the shell
prompt came back) or when its deadline elapses. All methods run on the
controller's event loop; the serial reader thread hands chunks over with
``call_soon_threadsafe``.
"""

import asyncio
from dataclasses import dataclass, field
from typing import Callable, Optional

from mesh_provisioner.constants import LINE_TERMINATOR
from mesh_provisioner.exceptions import (
    ResponseTimeout,
    TransactionInProgress,
    TransportUnavailable,
)
from mesh_provisioner.parser import prompt_seen

Predicate = Optional[Callable[[str], bool]]


@dataclass
class Response:
    """Text handed over when a transaction completes."""
    command: str
    text: str
    timed_out: bool = False


@dataclass
class Transaction:
    command: str
    future: asyncio.Future
    until: Predicate
    deadline: float             # loop.time() at which it is forced to complete
    mark: int = 0               # buffer offset where this command's bytes start
    handle: Optional[asyncio.TimerHandle] = field(default=None, repr=False)

    async def wait(self) -> Response:
        return await self.future


class CommandDispatcher:
    """Sends one shell command at a time and collects what comes back."""

    DEFAULT_TIMEOUT = 0.1   # Seconds
    CARRY_LIMIT = 4096      # Max bytes kept between transactions (whole lines)

    def __init__(self, transport, timeout: Optional[float] = None,
                 on_traffic: Optional[Callable[[bytes], None]] = None):
        self.transport = transport
        self.timeout = self.DEFAULT_TIMEOUT if timeout is None else timeout
        self.on_traffic = on_traffic   # Sees every chunk (live traffic display)
        self.transaction_count = 0
        self._buffer = bytearray()     # Bytes since the last completed transaction
        self._tx: Optional[Transaction] = None

    @property
    def busy(self) -> bool:
        return self._tx is not None

    @property
    def pending_command(self) -> Optional[str]:
        return self._tx.command if self._tx else None

    def send(self, command: str, timeout: Optional[float] = None,
             until: Predicate = prompt_seen) -> Transaction:
        """Write ``command`` + terminator and open a Transaction.

        Raises TransactionInProgress while another transaction is open and
        TransportUnavailable when the channel is closed. Pass ``until=None``
        to hold the transaction open for the whole deadline.
        """
        if self._tx is not None:
            raise TransactionInProgress(self._tx.command)
        if "\n" in command or "\r" in command:
            raise ValueError(f"command must be a single line: {command!r}")
        if self.transport is None or not self.transport.is_open:
            raise TransportUnavailable()

        loop = asyncio.get_running_loop()
        wait = self.timeout if timeout is None else timeout
        self.transport.write((command + LINE_TERMINATOR).encode("utf-8"))

        tx = Transaction(
            command=command,
            future=loop.create_future(),
            until=until,
            deadline=loop.time() + wait,
            mark=len(self._buffer),
        )
        tx.handle = loop.call_later(wait, self.complete_on_timeout)
        self._tx = tx
        return tx

    async def request(self, command: str, timeout: Optional[float] = None,
                      until: Predicate = prompt_seen) -> Response:
        """send() and wait for completion. Raises ResponseTimeout on silence."""
        tx = self.send(command, timeout=timeout, until=until)
        return await tx.wait()

    def bytes_arrived(self, chunk: bytes):
        """Transport notification: append ``chunk`` and check for completion."""
        if not chunk:
            return
        if self.on_traffic:
            self.on_traffic(chunk)
        self._buffer.extend(chunk)
        tx = self._tx
        if tx is None:
            self._trim_carry()
            return  # Kept for the next read cycle
        if tx.until is None:
            return  # Held until the deadline
        fresh = bytes(self._buffer[tx.mark:]).decode("utf-8", errors="replace")
        if tx.until(fresh):
            self._complete(timed_out=False)

    def complete_on_timeout(self):
        """Deadline reached: complete with whatever was buffered."""
        if self._tx is not None:
            self._complete(timed_out=True)

    def abort(self, exc: Exception):
        """Fail the open transaction (transport went away)."""
        tx = self._tx
        if tx is None:
            return
        self._tx = None
        if tx.handle:
            tx.handle.cancel()
        if not tx.future.done():
            tx.future.set_exception(exc)

    def _trim_carry(self):
        """Drop the oldest idle traffic, keeping at most CARRY_LIMIT bytes."""
        excess = len(self._buffer) - self.CARRY_LIMIT
        if excess <= 0:
            return
        cut = self._buffer.find(b"\n", excess)
        del self._buffer[:cut + 1 if cut >= 0 else excess]

    def _complete(self, timed_out: bool):
        tx = self._tx
        self._tx = None
        if tx.handle:
            tx.handle.cancel()
        text = bytes(self._buffer).decode("utf-8", errors="replace")
        self._buffer.clear()
        self.transaction_count += 1
        response = Response(command=tx.command, text=text, timed_out=timed_out)
        if tx.future.done():
            return  # Waiter was cancelled; contents are dropped with it
        if timed_out and not text:
            tx.future.set_exception(ResponseTimeout(tx.command, response))
        else:
            tx.future.set_result(response)
