"""Byte-stream channel to the serial-attached gateway.

The controller only needs ``write(bytes)``, ``is_open`` and a notification
whenever bytes arrive. SerialTransport reads the port on its own daemon
thread and hands every chunk to the controller's event loop with
``call_soon_threadsafe``, so the receiver always runs on the loop thread
and never reentrantly.
"""

import asyncio
import threading
import time
from typing import Callable, Optional

import serial
import serial.tools.list_ports

from mesh_provisioner.constants import DEFAULT_BAUD
from mesh_provisioner.exceptions import TransportUnavailable

Receiver = Callable[[bytes], None]


def list_ports() -> list[str]:
    """Device names of every serial port currently present."""
    return [p.device for p in serial.tools.list_ports.comports()]


class Transport:
    """Minimal duplex channel interface."""

    def __init__(self):
        self._receiver: Optional[Receiver] = None

    @property
    def is_open(self) -> bool:
        raise NotImplementedError

    def set_receiver(self, receiver: Optional[Receiver]):
        self._receiver = receiver

    def write(self, data: bytes):
        raise NotImplementedError

    def close(self):
        pass


class SerialTransport(Transport):
    """pyserial port with a background reader thread."""

    RESET_PULSE = 0.2   # DTR/RTS low time (resets the board)
    BOOT_WAIT = 0.5     # Let the Zephyr shell come up before the first write
    READ_SIZE = 256

    def __init__(self, port: str, baud: int = DEFAULT_BAUD):
        super().__init__()
        self.port = port
        self.baud = baud
        self._ser: Optional[serial.Serial] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()
        self._lock = threading.Lock()
        self.on_lost: Optional[Callable[[Exception], None]] = None

    @property
    def is_open(self) -> bool:
        return self._ser is not None and self._ser.is_open

    def open(self, loop: asyncio.AbstractEventLoop):
        """Open the port, pulse reset and start the reader thread.

        Blocking; call it off the event loop (run_in_executor).
        """
        self._loop = loop
        try:
            ser = serial.serial_for_url(self.port, baudrate=self.baud, timeout=0.1,
                                         dsrdtr=False, rtscts=False)
        except serial.SerialException as e:
            raise TransportUnavailable(f"can't open {self.port}: {e}") from e

        try:
            ser.dtr = False
            ser.rts = False
            time.sleep(self.RESET_PULSE)
            ser.dtr = True
            ser.rts = True
            time.sleep(self.BOOT_WAIT)
            ser.write(b"\n")   # Wake the shell so it prints a prompt
            ser.flush()
        except serial.SerialException as e:
            ser.close()
            raise TransportUnavailable(f"{self.port} failed after open: {e}") from e

        self._ser = ser
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run, daemon=True, name="serial-rx")
        self._thread.start()

    def write(self, data: bytes):
        if not self.is_open:
            raise TransportUnavailable()
        try:
            with self._lock:
                self._ser.write(data)
                self._ser.flush()
        except serial.SerialException as e:
            raise TransportUnavailable(f"write to {self.port} failed: {e}") from e

    def close(self):
        self._stop_event.set()
        if self._thread:
            self._thread.join(timeout=2.0)
        self._thread = None
        if self._ser is not None:
            try:
                self._ser.close()
            except serial.SerialException:
                pass
        self._ser = None

    def _run(self):
        ser = self._ser
        while not self._stop_event.is_set():
            try:
                raw = ser.read(self.READ_SIZE)
            except serial.SerialException as e:
                if self._loop and self.on_lost:
                    self._loop.call_soon_threadsafe(self.on_lost, e)
                return
            if raw and self._receiver and self._loop:
                self._loop.call_soon_threadsafe(self._receiver, bytes(raw))
