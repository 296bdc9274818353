"""Single control thread for the provisioner.

Every intent, every dispatcher deadline and every serial chunk is handled on
one persistent asyncio loop that runs in this thread. Surfaces (TUI
workers, the web server, the plain CLI) never touch the controller
directly; they submit coroutines here, which gives the single-threaded,
non-reentrant processing the dispatcher relies on.
"""

import asyncio
import threading
import traceback
from typing import Optional


class IoThread:
    """Daemon thread owning the controller's event loop."""

    def __init__(self, name: str = "mesh-io"):
        self.name = name
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._thread: Optional[threading.Thread] = None

    @property
    def loop(self) -> Optional[asyncio.AbstractEventLoop]:
        return self._loop

    def start(self):
        """Spawn the thread and block until its loop accepts work."""
        ready = threading.Event()

        def _run():
            loop = asyncio.new_event_loop()
            asyncio.set_event_loop(loop)
            loop.set_exception_handler(self._exception_handler)
            self._loop = loop
            loop.call_soon(ready.set)
            loop.run_forever()
            loop.run_until_complete(loop.shutdown_asyncgens())
            loop.close()

        self._thread = threading.Thread(target=_run, daemon=True, name=self.name)
        self._thread.start()
        ready.wait()

    def submit(self, coro) -> 'asyncio.Future':
        """Schedule ``coro`` on the I/O loop. Returns concurrent.futures.Future."""
        if self._loop is None:
            raise RuntimeError("IoThread not started")
        return asyncio.run_coroutine_threadsafe(coro, self._loop)

    async def submit_async(self, coro):
        """Await ``coro`` on the I/O loop from another loop (Textual workers)."""
        return await asyncio.wrap_future(self.submit(coro))

    def call(self, coro, timeout: Optional[float] = None):
        """Blocking variant for plain threads (CLI, shutdown paths)."""
        return self.submit(coro).result(timeout=timeout)

    def stop(self):
        if self._loop and self._loop.is_running():
            self._loop.call_soon_threadsafe(self._loop.stop)
        if self._thread:
            self._thread.join(timeout=5.0)
        self._loop = None
        self._thread = None

    def _exception_handler(self, loop, context):
        msg = context.get("message", "Unhandled exception on I/O loop")
        exc = context.get("exception")
        if exc:
            tb = ''.join(traceback.format_exception(type(exc), exc, exc.__traceback__))
            print(f"[IO ERROR] {msg}\n{tb}")
        else:
            print(f"[IO ERROR] {msg}")
