"""Pytest configuration and shared fixtures."""

import asyncio
import time

import pytest

from wagate.session.connection import ConnectionManager
from wagate.session.credentials import CredentialStore
from wagate.session.transport import (
    CREDS_UPDATED,
    INBOUND_BATCH,
    STATE_CHANGE,
    ConnectionUpdate,
    DisconnectInfo,
    MessagingTransport,
    TransportHandle,
)


class FakeTransport(MessagingTransport):
    """In-memory transport. Tests drive its events explicitly."""

    def __init__(self):
        super().__init__()
        self.opened: list[TransportHandle] = []
        self.open_credentials: list = []
        self.open_errors: list[Exception] = []
        self.emit_open_during_open = False
        self.sent: list[tuple[int, str, str]] = []
        self.fail_addresses: set[str] = set()
        self.send_delay = 0.0
        self.closed: list[TransportHandle] = []
        self.logged_out: list[TransportHandle] = []
        self.block_open: set[int] = set()
        self.opening: set[int] = set()
        self.cancelled_opens: list[int] = []

    @property
    def last_generation(self) -> int:
        return self.opened[-1].generation

    async def open(self, credentials, generation):
        self.open_credentials.append(credentials)
        if self.open_errors:
            raise self.open_errors.pop(0)
        if generation in self.block_open:
            self.opening.add(generation)
            try:
                await asyncio.Event().wait()
            except asyncio.CancelledError:
                self.cancelled_opens.append(generation)
                raise
            finally:
                self.opening.discard(generation)
        handle = TransportHandle(generation=generation)
        self.opened.append(handle)
        if self.emit_open_during_open:
            await self._emit(STATE_CHANGE, generation, ConnectionUpdate(connection="open"))
        return handle

    async def send(self, handle, address, text):
        if self.send_delay:
            await asyncio.sleep(self.send_delay)
        if address in self.fail_addresses:
            raise RuntimeError(f"rejected {address}")
        self.sent.append((handle.generation, address, text))

    async def close(self, handle):
        handle.closed = True
        self.closed.append(handle)

    async def logout(self, handle):
        handle.closed = True
        self.logged_out.append(handle)

    # ── Event drivers ──

    async def emit_open(self, generation=None):
        gen = self.last_generation if generation is None else generation
        await self._emit(STATE_CHANGE, gen, ConnectionUpdate(connection="open"))

    async def emit_close(self, status_code=None, generation=None, error="connection closed"):
        gen = self.last_generation if generation is None else generation
        cause = DisconnectInfo(status_code=status_code, error=error)
        await self._emit(STATE_CHANGE, gen, ConnectionUpdate(connection="close", last_disconnect=cause))

    async def emit_qr(self, code, generation=None):
        gen = self.last_generation if generation is None else generation
        await self._emit(STATE_CHANGE, gen, ConnectionUpdate(qr=code))

    async def emit_creds(self, creds, generation=None):
        gen = self.last_generation if generation is None else generation
        await self._emit(CREDS_UPDATED, gen, creds)

    async def emit_batch(self, batch, generation=None):
        gen = self.last_generation if generation is None else generation
        await self._emit(INBOUND_BATCH, gen, batch)


async def wait_for(predicate, timeout: float = 1.0, interval: float = 0.005):
    """Poll predicate until true; fail the test on timeout."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return
        await asyncio.sleep(interval)
    raise AssertionError("condition not met before timeout")


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def store(tmp_path):
    return CredentialStore(str(tmp_path / "auth"))


@pytest.fixture
def manager(transport, store):
    return ConnectionManager(transport, store, reconnect_delay=0.05, connect_retry_delay=0.08)


async def start_ready(manager, transport):
    """Start the manager and drive it to READY."""
    await manager.start()
    await wait_for(lambda: len(transport.opened) == 1)
    await transport.emit_open()
    await wait_for(manager.is_ready)
