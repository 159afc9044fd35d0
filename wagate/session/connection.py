"""Connection manager — owns the WhatsApp session state machine.

States:
    IDLE → CONNECTING → (AWAITING_PAIRING →) READY → CLOSING → IDLE

Every connect attempt gets a new generation number. Transport events carry
the generation of the attempt that produced them; anything from an older
generation is dropped, so a slow attempt can never flip state or be used
for sending after a newer one superseded it.

All mutation of state / generation / handle / cached credentials happens
under a single asyncio.Lock, and every transport callback runs to
completion under that lock.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, Optional

from .credentials import CredentialStore
from .disconnect import DisconnectClass, classify_disconnect
from .errors import (
    ConnectError,
    FatalDisconnect,
    NotConnected,
    PersistenceError,
    RetryableDisconnect,
)
from .transport import (
    CREDS_UPDATED,
    INBOUND_BATCH,
    STATE_CHANGE,
    ConnectionUpdate,
    DisconnectInfo,
    MessagingTransport,
    TransportHandle,
)

logger = logging.getLogger("wagate.connection")

# Constant per path; retries are unbounded.
RECONNECT_DELAY = 3.0        # after the transport reports a close
CONNECT_RETRY_DELAY = 5.0    # after open() itself fails

InboundConsumer = Callable[[list], Awaitable[object]]


class SessionState(str, Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    AWAITING_PAIRING = "awaiting_pairing"
    READY = "ready"
    CLOSING = "closing"


_LIVE_STATES = (SessionState.CONNECTING, SessionState.AWAITING_PAIRING, SessionState.READY)


@dataclass
class PairingChallenge:
    code: str
    issued_at: float


class ConnectionManager:
    """Session lifecycle and reconnect loop for one transport."""

    def __init__(
        self,
        transport: MessagingTransport,
        store: CredentialStore,
        reconnect_delay: float = RECONNECT_DELAY,
        connect_retry_delay: float = CONNECT_RETRY_DELAY,
    ):
        self._transport = transport
        self._store = store
        self.reconnect_delay = reconnect_delay
        self.connect_retry_delay = connect_retry_delay

        self._lock = asyncio.Lock()
        self._state = SessionState.IDLE
        self._generation = 0
        self._handle: Optional[TransportHandle] = None
        self._pairing: Optional[PairingChallenge] = None
        self._credentials: Optional[dict] = None
        self._credentials_loaded = False
        self.last_error: Optional[Exception] = None

        self._running = False
        self._terminated = False
        self._subscribed = False

        self._connect_task: Optional[asyncio.Task] = None
        self._reconnect_task: Optional[asyncio.Task] = None
        self._persist_lock = asyncio.Lock()
        self._persist_tasks: set[asyncio.Task] = set()
        self._inbound_consumer: Optional[InboundConsumer] = None

    # ── Public contract ──────────────────────────────────────

    def current_state(self) -> SessionState:
        return self._state

    def is_ready(self) -> bool:
        return self._state is SessionState.READY and self._handle is not None

    def is_terminated(self) -> bool:
        """True after a fatal disconnect or explicit logout."""
        return self._terminated

    @property
    def generation(self) -> int:
        return self._generation

    def pairing_challenge(self) -> Optional[PairingChallenge]:
        return self._pairing

    def set_inbound_consumer(self, consumer: Optional[InboundConsumer]):
        """Register the callable that receives fresh (non-stale) inbound batches."""
        self._inbound_consumer = consumer

    async def start(self):
        """Start the session. No-op if already running or terminated."""
        async with self._lock:
            if self._running:
                logger.debug("start() called while running — ignoring")
                return
            if self._terminated:
                logger.warning("Session was logged out — restart the process to pair again")
                return
            self._running = True
            if not self._subscribed:
                self._transport.on(STATE_CHANGE, self._on_state_change)
                self._transport.on(CREDS_UPDATED, self._on_creds_updated)
                self._transport.on(INBOUND_BATCH, self._on_inbound_batch)
                self._subscribed = True

        if not self._credentials_loaded:
            self._credentials = await asyncio.to_thread(self._store.load)
            self._credentials_loaded = True

        self._connect_task = asyncio.create_task(self._connect())

    async def stop(self):
        """Stop the session without logging out.

        Cancels the pending reconnect timer and any in-flight connect
        attempt, closes the live handle, and waits for credential writes.
        """
        async with self._lock:
            if not self._running:
                handle = None
                tasks = []
            else:
                self._running = False
                self._generation += 1
                handle = self._handle
                self._handle = None
                self._pairing = None
                if self._state is not SessionState.IDLE:
                    self._set_state(SessionState.CLOSING)
                tasks = [self._reconnect_task, self._connect_task]
                self._reconnect_task = None
                self._connect_task = None

        for task in tasks:
            if task and not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass

        if handle:
            try:
                await self._transport.close(handle)
            except Exception as e:
                logger.warning(f"Error closing WhatsApp connection: {e}")

        async with self._lock:
            self._set_state(SessionState.IDLE)

        await self.flush()
        logger.info("Connection manager stopped.")

    async def logout(self):
        """Explicitly log out: revoke the session and stop reconnecting.

        Raises:
            NotConnected: if there is no live handle to log out from.
        """
        async with self._lock:
            handle = self._handle
            if handle is None:
                raise NotConnected()
            self._generation += 1
            self._handle = None
            self._pairing = None
            self._set_state(SessionState.CLOSING)
            self._terminate(FatalDisconnect("Logged out by request"))

        try:
            await self._transport.logout(handle)
        except Exception as e:
            logger.error(f"Transport logout failed: {e}")
        finally:
            self._track(self._clear_credentials())
            async with self._lock:
                self._set_state(SessionState.IDLE)

        logger.info("WhatsApp disconnected")

    async def live_handle(self) -> Optional[TransportHandle]:
        """Return the current handle iff the session is READY, else None."""
        async with self._lock:
            handle = self._handle
            if (
                self._state is SessionState.READY
                and handle is not None
                and handle.generation == self._generation
            ):
                return handle
            return None

    async def flush(self):
        """Wait for in-flight credential writes to finish."""
        while self._persist_tasks:
            await asyncio.gather(*list(self._persist_tasks), return_exceptions=True)

    # ── Connect / reconnect ──────────────────────────────────

    async def _connect(self):
        """Run one connect attempt under a fresh generation."""
        async with self._lock:
            if not self._running:
                return
            self._generation += 1
            generation = self._generation
            self._handle = None
            self._pairing = None
            self._set_state(SessionState.CONNECTING)
            credentials = self._credentials

        logger.info(f"Connecting to WhatsApp (attempt {generation})...")
        try:
            handle = await self._transport.open(credentials, generation)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            error = ConnectError(f"{type(e).__name__}: {e}")
            logger.error(f"Error trying to connect with WhatsApp: {error}")
            async with self._lock:
                if generation != self._generation or not self._running:
                    return
                self.last_error = error
                self._handle = None
                self._set_state(SessionState.IDLE)
                self._schedule_reconnect(self.connect_retry_delay)
            return

        stale = False
        async with self._lock:
            if generation == self._generation and self._running and self._state in _LIVE_STATES:
                self._handle = handle
            else:
                stale = True

        if stale:
            # Superseded or closed while open() was in flight
            logger.debug(f"Discarding handle from attempt {generation}")
            try:
                await asyncio.shield(self._transport.close(handle))
            except Exception as e:
                logger.debug(f"Closing stale handle failed: {e}")

    def _schedule_reconnect(self, delay: float):
        """Schedule one delayed reconnect. Caller holds the lock."""
        if self._reconnect_task and not self._reconnect_task.done():
            logger.debug("Reconnect already scheduled")
            return
        logger.info(f"Reconnecting in {delay:g}s")
        self._reconnect_task = asyncio.create_task(self._reconnect_after(delay))

    async def _reconnect_after(self, delay: float):
        try:
            await asyncio.sleep(delay)
        except asyncio.CancelledError:
            return

        async with self._lock:
            if self._reconnect_task is asyncio.current_task():
                self._reconnect_task = None
            if not self._running:
                return
            previous = self._connect_task

        # At most one attempt in flight: a superseded open() is abandoned
        if previous and not previous.done():
            logger.debug("Cancelling superseded connect attempt")
            previous.cancel()
            try:
                await previous
            except asyncio.CancelledError:
                pass

        async with self._lock:
            if not self._running or self._connect_task is not previous:
                return
            self._connect_task = asyncio.create_task(self._connect())

    def _terminate(self, error: Exception):
        """Enter the terminal state. Caller holds the lock."""
        self.last_error = error
        self._terminated = True
        self._running = False
        if self._reconnect_task and not self._reconnect_task.done():
            self._reconnect_task.cancel()
        self._reconnect_task = None
        connect_task = self._connect_task
        if connect_task and not connect_task.done() and connect_task is not asyncio.current_task():
            connect_task.cancel()
        self._connect_task = None

    # ── Transport events ─────────────────────────────────────

    def _is_current_generation(self, generation: int) -> bool:
        return self._running and generation == self._generation

    async def _on_state_change(self, generation: int, update: ConnectionUpdate):
        async with self._lock:
            if not self._is_current_generation(generation):
                logger.debug(f"Ignoring state change from stale attempt {generation}")
                return

            if update.qr:
                self._pairing = PairingChallenge(code=update.qr, issued_at=time.time())
                if self._state in (SessionState.CONNECTING, SessionState.AWAITING_PAIRING):
                    self._set_state(SessionState.AWAITING_PAIRING)
                logger.info("Generated QRCode — scan it with WhatsApp to link this device")
                logger.info(f"QR String: {update.qr}")

            if update.connection == "open":
                if self._state in (SessionState.CONNECTING, SessionState.AWAITING_PAIRING):
                    self._pairing = None
                    self.last_error = None
                    self._set_state(SessionState.READY)
                    logger.info("Opened connection")
            elif update.connection == "close":
                self._handle_close(update.last_disconnect)
            elif update.connection == "connecting":
                logger.info("Connecting to WhatsApp, wait...")

    def _handle_close(self, cause: Optional[DisconnectInfo]):
        """Tear down the current session and decide what happens next. Caller holds the lock."""
        if self._state not in _LIVE_STATES:
            logger.debug(f"Duplicate close in state {self._state.value} — ignoring")
            return

        self._set_state(SessionState.CLOSING)
        self._handle = None
        self._pairing = None

        verdict = classify_disconnect(cause)
        reconnect = verdict is DisconnectClass.RETRYABLE
        logger.warning(f"Connection closed due to: {cause or 'unknown cause'}, reconnecting: {reconnect}")

        self._set_state(SessionState.IDLE)
        if reconnect:
            self.last_error = RetryableDisconnect(str(cause or "connection closed"))
            self._schedule_reconnect(self.reconnect_delay)
        else:
            self._terminate(FatalDisconnect(str(cause or "logged out")))
            self._track(self._clear_credentials())
            logger.critical(
                "WhatsApp session was logged out remotely. Automatic reconnect is "
                "disabled; restart the gateway to pair again."
            )

    async def _on_creds_updated(self, generation: int, credentials: dict):
        async with self._lock:
            if not self._is_current_generation(generation):
                logger.debug(f"Ignoring credential update from stale attempt {generation}")
                return
            if not isinstance(credentials, dict):
                logger.warning(f"Ignoring credential update of type {type(credentials).__name__}")
                return
            self._credentials = credentials
            self._track(self._save_credentials())

    async def _on_inbound_batch(self, generation: int, batch: list):
        async with self._lock:
            current = self._is_current_generation(generation)
        if not current:
            logger.debug(f"Ignoring inbound batch from stale attempt {generation}")
            return
        if self._inbound_consumer is not None:
            await self._inbound_consumer(batch)

    # ── Credentials ──────────────────────────────────────────

    def _track(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._persist_tasks.add(task)
        task.add_done_callback(self._persist_tasks.discard)
        return task

    async def _save_credentials(self):
        # Writes are serialized and always persist the newest cached value
        async with self._persist_lock:
            credentials = self._credentials
            if credentials is None:
                return
            try:
                await asyncio.to_thread(self._store.save, credentials)
            except PersistenceError as e:
                logger.error(f"{e} — keeping in-memory credentials for this session")

    async def _clear_credentials(self):
        async with self._persist_lock:
            self._credentials = None
            try:
                await asyncio.to_thread(self._store.clear)
            except PersistenceError as e:
                logger.error(str(e))

    # ── Internal ─────────────────────────────────────────────

    def _set_state(self, state: SessionState):
        if state is not self._state:
            logger.debug(f"Session state {self._state.value} → {state.value}")
        self._state = state
