"""Tests for the ConnectionManager state machine."""

import asyncio

import pytest

from conftest import start_ready, wait_for
from wagate.session.connection import ConnectionManager, SessionState
from wagate.session.disconnect import DisconnectReason
from wagate.session.errors import ConnectError, FatalDisconnect, NotConnected, RetryableDisconnect


# ── Startup ──────────────────────────────────────────────

class TestStart:
    @pytest.mark.asyncio
    async def test_start_enters_connecting(self, manager, transport):
        assert manager.current_state() is SessionState.IDLE
        await manager.start()
        await wait_for(lambda: len(transport.opened) == 1)

        assert manager.current_state() is SessionState.CONNECTING
        assert manager.is_ready() is False
        assert transport.open_credentials == [None]
        await manager.stop()

    @pytest.mark.asyncio
    async def test_start_is_idempotent(self, manager, transport):
        await manager.start()
        await manager.start()
        await wait_for(lambda: len(transport.opened) == 1)
        await asyncio.sleep(0.02)

        assert len(transport.opened) == 1
        await manager.stop()

    @pytest.mark.asyncio
    async def test_stored_credentials_are_reused(self, transport, store):
        store.save({"me": "5511999999999", "key": "abc"})
        manager = ConnectionManager(transport, store, reconnect_delay=0.05)

        await manager.start()
        await wait_for(lambda: len(transport.opened) == 1)

        assert transport.open_credentials == [{"me": "5511999999999", "key": "abc"}]
        await manager.stop()

    @pytest.mark.asyncio
    async def test_open_event_makes_ready(self, manager, transport):
        await start_ready(manager, transport)

        assert manager.current_state() is SessionState.READY
        assert manager.is_ready() is True
        assert manager.last_error is None
        await manager.stop()

    @pytest.mark.asyncio
    async def test_open_emitted_before_open_returns(self, manager, transport):
        """Transport may report 'open' while open() is still in flight."""
        transport.emit_open_during_open = True
        await manager.start()
        await wait_for(manager.is_ready)

        handle = await manager.live_handle()
        assert handle is transport.opened[0]
        await manager.stop()


# ── Pairing ──────────────────────────────────────────────

class TestPairing:
    @pytest.mark.asyncio
    async def test_qr_enters_awaiting_pairing(self, manager, transport):
        await manager.start()
        await wait_for(lambda: len(transport.opened) == 1)

        await transport.emit_qr("2@abc,def")
        assert manager.current_state() is SessionState.AWAITING_PAIRING
        assert manager.pairing_challenge().code == "2@abc,def"
        assert manager.is_ready() is False

        # A new challenge replaces the old one
        await transport.emit_qr("2@ghi,jkl")
        assert manager.pairing_challenge().code == "2@ghi,jkl"

        await transport.emit_open()
        await wait_for(manager.is_ready)
        assert manager.pairing_challenge() is None
        await manager.stop()

    @pytest.mark.asyncio
    async def test_close_clears_challenge(self, manager, transport):
        await manager.start()
        await wait_for(lambda: len(transport.opened) == 1)
        await transport.emit_qr("2@abc")

        await transport.emit_close(int(DisconnectReason.TIMED_OUT))
        assert manager.pairing_challenge() is None
        await manager.stop()


# ── Disconnects ──────────────────────────────────────────

class TestRetryableDisconnect:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("status_code", [
        int(DisconnectReason.CONNECTION_CLOSED),
        int(DisconnectReason.CONNECTION_LOST),
        int(DisconnectReason.CONNECTION_REPLACED),
        int(DisconnectReason.BAD_SESSION),
        int(DisconnectReason.RESTART_REQUIRED),
        None,
    ])
    async def test_close_reconnects_after_delay(self, manager, transport, status_code):
        await start_ready(manager, transport)

        await transport.emit_close(status_code)

        # Immediately after the close: not ready, no new attempt yet
        assert manager.current_state() is SessionState.IDLE
        assert manager.is_ready() is False
        assert len(transport.opened) == 1
        assert isinstance(manager.last_error, RetryableDisconnect)

        await wait_for(lambda: len(transport.opened) == 2)
        assert manager.current_state() is SessionState.CONNECTING
        assert transport.opened[1].generation > transport.opened[0].generation
        await manager.stop()

    @pytest.mark.asyncio
    async def test_reconnect_waits_for_delay(self, transport, store):
        manager = ConnectionManager(transport, store, reconnect_delay=0.2, connect_retry_delay=0.01)
        await start_ready(manager, transport)

        await transport.emit_close(int(DisconnectReason.CONNECTION_LOST))
        await asyncio.sleep(0.1)
        assert len(transport.opened) == 1

        await wait_for(lambda: len(transport.opened) == 2)
        await manager.stop()

    @pytest.mark.asyncio
    async def test_repeated_closes_keep_reconnecting(self, manager, transport):
        await start_ready(manager, transport)

        for attempt in range(2, 5):
            await transport.emit_close(int(DisconnectReason.CONNECTION_LOST))
            await wait_for(lambda: len(transport.opened) == attempt)
            await transport.emit_open()
            await wait_for(manager.is_ready)

        assert manager.generation == transport.last_generation
        await manager.stop()

    @pytest.mark.asyncio
    async def test_duplicate_close_schedules_one_reconnect(self, manager, transport):
        await start_ready(manager, transport)

        await transport.emit_close(int(DisconnectReason.CONNECTION_LOST))
        await transport.emit_close(int(DisconnectReason.CONNECTION_LOST))
        await wait_for(lambda: len(transport.opened) == 2)
        await asyncio.sleep(0.15)

        assert len(transport.opened) == 2
        await manager.stop()

    @pytest.mark.asyncio
    async def test_close_during_pairing(self, manager, transport):
        await manager.start()
        await wait_for(lambda: len(transport.opened) == 1)
        await transport.emit_qr("2@abc")

        await transport.emit_close(int(DisconnectReason.TIMED_OUT))
        await wait_for(lambda: len(transport.opened) == 2)
        await manager.stop()

    @pytest.mark.asyncio
    async def test_close_during_open_cancels_that_attempt(self, manager, transport):
        transport.block_open.add(1)
        await manager.start()
        await wait_for(lambda: 1 in transport.opening)

        await transport.emit_close(int(DisconnectReason.CONNECTION_CLOSED), generation=1)
        await wait_for(lambda: len(transport.opened) == 1)

        assert transport.cancelled_opens == [1]
        assert transport.opening == set()
        assert transport.opened[0].generation == 2

        await manager.stop()
        assert transport.opening == set()

    @pytest.mark.asyncio
    async def test_stop_cancels_blocked_open(self, manager, transport):
        transport.block_open.add(1)
        await manager.start()
        await wait_for(lambda: 1 in transport.opening)

        await manager.stop()

        assert transport.cancelled_opens == [1]
        assert transport.opening == set()
        assert manager.current_state() is SessionState.IDLE

    @pytest.mark.asyncio
    async def test_fatal_close_during_open_cancels_attempt(self, manager, transport):
        transport.block_open.add(1)
        await manager.start()
        await wait_for(lambda: 1 in transport.opening)

        await transport.emit_close(int(DisconnectReason.LOGGED_OUT), generation=1)
        await wait_for(lambda: transport.cancelled_opens == [1])

        assert manager.is_terminated() is True
        assert transport.opening == set()
        await manager.stop()


class TestFatalDisconnect:
    @pytest.mark.asyncio
    async def test_logged_out_is_terminal(self, manager, transport, store):
        store.save({"me": "x"})
        await start_ready(manager, transport)

        await transport.emit_close(int(DisconnectReason.LOGGED_OUT), error="Logged out")
        await manager.flush()

        assert manager.is_terminated() is True
        assert manager.is_ready() is False
        assert manager.current_state() is SessionState.IDLE
        assert isinstance(manager.last_error, FatalDisconnect)

        # No automatic reconnect, ever
        await asyncio.sleep(0.2)
        assert len(transport.opened) == 1

        # Revoked credentials are not reused on the next process start
        assert store.load() is None

    @pytest.mark.asyncio
    async def test_start_after_fatal_is_noop(self, manager, transport):
        await start_ready(manager, transport)
        await transport.emit_close(int(DisconnectReason.LOGGED_OUT))

        await manager.start()
        await asyncio.sleep(0.1)
        assert len(transport.opened) == 1
        assert manager.is_ready() is False


class TestConnectFailure:
    @pytest.mark.asyncio
    async def test_open_failure_retries_with_setup_delay(self, transport, store):
        manager = ConnectionManager(transport, store, reconnect_delay=10.0, connect_retry_delay=0.05)
        transport.open_errors.append(OSError("network unreachable"))

        await manager.start()
        await wait_for(lambda: isinstance(manager.last_error, ConnectError))
        assert manager.current_state() is SessionState.IDLE

        await wait_for(lambda: len(transport.opened) == 1)
        assert len(transport.open_credentials) == 2
        assert manager.current_state() is SessionState.CONNECTING
        await manager.stop()


# ── Generations ──────────────────────────────────────────

class TestStaleGenerations:
    @pytest.mark.asyncio
    async def test_events_from_old_attempt_are_ignored(self, manager, transport):
        await start_ready(manager, transport)
        old_generation = transport.last_generation

        await transport.emit_close(int(DisconnectReason.CONNECTION_LOST))
        await wait_for(lambda: len(transport.opened) == 2)

        # Late events from the superseded attempt
        await transport.emit_open(generation=old_generation)
        assert manager.current_state() is SessionState.CONNECTING
        assert manager.is_ready() is False

        await transport.emit_close(int(DisconnectReason.LOGGED_OUT), generation=old_generation)
        assert manager.is_terminated() is False

        await transport.emit_open()
        await wait_for(manager.is_ready)
        handle = await manager.live_handle()
        assert handle.generation == transport.last_generation
        await manager.stop()

    @pytest.mark.asyncio
    async def test_stale_creds_update_not_saved(self, manager, transport, store):
        await start_ready(manager, transport)
        old_generation = transport.last_generation
        await transport.emit_close(int(DisconnectReason.CONNECTION_LOST))
        await wait_for(lambda: len(transport.opened) == 2)

        await transport.emit_creds({"stale": True}, generation=old_generation)
        await manager.flush()
        assert store.load() is None
        await manager.stop()

    @pytest.mark.asyncio
    async def test_live_handle_none_after_close(self, manager, transport):
        await start_ready(manager, transport)
        handle = await manager.live_handle()
        assert handle is not None

        await transport.emit_close(int(DisconnectReason.CONNECTION_LOST))
        assert await manager.live_handle() is None
        await manager.stop()


# ── Credentials ──────────────────────────────────────────

class TestCredentialUpdates:
    @pytest.mark.asyncio
    async def test_creds_update_is_persisted(self, manager, transport, store):
        await manager.start()
        await wait_for(lambda: len(transport.opened) == 1)

        await transport.emit_creds({"noise_key": "n1"})
        await transport.emit_creds({"noise_key": "n2"})
        await manager.flush()

        assert store.load() == {"noise_key": "n2"}
        await manager.stop()

    @pytest.mark.asyncio
    async def test_stop_waits_for_pending_save(self, manager, transport, store):
        await manager.start()
        await wait_for(lambda: len(transport.opened) == 1)

        await transport.emit_creds({"noise_key": "final"})
        await manager.stop()

        assert store.load() == {"noise_key": "final"}

    @pytest.mark.asyncio
    async def test_save_failure_keeps_session(self, manager, transport, store, monkeypatch):
        from wagate.session.errors import PersistenceError

        def _boom(creds):
            raise PersistenceError("disk full")

        monkeypatch.setattr(store, "save", _boom)
        await start_ready(manager, transport)

        await transport.emit_creds({"noise_key": "n1"})
        await manager.flush()

        assert manager.is_ready() is True
        await manager.stop()


# ── Inbound forwarding ───────────────────────────────────

class TestInboundForwarding:
    @pytest.mark.asyncio
    async def test_batches_forwarded_in_order(self, manager, transport):
        received = []

        async def consumer(batch):
            received.append(batch)

        manager.set_inbound_consumer(consumer)
        await start_ready(manager, transport)

        await transport.emit_batch([{"n": 1}, {"n": 2}])
        await transport.emit_batch([{"n": 3}])

        assert received == [[{"n": 1}, {"n": 2}], [{"n": 3}]]
        await manager.stop()

    @pytest.mark.asyncio
    async def test_stale_batch_dropped(self, manager, transport):
        received = []

        async def consumer(batch):
            received.append(batch)

        manager.set_inbound_consumer(consumer)
        await start_ready(manager, transport)
        old_generation = transport.last_generation
        await transport.emit_close(int(DisconnectReason.CONNECTION_LOST))
        await wait_for(lambda: len(transport.opened) == 2)

        await transport.emit_batch([{"n": 1}], generation=old_generation)
        assert received == []
        await manager.stop()


# ── Shutdown / logout ────────────────────────────────────

class TestShutdown:
    @pytest.mark.asyncio
    async def test_stop_closes_handle_without_logout(self, manager, transport):
        await start_ready(manager, transport)

        await manager.stop()

        assert transport.closed == [transport.opened[0]]
        assert transport.logged_out == []
        assert manager.current_state() is SessionState.IDLE
        assert manager.is_terminated() is False

    @pytest.mark.asyncio
    async def test_stop_cancels_pending_reconnect(self, transport, store):
        manager = ConnectionManager(transport, store, reconnect_delay=0.1)
        await start_ready(manager, transport)
        await transport.emit_close(int(DisconnectReason.CONNECTION_LOST))

        await manager.stop()
        await asyncio.sleep(0.2)

        assert len(transport.opened) == 1
        assert manager.current_state() is SessionState.IDLE

    @pytest.mark.asyncio
    async def test_close_event_after_stop_ignored(self, manager, transport):
        await start_ready(manager, transport)
        generation = transport.last_generation
        await manager.stop()

        await transport.emit_close(int(DisconnectReason.LOGGED_OUT), generation=generation)
        assert manager.is_terminated() is False

    @pytest.mark.asyncio
    async def test_restart_after_stop(self, manager, transport):
        await start_ready(manager, transport)
        await manager.stop()

        await manager.start()
        await wait_for(lambda: len(transport.opened) == 2)
        await manager.stop()


class TestLogout:
    @pytest.mark.asyncio
    async def test_logout_is_terminal(self, manager, transport, store):
        store.save({"me": "x"})
        await start_ready(manager, transport)

        await manager.logout()
        await manager.flush()

        assert transport.logged_out == [transport.opened[0]]
        assert manager.is_terminated() is True
        assert manager.is_ready() is False
        assert store.load() is None

        await asyncio.sleep(0.15)
        assert len(transport.opened) == 1

    @pytest.mark.asyncio
    async def test_logout_without_session(self, manager):
        with pytest.raises(NotConnected):
            await manager.logout()
