"""wacli transport — drives the `wacli` binary as a subprocess.

wacli keeps the WhatsApp WebSocket alive with `wacli sync --follow` and
writes every message into a local SQLite store. This transport:

- pairs with `wacli auth` when the store has no session yet
- runs `wacli sync --follow` and reports its exit as a close event
- polls the SQLite store for new rows and emits them as inbound batches
- sends with `wacli send text`

`wacli sync --follow` holds an exclusive lock on the store, so sending
pauses sync, sends, then resumes it.

Requires: wacli binary (`go install github.com/steipete/wacli@latest`).
"""

import asyncio
import logging
import os
import sqlite3
import time
from dataclasses import dataclass, field
from typing import Optional

from ..session.disconnect import DisconnectReason
from ..session.transport import (
    CREDS_UPDATED,
    INBOUND_BATCH,
    STATE_CHANGE,
    ConnectionUpdate,
    DisconnectInfo,
    MessagingTransport,
    TransportHandle,
)

logger = logging.getLogger("wagate.wacli")

_SETTLE_TIME = 2.0       # sync must stay up this long before we call it open
_AUTH_TIMEOUT = 300      # 5 minutes to scan the QR code
_SEND_TIMEOUT = 30
_QR_CHARS = set("█▀▄▌▐ ")

_LOGGED_OUT_MARKERS = ("logged out", "logout", "not logged in", "401")


@dataclass
class _SyncSession:
    """Per-handle process state."""
    credentials: Optional[dict] = None
    process: Optional[asyncio.subprocess.Process] = None
    monitor_task: Optional[asyncio.Task] = None
    poll_task: Optional[asyncio.Task] = None
    announce_task: Optional[asyncio.Task] = None
    last_rowid: int = 0
    closing: bool = False
    stderr_tail: list = field(default_factory=list)


def disconnect_from_exit(returncode: Optional[int], stderr: str) -> DisconnectInfo:
    """Derive a disconnect cause from a wacli exit."""
    text = (stderr or "").strip()
    lowered = text.lower()
    if any(marker in lowered for marker in _LOGGED_OUT_MARKERS):
        return DisconnectInfo(status_code=int(DisconnectReason.LOGGED_OUT), error=text[-200:] or "logged out")
    detail = text[-200:] if text else f"wacli exited with code {returncode}"
    return DisconnectInfo(status_code=int(DisconnectReason.CONNECTION_CLOSED), error=detail)


def row_to_record(row: dict) -> dict:
    """Shape a wacli messages row like a network message record."""
    return {
        "key": {
            "remoteJid": row.get("chat_jid") or "",
            "fromMe": bool(row.get("from_me")),
            "id": row.get("msg_id"),
        },
        "pushName": row.get("sender_name") or "",
        "message": {"conversation": row.get("text") or ""},
    }


def is_qr_line(line: str) -> bool:
    stripped = line.rstrip("\n")
    return bool(stripped.strip()) and set(stripped) <= _QR_CHARS


class WacliTransport(MessagingTransport):
    """MessagingTransport backed by the wacli CLI."""

    def __init__(
        self,
        wacli_path: str = "wacli",
        store_dir: str = "~/.wacli",
        poll_interval: float = 2.0,
        settle_time: float = _SETTLE_TIME,
    ):
        super().__init__()
        self._wacli_path = wacli_path
        self._store_dir = os.path.expanduser(store_dir)
        self._poll_interval = poll_interval
        self._settle_time = settle_time
        self._send_lock = asyncio.Lock()

    # ── Paths ─────────────────────────────────────────────────

    @property
    def db_path(self) -> str:
        return os.path.join(self._store_dir, "wacli.db")

    @property
    def session_db_path(self) -> str:
        return os.path.join(self._store_dir, "session.db")

    def is_paired(self) -> bool:
        return os.path.isfile(self.session_db_path)

    # ── MessagingTransport ────────────────────────────────────

    async def open(self, credentials: Optional[dict], generation: int) -> TransportHandle:
        session = _SyncSession(credentials=credentials)
        handle = TransportHandle(generation=generation, session=session)

        await self._emit(STATE_CHANGE, generation, ConnectionUpdate(connection="connecting"))

        try:
            if not self.is_paired():
                await self._pair(handle)
            ok = await self._start_sync(handle)
        except asyncio.CancelledError:
            await self.close(handle)
            raise
        if not ok:
            raise RuntimeError("Failed to start wacli sync")

        session.announce_task = asyncio.create_task(self._announce_open(handle))
        return handle

    async def send(self, handle: TransportHandle, address: str, text: str) -> None:
        session: _SyncSession = handle.session
        if handle.closed or session.closing:
            raise RuntimeError("Connection handle is closed")

        async with self._send_lock:
            was_syncing = session.process is not None
            if was_syncing:
                await self._stop_sync(session)
            try:
                await self._wacli_send_text(address, text)
            finally:
                if was_syncing and not session.closing:
                    ok = await self._start_sync(handle)
                    if not ok:
                        logger.error("Failed to restart wacli sync after sending message")
                        await self._report_close(
                            handle,
                            DisconnectInfo(int(DisconnectReason.CONNECTION_CLOSED), "wacli sync did not restart"),
                        )

    async def close(self, handle: TransportHandle) -> None:
        session: _SyncSession = handle.session
        session.closing = True
        handle.closed = True
        for task in (session.announce_task, session.poll_task):
            if task and not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        session.announce_task = None
        session.poll_task = None
        await self._stop_sync(session)

    async def logout(self, handle: TransportHandle) -> None:
        await self.close(handle)
        rc, _, stderr = await self._run("logout", timeout=_SEND_TIMEOUT)
        if rc != 0:
            raise RuntimeError(f"wacli logout failed (rc={rc}): {stderr[:200]}")
        logger.info("wacli session logged out")

    # ── Pairing ───────────────────────────────────────────────

    async def _pair(self, handle: TransportHandle):
        """Run `wacli auth`, surfacing each QR block as a pairing challenge."""
        generation = handle.generation
        proc = await asyncio.create_subprocess_exec(
            self._wacli_path, "auth",
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )

        async def _read_qr():
            block: list[str] = []
            async for raw in proc.stdout:
                line = raw.decode("utf-8", errors="replace").rstrip("\n")
                if is_qr_line(line):
                    block.append(line)
                    continue
                if block:
                    await self._emit(STATE_CHANGE, generation, ConnectionUpdate(qr="\n".join(block)))
                    block = []
            if block:
                await self._emit(STATE_CHANGE, generation, ConnectionUpdate(qr="\n".join(block)))

        try:
            await asyncio.wait_for(_read_qr(), timeout=_AUTH_TIMEOUT)
            stderr = await proc.stderr.read()
            await asyncio.wait_for(proc.wait(), timeout=10)
        except (asyncio.TimeoutError, asyncio.CancelledError):
            try:
                proc.kill()
            except ProcessLookupError:
                pass
            raise

        if proc.returncode != 0:
            err = stderr.decode("utf-8", errors="replace") if stderr else ""
            raise RuntimeError(f"wacli auth failed (rc={proc.returncode}): {err[:200]}")

        logger.info("wacli paired successfully")
        await self._emit(CREDS_UPDATED, generation, self._descriptor())

    def _descriptor(self) -> dict:
        return {
            "transport": "wacli",
            "store_dir": self._store_dir,
            "paired_at": time.time(),
        }

    async def _announce_open(self, handle: TransportHandle):
        """Report open once sync has survived the settle interval."""
        try:
            await asyncio.sleep(self._settle_time)
        except asyncio.CancelledError:
            return
        session: _SyncSession = handle.session
        if session.closing or session.process is None or session.process.returncode is not None:
            return

        await self._emit(STATE_CHANGE, handle.generation, ConnectionUpdate(connection="open"))
        if not session.credentials:
            await self._emit(CREDS_UPDATED, handle.generation, self._descriptor())

        if os.path.isfile(self.db_path):
            session.poll_task = asyncio.create_task(self._poll_loop(handle))
        else:
            logger.error(f"wacli database not found at {self.db_path} — inbound messages will not work")

    # ── Sync process ──────────────────────────────────────────

    async def _start_sync(self, handle: TransportHandle) -> bool:
        """Start the long-running `wacli sync --follow` process."""
        session: _SyncSession = handle.session
        await self._stop_sync(session)

        try:
            session.process = await asyncio.create_subprocess_exec(
                self._wacli_path, "sync", "--follow",
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.PIPE,
            )
        except Exception as e:
            logger.error(f"Failed to start wacli sync: {e}")
            session.process = None
            return False

        session.monitor_task = asyncio.create_task(self._monitor_loop(handle, session.process))
        return True

    async def _stop_sync(self, session: _SyncSession):
        """Stop the sync process (if any) without reporting a close."""
        # Stop monitor task first so the exit isn't reported.
        if session.monitor_task and not session.monitor_task.done():
            session.monitor_task.cancel()
            try:
                await session.monitor_task
            except asyncio.CancelledError:
                pass
        session.monitor_task = None

        if session.process:
            try:
                session.process.terminate()
                await asyncio.wait_for(session.process.wait(), timeout=5)
            except (asyncio.TimeoutError, ProcessLookupError):
                try:
                    session.process.kill()
                except ProcessLookupError:
                    pass
            session.process = None

    async def _monitor_loop(self, handle: TransportHandle, process: asyncio.subprocess.Process):
        """Watch the sync process. Its exit ends the session."""
        try:
            _, stderr = await process.communicate()
        except asyncio.CancelledError:
            return

        session: _SyncSession = handle.session
        if session.closing or session.process is not process:
            return
        session.process = None
        session.monitor_task = None

        err = stderr.decode("utf-8", errors="replace") if stderr else ""
        cause = disconnect_from_exit(process.returncode, err)
        logger.warning(f"wacli sync ended (rc={process.returncode}): {cause}")
        await self._report_close(handle, cause)

    async def _report_close(self, handle: TransportHandle, cause: DisconnectInfo):
        session: _SyncSession = handle.session
        if session.closing:
            return
        session.closing = True
        handle.closed = True
        if session.poll_task and not session.poll_task.done():
            session.poll_task.cancel()
        await self._stop_sync(session)
        await self._emit(STATE_CHANGE, handle.generation, ConnectionUpdate(connection="close", last_disconnect=cause))

    # ── Inbound poller ────────────────────────────────────────

    def _max_rowid(self) -> int:
        conn = sqlite3.connect(self.db_path, timeout=5)
        try:
            cur = conn.execute("SELECT MAX(rowid) FROM messages")
            return cur.fetchone()[0] or 0
        finally:
            conn.close()

    def _fetch_rows(self, after_rowid: int) -> list[dict]:
        conn = sqlite3.connect(self.db_path, timeout=5)
        conn.row_factory = sqlite3.Row
        try:
            cur = conn.execute("""
                SELECT rowid, chat_jid, sender_jid, sender_name, text, from_me, msg_id
                FROM messages
                WHERE rowid > ?
                  AND text IS NOT NULL AND text != ''
                ORDER BY rowid ASC
            """, (after_rowid,))
            return [dict(row) for row in cur.fetchall()]
        finally:
            conn.close()

    async def _poll_loop(self, handle: TransportHandle):
        """Poll wacli's SQLite store for new messages.

        SQLite reads are safe while wacli sync writes (WAL mode).
        """
        session: _SyncSession = handle.session

        # Seed to current max so only NEW messages are delivered
        try:
            session.last_rowid = await asyncio.to_thread(self._max_rowid)
            logger.info(f"WhatsApp poller started (last_rowid={session.last_rowid}, db={self.db_path})")
        except sqlite3.Error as e:
            logger.error(f"Failed to read wacli DB: {e}")
            return

        while not session.closing:
            try:
                await asyncio.sleep(self._poll_interval)
                if session.closing:
                    break
                # Sends pause sync; skip polls while a send holds the store
                if self._send_lock.locked():
                    continue

                rows = await asyncio.to_thread(self._fetch_rows, session.last_rowid)
                if not rows:
                    continue

                logger.debug(f"poll: {len(rows)} new row(s) after rowid {session.last_rowid}")
                session.last_rowid = rows[-1]["rowid"]
                await self._emit(INBOUND_BATCH, handle.generation, [row_to_record(r) for r in rows])

            except asyncio.CancelledError:
                break
            except sqlite3.Error as e:
                logger.error(f"Error in WhatsApp poll loop: {e}", exc_info=True)
                await asyncio.sleep(5)

    # ── Commands ──────────────────────────────────────────────

    async def _wacli_send_text(self, jid: str, text: str):
        """Low-level: send a single text. Caller must hold _send_lock."""
        rc, _, stderr = await self._run("send", "text", "--to", jid, "--message", text, timeout=_SEND_TIMEOUT)
        if rc != 0:
            raise RuntimeError(f"wacli send text failed (rc={rc}): {stderr[:200]}")

    async def _run(self, *args: str, timeout: float) -> tuple[int, str, str]:
        proc = await asyncio.create_subprocess_exec(
            self._wacli_path, *args,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
        except asyncio.TimeoutError:
            try:
                proc.kill()
            except ProcessLookupError:
                pass
            raise
        return (
            proc.returncode,
            stdout.decode("utf-8", errors="replace") if stdout else "",
            stderr.decode("utf-8", errors="replace") if stderr else "",
        )
