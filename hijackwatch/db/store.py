# hijackwatch/db/store.py
from __future__ import annotations
import asyncio, logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple

import aiosqlite
from hijackwatch.models.models import DetectionEvent, EventStatus, Fingerprint
from hijackwatch.utils.helpers import new_id, now

log = logging.getLogger(__name__)

_DEFAULT_DB_PATH = Path("/tmp/hijackwatch.db")

SCHEMA = """
CREATE TABLE IF NOT EXISTS sessions (
  session_id TEXT PRIMARY KEY,            -- Session identifier issued by the auth layer
  user_id TEXT NOT NULL,                  -- Owning user
  session_token TEXT UNIQUE,              -- Opaque cookie value (auth layer)
  expires_at INTEGER NOT NULL,            -- Unix timestamp of expiry
  created_at INTEGER NOT NULL DEFAULT (strftime('%s', 'now'))
);
CREATE INDEX IF NOT EXISTS sessions_user_idx ON sessions (user_id, expires_at);

CREATE TABLE IF NOT EXISTS fingerprints (
  id TEXT PRIMARY KEY,
  session_id TEXT NOT NULL,
  visitor_id TEXT NOT NULL,               -- Stable device id from the capture provider
  request_id TEXT NOT NULL UNIQUE,        -- Capture attempt id (idempotency key)
  ip TEXT,
  user_agent TEXT,
  os TEXT,
  browser TEXT,
  screen_res TEXT,
  timezone TEXT,
  is_original INTEGER NOT NULL DEFAULT 0, -- 1 for the first observation of the session
  created_at INTEGER NOT NULL DEFAULT (strftime('%s', 'now')),
  FOREIGN KEY (session_id) REFERENCES sessions(session_id) ON DELETE CASCADE
);
CREATE INDEX IF NOT EXISTS fingerprints_session_idx ON fingerprints (session_id, created_at);
-- At most one original per session
CREATE UNIQUE INDEX IF NOT EXISTS fingerprints_one_original_idx
  ON fingerprints (session_id) WHERE is_original = 1;

CREATE TABLE IF NOT EXISTS detection_events (
  id TEXT PRIMARY KEY,
  session_id TEXT NOT NULL,
  original_visitor_id TEXT NOT NULL,      -- Snapshot, not a live reference
  original_ip TEXT,
  new_visitor_id TEXT NOT NULL,
  new_ip TEXT,
  similarity_score REAL NOT NULL,
  status TEXT NOT NULL DEFAULT 'PENDING'
        CHECK (status IN ('PENDING', 'FLAGGED', 'CLEAR')),
  confidence_score INTEGER
        CHECK (confidence_score IS NULL OR (confidence_score BETWEEN 0 AND 100)),
  reasoning TEXT,
  model TEXT,
  adjudication_attempts INTEGER NOT NULL DEFAULT 0,
  last_error TEXT,
  created_at INTEGER NOT NULL DEFAULT (strftime('%s', 'now')),
  updated_at INTEGER NOT NULL DEFAULT (strftime('%s', 'now')),
  FOREIGN KEY (session_id) REFERENCES sessions(session_id) ON DELETE CASCADE
);
CREATE INDEX IF NOT EXISTS detection_events_session_idx ON detection_events (session_id, created_at);
"""


def _fingerprint_from_row(row: aiosqlite.Row) -> Fingerprint:
    return Fingerprint(
        id=row["id"],
        session_id=row["session_id"],
        visitor_id=row["visitor_id"],
        request_id=row["request_id"],
        ip=row["ip"],
        user_agent=row["user_agent"],
        os=row["os"],
        browser=row["browser"],
        screen_res=row["screen_res"],
        timezone=row["timezone"],
        is_original=bool(row["is_original"]),
        created_at=row["created_at"],
    )

def _event_from_row(row: aiosqlite.Row) -> DetectionEvent:
    return DetectionEvent(
        id=row["id"],
        session_id=row["session_id"],
        original_visitor_id=row["original_visitor_id"],
        new_visitor_id=row["new_visitor_id"],
        original_ip=row["original_ip"],
        new_ip=row["new_ip"],
        similarity_score=row["similarity_score"],
        status=EventStatus(row["status"]),
        confidence_score=row["confidence_score"],
        reasoning=row["reasoning"],
        model=row["model"],
        adjudication_attempts=row["adjudication_attempts"],
        last_error=row["last_error"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


class Tx:
    """Scoped transaction handle. Only valid inside FingerprintDB.transaction()."""

    def __init__(self, conn: aiosqlite.Connection):
        self._conn = conn

    async def execute(self, sql: str, params: Tuple | Dict | List = ()) -> int:
        cur = await self._conn.execute(sql, params)
        rowcount = cur.rowcount
        await cur.close()
        return rowcount

    async def fetchone(self, sql: str, params: Tuple | Dict = ()) -> Optional[aiosqlite.Row]:
        cur = await self._conn.execute(sql, params)
        row = await cur.fetchone()
        await cur.close()
        return row

    async def fetchall(self, sql: str, params: Tuple | Dict = ()) -> List[aiosqlite.Row]:
        cur = await self._conn.execute(sql, params)
        rows = await cur.fetchall()
        await cur.close()
        return list(rows)


class FingerprintDB:
    def __init__(self, path: Optional[str] = None):
        # Prefer explicit path, else default
        self.path = str(Path(path) if path else _DEFAULT_DB_PATH)
        self._conn: Optional[aiosqlite.Connection] = None
        self._lock = asyncio.Lock()

    async def init(self, path: Optional[str] = None):
        """
        Initialize (or re-initialize) the DB connection.
        If `path` is provided and differs from the current path, the connection is reopened.
        """
        if path:
            new_path = str(Path(path))
            if new_path != self.path:
                # Re-point and reopen if needed
                await self.close()
                self.path = new_path

        if self._conn is None:
            Path(self.path).parent.mkdir(parents=True, exist_ok=True)
            # Autocommit mode: transactions are opened explicitly with BEGIN IMMEDIATE
            self._conn = await aiosqlite.connect(self.path, isolation_level=None)
            self._conn.row_factory = aiosqlite.Row
            self._lock = asyncio.Lock()
            # Pragmas: durability + concurrency
            await self._conn.execute("PRAGMA journal_mode=WAL;")
            await self._conn.execute("PRAGMA foreign_keys=ON;")
            await self._conn.execute("PRAGMA busy_timeout=5000;")
            await self._conn.executescript(SCHEMA)
            log.info("Fingerprint store ready at %s", self.path)

    async def close(self):
        if self._conn:
            await self._conn.close()
            self._conn = None

    # --- low-level helpers -------------------------------------------------

    async def exec(self, sql: str, params: Tuple | Dict | List = ()) -> int:
        if not self._conn:
            await self.init()
        async with self._lock:
            cur = await self._conn.execute(sql, params)
            rowcount = cur.rowcount
            await cur.close()
            return rowcount

    async def fetchone(self, sql: str, params: Tuple | Dict = ()) -> Optional[aiosqlite.Row]:
        if not self._conn:
            await self.init()
        async with self._lock:
            cur = await self._conn.execute(sql, params)
            row = await cur.fetchone()
            await cur.close()
            return row

    async def fetchall(self, sql: str, params: Tuple | Dict = ()) -> List[aiosqlite.Row]:
        if not self._conn:
            await self.init()
        async with self._lock:
            cur = await self._conn.execute(sql, params)
            rows = await cur.fetchall()
            await cur.close()
            return list(rows)

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[Tx]:
        """
        One atomic unit: BEGIN IMMEDIATE takes the write lock up front so concurrent
        writers (other processes included) serialize here. Commits on normal exit,
        rolls back on any exception and re-raises it.
        """
        if not self._conn:
            await self.init()
        async with self._lock:
            await self._conn.execute("BEGIN IMMEDIATE")
            try:
                yield Tx(self._conn)
            except BaseException:
                await self._conn.execute("ROLLBACK")
                raise
            else:
                await self._conn.execute("COMMIT")

    # --- sessions (written by the auth layer and the seed script) ---------

    async def create_session(self, user_id: str, expires_at: int,
                             session_id: Optional[str] = None,
                             session_token: Optional[str] = None) -> str:
        sid = session_id or new_id()
        await self.exec(
            "INSERT INTO sessions (session_id, user_id, session_token, expires_at, created_at) VALUES (?,?,?,?,?)",
            (sid, user_id, session_token or new_id(), expires_at, now()),
        )
        return sid

    async def get_active_session_for_user(self, user_id: str) -> Optional[Dict[str, Any]]:
        """Latest-expiring unexpired session for the user"""
        row = await self.fetchone(
            "SELECT * FROM sessions WHERE user_id=? AND expires_at > ? ORDER BY expires_at DESC LIMIT 1",
            (user_id, now()),
        )
        return dict(row) if row else None

    async def list_sessions_for_user(self, user_id: str) -> List[Dict[str, Any]]:
        rows = await self.fetchall(
            "SELECT * FROM sessions WHERE user_id=? AND expires_at > ? ORDER BY expires_at DESC",
            (user_id, now()),
        )
        return [dict(r) for r in rows]

    # --- fingerprints -------------------------------------------------------

    async def get_fingerprint_by_request_id(self, request_id: str) -> Optional[Fingerprint]:
        row = await self.fetchone("SELECT * FROM fingerprints WHERE request_id=?", (request_id,))
        return _fingerprint_from_row(row) if row else None

    async def insert_fingerprint(self, session_id: str, visitor_id: str, request_id: str,
                                 ip: Optional[str] = None, user_agent: Optional[str] = None,
                                 os: Optional[str] = None, browser: Optional[str] = None,
                                 screen_res: Optional[str] = None,
                                 timezone: Optional[str] = None) -> Fingerprint:
        """
        Persist one observation. The first row for a session becomes the original;
        the existence check and the insert share one transaction.
        Raises aiosqlite.IntegrityError if request_id was already recorded.
        """
        fid = new_id()
        created = now()
        async with self.transaction() as tx:
            existing = await tx.fetchone("SELECT 1 FROM fingerprints WHERE session_id=? LIMIT 1", (session_id,))
            is_original = existing is None
            await tx.execute("""
                INSERT INTO fingerprints (id, session_id, visitor_id, request_id, ip, user_agent,
                                          os, browser, screen_res, timezone, is_original, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (fid, session_id, visitor_id, request_id, ip, user_agent,
                  os, browser, screen_res, timezone, int(is_original), created))
        return Fingerprint(id=fid, session_id=session_id, visitor_id=visitor_id, request_id=request_id,
                           ip=ip, user_agent=user_agent, os=os, browser=browser,
                           screen_res=screen_res, timezone=timezone,
                           is_original=is_original, created_at=created)

    async def get_original_fingerprint(self, session_id: str, tx: Optional[Tx] = None) -> Optional[Fingerprint]:
        sql = "SELECT * FROM fingerprints WHERE session_id=? AND is_original=1 LIMIT 1"
        row = await (tx.fetchone(sql, (session_id,)) if tx else self.fetchone(sql, (session_id,)))
        return _fingerprint_from_row(row) if row else None

    async def list_fingerprints(self, session_id: str) -> List[Fingerprint]:
        """Session history, oldest first"""
        rows = await self.fetchall(
            "SELECT * FROM fingerprints WHERE session_id=? ORDER BY created_at ASC, rowid ASC",
            (session_id,),
        )
        return [_fingerprint_from_row(r) for r in rows]

    # --- detection events -------------------------------------------------

    async def create_detection_event(self, tx: Tx, session_id: str,
                                     original_visitor_id: str, original_ip: Optional[str],
                                     new_visitor_id: str, new_ip: Optional[str],
                                     similarity_score: float) -> str:
        """Insert a PENDING event. Must run inside the caller's transaction."""
        eid = new_id()
        ts = now()
        await tx.execute("""
            INSERT INTO detection_events (id, session_id, original_visitor_id, original_ip,
                                          new_visitor_id, new_ip, similarity_score, status,
                                          created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """, (eid, session_id, original_visitor_id, original_ip, new_visitor_id, new_ip,
              similarity_score, EventStatus.PENDING.value, ts, ts))
        return eid

    async def get_detection_event(self, event_id: str) -> Optional[DetectionEvent]:
        row = await self.fetchone("SELECT * FROM detection_events WHERE id=?", (event_id,))
        return _event_from_row(row) if row else None

    async def get_detection_event_for_user(self, event_id: str, user_id: str) -> Optional[DetectionEvent]:
        row = await self.fetchone("""
            SELECT e.* FROM detection_events e
            JOIN sessions s ON s.session_id = e.session_id
            WHERE e.id=? AND s.user_id=?
        """, (event_id, user_id))
        return _event_from_row(row) if row else None

    async def latest_detection_event(self, session_id: str) -> Optional[DetectionEvent]:
        row = await self.fetchone(
            "SELECT * FROM detection_events WHERE session_id=? ORDER BY created_at DESC, rowid DESC LIMIT 1",
            (session_id,),
        )
        return _event_from_row(row) if row else None

    async def finalize_detection_event(self, event_id: str, confidence_score: int, reasoning: str,
                                       status: EventStatus, model: str) -> bool:
        """
        The single PENDING -> terminal write. Returns False when the event is gone
        or was already terminal, in which case nothing is changed.
        """
        if not status.is_terminal:
            raise ValueError(f"not a terminal status: {status}")
        changed = await self.exec("""
            UPDATE detection_events
               SET confidence_score=?, reasoning=?, status=?, model=?,
                   adjudication_attempts=adjudication_attempts + 1, last_error=NULL, updated_at=?
             WHERE id=? AND status='PENDING'
        """, (confidence_score, reasoning, status.value, model, now(), event_id))
        return changed > 0

    async def record_adjudication_failure(self, event_id: str, error: str) -> None:
        """Bookkeeping for a failed attempt. Status stays PENDING."""
        await self.exec("""
            UPDATE detection_events
               SET adjudication_attempts=adjudication_attempts + 1, last_error=?, updated_at=?
             WHERE id=? AND status='PENDING'
        """, (error[:1000], now(), event_id))


# Export a singleton used by main.py
DB = FingerprintDB()  # re-pointed to the configured path on startup
