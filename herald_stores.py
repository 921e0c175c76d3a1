"""
herald_stores.py — State behind the OAuth flow.

  PendingAuthorizationCache — in-memory, keyed by ``state``. Holds the PKCE
      challenge between /auth/login and /auth/callback. Process-local, so a
      multi-instance deployment needs sticky routing (or to move this into the
      grant store).
  GrantStore — authorization codes and refresh tokens. Every flag flip
      (``used``, ``revoked``) is a compare-and-set so a code is spent once and a
      refresh token rotates once, even under concurrent requests.

Two GrantStore backends: MemoryGrantStore (single process) and
SqliteGrantStore (a file that several worker processes can share).
"""

import asyncio
import logging
import sqlite3
import time
from contextlib import contextmanager
from dataclasses import dataclass, replace
from typing import Iterator, Protocol

from herald_errors import StoreError

logger = logging.getLogger("herald-stores")


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------

@dataclass
class PendingAuthorization:
    state: str
    code_challenge: str
    challenge_method: str
    redirect_uri: str
    scope: str
    client_id: str | None
    created_at: float


@dataclass
class AuthorizationCode:
    code: str
    principal_id: str
    code_challenge: str
    challenge_method: str
    redirect_uri: str
    scope: str
    client_id: str | None
    expires_at: float
    used: bool = False


@dataclass
class RefreshToken:
    token: str
    principal_id: str
    scope: str
    client_id: str | None
    expires_at: float
    revoked: bool = False
    previous_token: str | None = None


# ---------------------------------------------------------------------------
# PKCE challenge cache
# ---------------------------------------------------------------------------

class PendingAuthorizationCache:
    """In-flight consent requests, single use, expired at read time."""

    def __init__(self, ttl: int):
        self.ttl = ttl
        self._entries: dict[str, PendingAuthorization] = {}
        self._lock = asyncio.Lock()

    def __len__(self) -> int:
        return len(self._entries)

    def _expired(self, pending: PendingAuthorization, now: float) -> bool:
        return now - pending.created_at > self.ttl

    async def put(self, pending: PendingAuthorization) -> bool:
        """Store a pending authorization. False if its state is already in flight."""
        async with self._lock:
            existing = self._entries.get(pending.state)
            if existing is not None and not self._expired(existing, time.time()):
                return False
            self._entries[pending.state] = pending
            return True

    async def take(self, state: str, now: float | None = None) -> PendingAuthorization | None:
        now = time.time() if now is None else now
        async with self._lock:
            pending = self._entries.pop(state, None)
        if pending is None or self._expired(pending, now):
            return None
        return pending

    async def sweep(self, now: float | None = None) -> int:
        """Drop expired entries.

        The candidate list is fixed before anything is deleted, and an entry
        is only removed if it is still the same object, so a state inserted
        while the sweep runs is never touched.
        """
        started = time.time() if now is None else now
        candidates = [
            (state, pending) for state, pending in list(self._entries.items())
            if pending.created_at <= started and self._expired(pending, started)
        ]
        removed = 0
        async with self._lock:
            for state, pending in candidates:
                if self._entries.get(state) is pending:
                    del self._entries[state]
                    removed += 1
        return removed


# ---------------------------------------------------------------------------
# Grant stores
# ---------------------------------------------------------------------------

class GrantStore(Protocol):
    async def save_code(self, code: AuthorizationCode) -> None: ...

    async def get_code(self, code: str) -> AuthorizationCode | None: ...

    async def consume_code(self, code: str) -> bool: ...

    async def save_refresh(self, token: RefreshToken) -> None: ...

    async def get_refresh(self, token: str) -> RefreshToken | None: ...

    async def rotate_refresh(self, old_token: str, new: RefreshToken) -> bool: ...

    async def revoke_all(self, principal_id: str) -> int: ...

    async def purge_expired(self, now: float | None = None) -> int: ...


class MemoryGrantStore:
    """Dict-backed GrantStore. One asyncio lock guards every read-modify-write."""

    def __init__(self) -> None:
        self.codes: dict[str, AuthorizationCode] = {}
        self.refresh_tokens: dict[str, RefreshToken] = {}
        self._lock = asyncio.Lock()

    async def save_code(self, code: AuthorizationCode) -> None:
        async with self._lock:
            self.codes[code.code] = code

    async def get_code(self, code: str) -> AuthorizationCode | None:
        record = self.codes.get(code)
        return replace(record) if record else None

    async def consume_code(self, code: str) -> bool:
        async with self._lock:
            record = self.codes.get(code)
            if record is None or record.used:
                return False
            record.used = True
            return True

    async def save_refresh(self, token: RefreshToken) -> None:
        async with self._lock:
            self.refresh_tokens[token.token] = token

    async def get_refresh(self, token: str) -> RefreshToken | None:
        record = self.refresh_tokens.get(token)
        return replace(record) if record else None

    async def rotate_refresh(self, old_token: str, new: RefreshToken) -> bool:
        async with self._lock:
            old = self.refresh_tokens.get(old_token)
            if old is None or old.revoked:
                return False
            old.revoked = True
            self.refresh_tokens[new.token] = new
            return True

    async def revoke_all(self, principal_id: str) -> int:
        async with self._lock:
            count = 0
            for record in self.refresh_tokens.values():
                if record.principal_id == principal_id and not record.revoked:
                    record.revoked = True
                    count += 1
            return count

    async def purge_expired(self, now: float | None = None) -> int:
        now = time.time() if now is None else now
        async with self._lock:
            codes = [c for c, rec in self.codes.items() if rec.expires_at < now]
            for c in codes:
                del self.codes[c]
            tokens = [t for t, rec in self.refresh_tokens.items() if rec.expires_at < now]
            for t in tokens:
                del self.refresh_tokens[t]
        return len(codes) + len(tokens)


_SCHEMA = """
CREATE TABLE IF NOT EXISTS authorization_codes (
    code TEXT PRIMARY KEY,
    principal_id TEXT NOT NULL,
    code_challenge TEXT NOT NULL,
    challenge_method TEXT NOT NULL,
    redirect_uri TEXT NOT NULL,
    scope TEXT NOT NULL,
    client_id TEXT,
    expires_at REAL NOT NULL,
    used INTEGER NOT NULL DEFAULT 0 CHECK (used IN (0, 1))
);
CREATE TABLE IF NOT EXISTS refresh_tokens (
    token TEXT PRIMARY KEY,
    principal_id TEXT NOT NULL,
    scope TEXT NOT NULL,
    client_id TEXT,
    expires_at REAL NOT NULL,
    revoked INTEGER NOT NULL DEFAULT 0 CHECK (revoked IN (0, 1)),
    previous_token TEXT
);
CREATE INDEX IF NOT EXISTS idx_refresh_principal ON refresh_tokens (principal_id, revoked);
"""


class SqliteGrantStore:
    """GrantStore on a SQLite file.

    Flag flips are conditional UPDATEs (``WHERE used = 0`` / ``WHERE revoked = 0``)
    inside ``BEGIN IMMEDIATE`` transactions, so the rowcount decides the winner
    across threads and processes alike. Blocking calls run in worker threads.
    """

    def __init__(self, db_path: str):
        self.db_path = db_path
        with self._connection() as conn:
            conn.executescript(_SCHEMA)

    @contextmanager
    def _connection(self) -> Iterator[sqlite3.Connection]:
        conn = None
        try:
            conn = sqlite3.connect(self.db_path, timeout=30, isolation_level=None)
            conn.row_factory = sqlite3.Row
            yield conn
        except sqlite3.Error as e:
            if conn is not None and conn.in_transaction:
                conn.rollback()
            raise StoreError(f"grant store operation failed: {e}") from e
        finally:
            if conn is not None:
                conn.close()

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        with self._connection() as conn:
            conn.execute("BEGIN IMMEDIATE")
            yield conn
            conn.execute("COMMIT")

    # --- sync implementations ---

    def _save_code(self, code: AuthorizationCode) -> None:
        with self._transaction() as conn:
            conn.execute(
                "INSERT INTO authorization_codes (code, principal_id, code_challenge, "
                "challenge_method, redirect_uri, scope, client_id, expires_at, used) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (code.code, code.principal_id, code.code_challenge, code.challenge_method,
                 code.redirect_uri, code.scope, code.client_id, code.expires_at, int(code.used)),
            )

    def _get_code(self, code: str) -> AuthorizationCode | None:
        with self._connection() as conn:
            row = conn.execute(
                "SELECT * FROM authorization_codes WHERE code = ?", (code,)
            ).fetchone()
        if row is None:
            return None
        return AuthorizationCode(**{**dict(row), "used": bool(row["used"])})

    def _consume_code(self, code: str) -> bool:
        with self._transaction() as conn:
            cursor = conn.execute(
                "UPDATE authorization_codes SET used = 1 WHERE code = ? AND used = 0",
                (code,),
            )
            return cursor.rowcount == 1

    def _insert_refresh(self, conn: sqlite3.Connection, token: RefreshToken) -> None:
        conn.execute(
            "INSERT INTO refresh_tokens (token, principal_id, scope, client_id, "
            "expires_at, revoked, previous_token) VALUES (?, ?, ?, ?, ?, ?, ?)",
            (token.token, token.principal_id, token.scope, token.client_id,
             token.expires_at, int(token.revoked), token.previous_token),
        )

    def _save_refresh(self, token: RefreshToken) -> None:
        with self._transaction() as conn:
            self._insert_refresh(conn, token)

    def _get_refresh(self, token: str) -> RefreshToken | None:
        with self._connection() as conn:
            row = conn.execute(
                "SELECT * FROM refresh_tokens WHERE token = ?", (token,)
            ).fetchone()
        if row is None:
            return None
        return RefreshToken(**{**dict(row), "revoked": bool(row["revoked"])})

    def _rotate_refresh(self, old_token: str, new: RefreshToken) -> bool:
        with self._transaction() as conn:
            cursor = conn.execute(
                "UPDATE refresh_tokens SET revoked = 1 WHERE token = ? AND revoked = 0",
                (old_token,),
            )
            if cursor.rowcount != 1:
                return False
            self._insert_refresh(conn, new)
            return True

    def _revoke_all(self, principal_id: str) -> int:
        with self._transaction() as conn:
            cursor = conn.execute(
                "UPDATE refresh_tokens SET revoked = 1 WHERE principal_id = ? AND revoked = 0",
                (principal_id,),
            )
            return cursor.rowcount

    def _purge_expired(self, now: float) -> int:
        with self._transaction() as conn:
            codes = conn.execute(
                "DELETE FROM authorization_codes WHERE expires_at < ?", (now,)
            ).rowcount
            tokens = conn.execute(
                "DELETE FROM refresh_tokens WHERE expires_at < ?", (now,)
            ).rowcount
        return codes + tokens

    # --- GrantStore protocol ---

    async def save_code(self, code: AuthorizationCode) -> None:
        await asyncio.to_thread(self._save_code, code)

    async def get_code(self, code: str) -> AuthorizationCode | None:
        return await asyncio.to_thread(self._get_code, code)

    async def consume_code(self, code: str) -> bool:
        return await asyncio.to_thread(self._consume_code, code)

    async def save_refresh(self, token: RefreshToken) -> None:
        await asyncio.to_thread(self._save_refresh, token)

    async def get_refresh(self, token: str) -> RefreshToken | None:
        return await asyncio.to_thread(self._get_refresh, token)

    async def rotate_refresh(self, old_token: str, new: RefreshToken) -> bool:
        return await asyncio.to_thread(self._rotate_refresh, old_token, new)

    async def revoke_all(self, principal_id: str) -> int:
        return await asyncio.to_thread(self._revoke_all, principal_id)

    async def purge_expired(self, now: float | None = None) -> int:
        return await asyncio.to_thread(self._purge_expired, time.time() if now is None else now)


def create_grant_store(store_path: str | None) -> GrantStore:
    if store_path:
        logger.info("grant store: sqlite at %s", store_path)
        return SqliteGrantStore(store_path)
    logger.info("grant store: in-memory")
    return MemoryGrantStore()
