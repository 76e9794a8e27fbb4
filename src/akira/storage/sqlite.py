"""
SQLite Storage Backend for AKIRA

SQLite implementation of the gateway store with:
- Thread-safe connection pooling
- Conditional updates for per-key compare-and-swap
- Database-level immutability triggers on the audit log
- Automatic migrations
"""

import json
import sqlite3
import threading
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from queue import Queue
from typing import Any, Iterator, List, Optional, Tuple

from akira.core.models import (
    AccessRequest,
    AccessRequestStatus,
    ApiKey,
    AuditAction,
    AuditEntry,
    Identity,
    PendingChallenge,
)
from akira.core.policy import Role
from akira.storage.base import (
    AuditQuery,
    DuplicateError,
    GatewayStore,
    NotFoundError,
    StorageError,
)


def _ts(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _dt(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


class ConnectionPool:
    """Thread-safe SQLite connection pool."""

    def __init__(self, database: str, pool_size: int = 5):
        self.database = database
        self.pool_size = pool_size
        self._pool: Queue = Queue(maxsize=pool_size)
        self._lock = threading.Lock()
        self._write_lock = threading.Lock()  # Serialize writes for in-memory
        self._initialized = False
        self._is_memory = database in ("", ":memory:") or "mode=memory" in database

    def initialize(self) -> None:
        """Initialize the connection pool."""
        with self._lock:
            if self._initialized:
                return

            if self._is_memory:
                # Named shared-cache database so each pool gets its own store
                uri = f"file:akira_{uuid.uuid4().hex}?mode=memory&cache=shared"
                for _ in range(self.pool_size):
                    conn = sqlite3.connect(
                        uri,
                        uri=True,
                        check_same_thread=False,
                        isolation_level=None,
                    )
                    conn.row_factory = sqlite3.Row
                    conn.execute("PRAGMA foreign_keys=ON")
                    self._pool.put(conn)
            else:
                for _ in range(self.pool_size):
                    conn = sqlite3.connect(
                        self.database,
                        check_same_thread=False,
                        isolation_level=None,  # Autocommit mode, transactions are explicit
                    )
                    conn.row_factory = sqlite3.Row
                    conn.execute("PRAGMA journal_mode=WAL")
                    conn.execute("PRAGMA foreign_keys=ON")
                    conn.execute("PRAGMA busy_timeout=5000")
                    self._pool.put(conn)
            self._initialized = True

    @contextmanager
    def get_connection(self) -> Iterator[sqlite3.Connection]:
        """Get a connection from the pool."""
        if not self._initialized:
            self.initialize()
        conn = self._pool.get()
        try:
            yield conn
        finally:
            self._pool.put(conn)

    @contextmanager
    def get_write_connection(self) -> Iterator[sqlite3.Connection]:
        """Get a connection with write lock for thread-safe writes."""
        if not self._initialized:
            self.initialize()
        if self._is_memory:
            with self._write_lock:
                conn = self._pool.get()
                try:
                    yield conn
                finally:
                    self._pool.put(conn)
        else:
            conn = self._pool.get()
            try:
                yield conn
            finally:
                self._pool.put(conn)

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Write connection inside BEGIN IMMEDIATE ... COMMIT."""
        with self.get_write_connection() as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")

    def close_all(self) -> None:
        """Close all connections in the pool."""
        with self._lock:
            while not self._pool.empty():
                conn = self._pool.get_nowait()
                conn.close()
            self._initialized = False


class SQLiteBackend(GatewayStore):
    """
    SQLite storage backend implementing all gateway store interfaces.

    Thread-safe with connection pooling. Every read-modify-write is a single
    conditional statement or runs inside an immediate transaction.
    """

    SCHEMA_VERSION = 1
    REQUIRED_TABLES = ("identities", "api_keys", "challenges", "audit_log", "access_requests")

    def __init__(self, database: str = "akira.db", pool_size: int = 5):
        self.database = database
        self.pool = ConnectionPool(database, pool_size)

    def initialize(self) -> None:
        """Initialize the database schema."""
        self.pool.initialize()

        with self.pool.get_write_connection() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS schema_version (
                    version INTEGER PRIMARY KEY,
                    applied_at TEXT NOT NULL
                )
            """)

            cursor = conn.execute("SELECT MAX(version) FROM schema_version")
            current_version = cursor.fetchone()[0] or 0

            if current_version < self.SCHEMA_VERSION:
                self._run_migrations(conn, current_version)

    def _run_migrations(self, conn: sqlite3.Connection, from_version: int) -> None:
        """Run database migrations."""
        migrations = [
            self._migration_v1,
        ]

        for version, migration in enumerate(migrations[from_version:], start=from_version + 1):
            migration(conn)
            conn.execute(
                "INSERT INTO schema_version (version, applied_at) VALUES (?, ?)",
                (version, datetime.now(timezone.utc).isoformat()),
            )

    def _migration_v1(self, conn: sqlite3.Connection) -> None:
        """Initial schema creation."""
        conn.execute("""
            CREATE TABLE IF NOT EXISTS identities (
                id TEXT PRIMARY KEY,
                display_name TEXT NOT NULL,
                email TEXT NOT NULL UNIQUE,
                credential_hash TEXT NOT NULL,
                role TEXT NOT NULL,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
        """)
        conn.execute("CREATE INDEX IF NOT EXISTS idx_identity_role ON identities(role)")

        conn.execute("""
            CREATE TABLE IF NOT EXISTS api_keys (
                id TEXT PRIMARY KEY,
                owner_id TEXT NOT NULL,
                name TEXT NOT NULL,
                cipher_text TEXT NOT NULL,
                iv TEXT NOT NULL,
                fingerprint TEXT NOT NULL UNIQUE,
                scopes TEXT NOT NULL,
                expires_at TEXT NOT NULL,
                created_at TEXT NOT NULL,
                is_active INTEGER NOT NULL DEFAULT 1,
                rotated_at TEXT,
                FOREIGN KEY (owner_id) REFERENCES identities(id) ON DELETE CASCADE
            )
        """)
        conn.execute("CREATE INDEX IF NOT EXISTS idx_key_owner ON api_keys(owner_id)")

        conn.execute("""
            CREATE TABLE IF NOT EXISTS challenges (
                email TEXT PRIMARY KEY,
                challenge_id TEXT NOT NULL,
                code TEXT NOT NULL,
                expires_at TEXT NOT NULL,
                created_at TEXT NOT NULL,
                attempt_count INTEGER NOT NULL DEFAULT 0
            )
        """)

        conn.execute("""
            CREATE TABLE IF NOT EXISTS audit_log (
                seq INTEGER PRIMARY KEY AUTOINCREMENT,
                entry_id TEXT NOT NULL UNIQUE,
                action TEXT NOT NULL,
                actor_id TEXT,
                actor_display TEXT NOT NULL,
                ip_address TEXT,
                timestamp TEXT NOT NULL,
                details TEXT NOT NULL,
                integrity_signature TEXT NOT NULL
            )
        """)
        conn.execute("CREATE INDEX IF NOT EXISTS idx_audit_actor ON audit_log(actor_id)")
        conn.execute("CREATE INDEX IF NOT EXISTS idx_audit_action ON audit_log(action)")
        conn.execute("CREATE INDEX IF NOT EXISTS idx_audit_timestamp ON audit_log(timestamp)")
        conn.execute("""
            CREATE TRIGGER IF NOT EXISTS audit_log_no_update
            BEFORE UPDATE ON audit_log
            BEGIN
                SELECT RAISE(ABORT, 'audit log is immutable');
            END
        """)
        conn.execute("""
            CREATE TRIGGER IF NOT EXISTS audit_log_no_delete
            BEFORE DELETE ON audit_log
            BEGIN
                SELECT RAISE(ABORT, 'audit log is immutable');
            END
        """)

        conn.execute("""
            CREATE TABLE IF NOT EXISTS access_requests (
                id TEXT PRIMARY KEY,
                identity_id TEXT NOT NULL,
                requested_role TEXT NOT NULL,
                reason TEXT NOT NULL,
                status TEXT NOT NULL,
                created_at TEXT NOT NULL,
                processed_by TEXT,
                processed_at TEXT,
                FOREIGN KEY (identity_id) REFERENCES identities(id) ON DELETE CASCADE
            )
        """)
        conn.execute("CREATE INDEX IF NOT EXISTS idx_request_status ON access_requests(status)")
        conn.execute("CREATE INDEX IF NOT EXISTS idx_request_identity ON access_requests(identity_id)")

    def close(self) -> None:
        """Close all database connections."""
        self.pool.close_all()

    def health_check(self) -> Tuple[bool, str]:
        """Check database health."""
        try:
            with self.pool.get_connection() as conn:
                conn.execute("SELECT 1")
                cursor = conn.execute(
                    "SELECT name FROM sqlite_master WHERE type='table'"
                )
                tables = [row[0] for row in cursor.fetchall()]
                missing = [t for t in self.REQUIRED_TABLES if t not in tables]
                if missing:
                    return False, f"Missing tables: {missing}"
                return True, "Database healthy"
        except sqlite3.Error as e:
            return False, f"Database error: {str(e)}"

    def _execute_write(self, sql: str, params: Tuple[Any, ...]) -> int:
        try:
            with self.pool.get_write_connection() as conn:
                return conn.execute(sql, params).rowcount
        except sqlite3.IntegrityError as e:
            if "FOREIGN KEY" in str(e):
                raise NotFoundError(str(e)) from e
            raise DuplicateError(str(e)) from e
        except sqlite3.Error as e:
            raise StorageError(str(e)) from e

    def _fetch_one(self, sql: str, params: Tuple[Any, ...]) -> Optional[sqlite3.Row]:
        try:
            with self.pool.get_connection() as conn:
                return conn.execute(sql, params).fetchone()
        except sqlite3.Error as e:
            raise StorageError(str(e)) from e

    def _fetch_all(self, sql: str, params: Tuple[Any, ...] = ()) -> List[sqlite3.Row]:
        try:
            with self.pool.get_connection() as conn:
                return conn.execute(sql, params).fetchall()
        except sqlite3.Error as e:
            raise StorageError(str(e)) from e

    # ==================== IdentityStore Implementation ====================

    @staticmethod
    def _row_to_identity(row: sqlite3.Row) -> Identity:
        return Identity(
            id=row["id"],
            display_name=row["display_name"],
            email=row["email"],
            credential_hash=row["credential_hash"],
            role=Role(row["role"]),
            created_at=_dt(row["created_at"]),
            updated_at=_dt(row["updated_at"]),
        )

    def insert_identity(self, identity: Identity) -> Identity:
        self._execute_write(
            """
            INSERT INTO identities (id, display_name, email, credential_hash, role, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                identity.id,
                identity.display_name,
                identity.email,
                identity.credential_hash,
                identity.role.value,
                _ts(identity.created_at),
                _ts(identity.updated_at),
            ),
        )
        return identity

    def find_identity(self, identity_id: str) -> Optional[Identity]:
        row = self._fetch_one("SELECT * FROM identities WHERE id = ?", (identity_id,))
        return self._row_to_identity(row) if row else None

    def find_identity_by_email(self, email: str) -> Optional[Identity]:
        row = self._fetch_one("SELECT * FROM identities WHERE email = ?", (email,))
        return self._row_to_identity(row) if row else None

    def update_identity(self, identity: Identity) -> Identity:
        updated = self._execute_write(
            """
            UPDATE identities
            SET display_name = ?, email = ?, credential_hash = ?, role = ?, updated_at = ?
            WHERE id = ?
            """,
            (
                identity.display_name,
                identity.email,
                identity.credential_hash,
                identity.role.value,
                _ts(identity.updated_at),
                identity.id,
            ),
        )
        if updated == 0:
            raise NotFoundError(f"Identity {identity.id} not found")
        return identity

    def delete_identity(self, identity_id: str) -> int:
        try:
            with self.pool.transaction() as conn:
                row = conn.execute("SELECT email FROM identities WHERE id = ?", (identity_id,)).fetchone()
                if row is None:
                    raise NotFoundError(f"Identity {identity_id} not found")
                removed = conn.execute("DELETE FROM api_keys WHERE owner_id = ?", (identity_id,)).rowcount
                conn.execute("DELETE FROM challenges WHERE email = ?", (row["email"],))
                conn.execute("DELETE FROM access_requests WHERE identity_id = ?", (identity_id,))
                conn.execute("DELETE FROM identities WHERE id = ?", (identity_id,))
                return removed
        except sqlite3.Error as e:
            raise StorageError(str(e)) from e

    def list_identities(self, limit: int = 100, offset: int = 0) -> List[Identity]:
        rows = self._fetch_all(
            "SELECT * FROM identities ORDER BY created_at ASC, id ASC LIMIT ? OFFSET ?",
            (limit, offset),
        )
        return [self._row_to_identity(r) for r in rows]

    def count_identities(self) -> int:
        row = self._fetch_one("SELECT COUNT(*) FROM identities", ())
        return row[0]

    def list_identities_by_role(self, role: str) -> List[Identity]:
        rows = self._fetch_all("SELECT * FROM identities WHERE role = ? ORDER BY created_at ASC", (role,))
        return [self._row_to_identity(r) for r in rows]

    # ==================== ApiKeyStore Implementation ====================

    @staticmethod
    def _row_to_key(row: sqlite3.Row) -> ApiKey:
        return ApiKey(
            id=row["id"],
            owner_id=row["owner_id"],
            name=row["name"],
            cipher_text=row["cipher_text"],
            iv=row["iv"],
            fingerprint=row["fingerprint"],
            scopes=json.loads(row["scopes"]),
            expires_at=_dt(row["expires_at"]),
            created_at=_dt(row["created_at"]),
            is_active=bool(row["is_active"]),
            rotated_at=_dt(row["rotated_at"]),
        )

    def insert_api_key(self, api_key: ApiKey) -> ApiKey:
        self._execute_write(
            """
            INSERT INTO api_keys
                (id, owner_id, name, cipher_text, iv, fingerprint, scopes,
                 expires_at, created_at, is_active, rotated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                api_key.id,
                api_key.owner_id,
                api_key.name,
                api_key.cipher_text,
                api_key.iv,
                api_key.fingerprint,
                json.dumps(list(api_key.scopes)),
                _ts(api_key.expires_at),
                _ts(api_key.created_at),
                1 if api_key.is_active else 0,
                _ts(api_key.rotated_at),
            ),
        )
        return api_key

    def find_api_key(self, key_id: str) -> Optional[ApiKey]:
        row = self._fetch_one("SELECT * FROM api_keys WHERE id = ?", (key_id,))
        return self._row_to_key(row) if row else None

    def find_api_key_by_fingerprint(self, fingerprint: str) -> Optional[ApiKey]:
        row = self._fetch_one("SELECT * FROM api_keys WHERE fingerprint = ?", (fingerprint,))
        return self._row_to_key(row) if row else None

    def list_api_keys(self, owner_id: str) -> List[ApiKey]:
        rows = self._fetch_all(
            "SELECT * FROM api_keys WHERE owner_id = ? ORDER BY created_at ASC, id ASC",
            (owner_id,),
        )
        return [self._row_to_key(r) for r in rows]

    def list_all_api_keys(self) -> List[ApiKey]:
        rows = self._fetch_all("SELECT * FROM api_keys ORDER BY created_at ASC, id ASC")
        return [self._row_to_key(r) for r in rows]

    def swap_api_key_secret(
        self,
        key_id: str,
        expected_fingerprint: str,
        cipher_text: str,
        iv: str,
        fingerprint: str,
        expires_at: datetime,
        rotated_at: Optional[datetime],
    ) -> bool:
        updated = self._execute_write(
            """
            UPDATE api_keys
            SET cipher_text = ?, iv = ?, fingerprint = ?, expires_at = ?, rotated_at = ?
            WHERE id = ? AND fingerprint = ?
            """,
            (cipher_text, iv, fingerprint, _ts(expires_at), _ts(rotated_at), key_id, expected_fingerprint),
        )
        return updated == 1

    def delete_api_key(self, key_id: str) -> bool:
        return self._execute_write("DELETE FROM api_keys WHERE id = ?", (key_id,)) == 1

    # ==================== ChallengeStore Implementation ====================

    @staticmethod
    def _row_to_challenge(row: sqlite3.Row) -> PendingChallenge:
        return PendingChallenge(
            email=row["email"],
            challenge_id=row["challenge_id"],
            code=row["code"],
            expires_at=_dt(row["expires_at"]),
            created_at=_dt(row["created_at"]),
            attempt_count=row["attempt_count"],
        )

    def put_challenge(self, challenge: PendingChallenge) -> None:
        self._execute_write(
            """
            INSERT OR REPLACE INTO challenges
                (email, challenge_id, code, expires_at, created_at, attempt_count)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (
                challenge.email,
                challenge.challenge_id,
                challenge.code,
                _ts(challenge.expires_at),
                _ts(challenge.created_at),
                challenge.attempt_count,
            ),
        )

    def get_challenge(self, email: str) -> Optional[PendingChallenge]:
        row = self._fetch_one("SELECT * FROM challenges WHERE email = ?", (email,))
        return self._row_to_challenge(row) if row else None

    def reserve_challenge_attempt(self, email: str, challenge_id: str, max_attempts: int) -> Optional[int]:
        try:
            with self.pool.transaction() as conn:
                updated = conn.execute(
                    """
                    UPDATE challenges SET attempt_count = attempt_count + 1
                    WHERE email = ? AND challenge_id = ? AND attempt_count < ?
                    """,
                    (email, challenge_id, max_attempts),
                ).rowcount
                if updated == 0:
                    return None
                row = conn.execute("SELECT attempt_count FROM challenges WHERE email = ?", (email,)).fetchone()
                return row["attempt_count"]
        except sqlite3.Error as e:
            raise StorageError(str(e)) from e

    def delete_challenge(self, email: str, challenge_id: Optional[str] = None) -> bool:
        if challenge_id is None:
            removed = self._execute_write("DELETE FROM challenges WHERE email = ?", (email,))
        else:
            removed = self._execute_write(
                "DELETE FROM challenges WHERE email = ? AND challenge_id = ?",
                (email, challenge_id),
            )
        return removed == 1

    def purge_expired_challenges(self, now: datetime) -> int:
        # Rows are parsed rather than compared as strings so mixed offsets stay correct
        expired = [
            r["email"] for r in self._fetch_all("SELECT email, expires_at FROM challenges")
            if _dt(r["expires_at"]) < now
        ]
        for email in expired:
            self._execute_write("DELETE FROM challenges WHERE email = ?", (email,))
        return len(expired)

    # ==================== AuditLogStorage Implementation ====================

    @staticmethod
    def _row_to_entry(row: sqlite3.Row) -> AuditEntry:
        return AuditEntry(
            entry_id=row["entry_id"],
            action=AuditAction(row["action"]),
            actor_id=row["actor_id"],
            actor_display=row["actor_display"],
            ip_address=row["ip_address"],
            timestamp=_dt(row["timestamp"]),
            details=json.loads(row["details"]),
            integrity_signature=row["integrity_signature"],
        )

    def insert_audit_entry(self, entry: AuditEntry) -> AuditEntry:
        self._execute_write(
            """
            INSERT INTO audit_log
                (entry_id, action, actor_id, actor_display, ip_address, timestamp, details, integrity_signature)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                entry.entry_id,
                entry.action.value,
                entry.actor_id,
                entry.actor_display,
                entry.ip_address,
                _ts(entry.timestamp),
                json.dumps(entry.details, sort_keys=True),
                entry.integrity_signature,
            ),
        )
        return entry

    def get_audit_entry(self, entry_id: str) -> Optional[AuditEntry]:
        row = self._fetch_one("SELECT * FROM audit_log WHERE entry_id = ?", (entry_id,))
        return self._row_to_entry(row) if row else None

    def query_audit_entries(self, query: AuditQuery) -> List[AuditEntry]:
        sql = "SELECT * FROM audit_log WHERE 1=1"
        params: List[Any] = []

        if query.actor_id is not None:
            sql += " AND actor_id = ?"
            params.append(query.actor_id)
        if query.action is not None:
            sql += " AND action = ?"
            params.append(query.action.value)
        if query.since is not None:
            sql += " AND timestamp >= ?"
            params.append(_ts(query.since))
        if query.until is not None:
            sql += " AND timestamp <= ?"
            params.append(_ts(query.until))

        direction = "DESC" if query.newest_first else "ASC"
        sql += f" ORDER BY timestamp {direction}, seq {direction}"
        sql += " LIMIT ? OFFSET ?"
        params.extend([query.limit if query.limit is not None else -1, query.offset])

        return [self._row_to_entry(r) for r in self._fetch_all(sql, tuple(params))]

    def count_audit_entries(self) -> int:
        row = self._fetch_one("SELECT COUNT(*) FROM audit_log", ())
        return row[0]

    # ==================== AccessRequestStore Implementation ====================

    @staticmethod
    def _row_to_request(row: sqlite3.Row) -> AccessRequest:
        return AccessRequest(
            id=row["id"],
            identity_id=row["identity_id"],
            requested_role=Role(row["requested_role"]),
            reason=row["reason"],
            status=AccessRequestStatus(row["status"]),
            created_at=_dt(row["created_at"]),
            processed_by=row["processed_by"],
            processed_at=_dt(row["processed_at"]),
        )

    def insert_access_request(self, request: AccessRequest) -> AccessRequest:
        self._execute_write(
            """
            INSERT INTO access_requests
                (id, identity_id, requested_role, reason, status, created_at, processed_by, processed_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                request.id,
                request.identity_id,
                request.requested_role.value,
                request.reason,
                request.status.value,
                _ts(request.created_at),
                request.processed_by,
                _ts(request.processed_at),
            ),
        )
        return request

    def find_access_request(self, request_id: str) -> Optional[AccessRequest]:
        row = self._fetch_one("SELECT * FROM access_requests WHERE id = ?", (request_id,))
        return self._row_to_request(row) if row else None

    def find_pending_request_for(self, identity_id: str) -> Optional[AccessRequest]:
        row = self._fetch_one(
            "SELECT * FROM access_requests WHERE identity_id = ? AND status = ?",
            (identity_id, AccessRequestStatus.PENDING.value),
        )
        return self._row_to_request(row) if row else None

    def list_access_requests(self, status: Optional[AccessRequestStatus] = None) -> List[AccessRequest]:
        if status is None:
            rows = self._fetch_all("SELECT * FROM access_requests ORDER BY created_at DESC")
        else:
            rows = self._fetch_all(
                "SELECT * FROM access_requests WHERE status = ? ORDER BY created_at DESC",
                (status.value,),
            )
        return [self._row_to_request(r) for r in rows]

    def transition_access_request(
        self,
        request_id: str,
        expected: AccessRequestStatus,
        new_status: AccessRequestStatus,
        processed_by: Optional[str],
        processed_at: Optional[datetime],
    ) -> bool:
        updated = self._execute_write(
            """
            UPDATE access_requests SET status = ?, processed_by = ?, processed_at = ?
            WHERE id = ? AND status = ?
            """,
            (new_status.value, processed_by, _ts(processed_at), request_id, expected.value),
        )
        return updated == 1
