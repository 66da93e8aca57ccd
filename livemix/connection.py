"""SQL connection settings and transaction handling for the persistence layer."""

from __future__ import annotations

import re
import sqlite3
import threading
from dataclasses import dataclass, field
from typing import Optional
from urllib.parse import parse_qsl, quote, urlencode

from livemix.models import create_schema

_PRAGMA_RE = re.compile(r"^[A-Za-z_]+\(\w+\)$")
_TXLOCKS = {"deferred": "DEFERRED", "immediate": "IMMEDIATE", "exclusive": "EXCLUSIVE"}
_TRUE_WORDS = {"on", "1", "true", "yes"}


@dataclass(frozen=True)
class SqliteConfig:
    """Runtime settings for a SQLite database."""

    busy_timeout_msec: int
    db_file: str = ""


@dataclass(frozen=True)
class PostgresSSLConfig:
    """SSL settings for a Postgres connection."""

    enabled: bool = False
    ca_file: Optional[str] = None


@dataclass(frozen=True)
class PostgresConfig:
    """Postgres connection settings."""

    host: str
    port: int
    database: str
    user: str
    ssl: PostgresSSLConfig = field(default_factory=PostgresSSLConfig)


def sqlite_uri(db_file: str, tx_busy_timeout_msec: int) -> str:
    """URI for a SQLite file database in WAL mode with foreign keys on."""
    options = [
        "_pragma=journal_mode(wal)",
        "_pragma=synchronous(normal)",
        f"_pragma=busy_timeout({tx_busy_timeout_msec})",
        "_txlock=deferred",
        "_foreign_keys=on",
    ]
    return f"{db_file}?{'&'.join(options)}"


def in_memory_sqlite_uri(db_name: str) -> str:
    """URI for a named in-memory SQLite database with foreign keys on."""
    return f"file:{db_name}?mode=memory&_foreign_keys=on"


def postgres_dsn(config: PostgresConfig, password: str) -> str:
    """Build a libpq connection string; SSL requires a CA certificate file."""
    params = [
        f"host={config.host}",
        f"port={config.port}",
        f"dbname={config.database}",
        f"user={config.user}",
    ]
    if password:
        params.append(f"password={password}")
    if config.ssl.enabled:
        if config.ssl.ca_file is None:
            raise ValueError("can't connect to Postgres with SSL without specific CA cert")
        params.extend(["sslmode=verify-full", f"sslrootcert={config.ssl.ca_file}"])
    return " ".join(params)


def _parse_uri(uri: str) -> tuple[str, list[str], str, bool]:
    """Split a database URI into the SQLite target, pragma statements, lock mode and memory flag."""
    base, _, query = uri.partition("?")
    pragmas: list[str] = []
    kept: list[tuple[str, str]] = []
    txlock = "DEFERRED"
    foreign_keys = False
    memory = False
    for key, value in parse_qsl(query, keep_blank_values=True):
        if key == "_pragma":
            if not _PRAGMA_RE.match(value):
                raise ValueError(f"unsupported SQLite pragma '{value}'")
            pragmas.append(f"PRAGMA {value}")
        elif key == "_foreign_keys":
            foreign_keys = value.lower() in _TRUE_WORDS
        elif key == "_txlock":
            try:
                txlock = _TXLOCKS[value.lower()]
            except KeyError:
                raise ValueError(f"unsupported transaction lock mode '{value}'") from None
        else:
            if key == "mode" and value == "memory":
                memory = True
            kept.append((key, value))
    if foreign_keys:
        pragmas.append("PRAGMA foreign_keys = ON")
    if not base.startswith("file:"):
        base = "file:" + quote(base, safe="/:")
    target = f"{base}?{urlencode(kept)}" if kept else base
    return target, pragmas, txlock, memory


class SQLConnection:
    """Opens SQLite sessions, runs each inside a transaction, and commits or rolls back."""

    def __init__(self, uri: str, no_transactions: bool = False) -> None:
        self._target, self._pragmas, self._txlock, self._shared = _parse_uri(uri)
        self._no_transactions = no_transactions
        self._lock = threading.RLock()
        self._registry_lock = threading.Lock()
        self._active: list[sqlite3.Connection] = []
        self._keeper = self._open()
        create_schema(self._keeper)

    def _open(self) -> sqlite3.Connection:
        conn = sqlite3.connect(
            self._target, uri=True, isolation_level=None, check_same_thread=False
        )
        conn.row_factory = sqlite3.Row
        try:
            for statement in self._pragmas:
                conn.execute(statement)
        except Exception:
            conn.close()
            raise
        return conn

    def apply_sqlite_pragmas(self, config: SqliteConfig) -> None:
        """Apply WAL journaling, normal sync and the configured busy timeout."""
        statements = [
            "PRAGMA journal_mode(wal)",
            "PRAGMA synchronous(normal)",
            f"PRAGMA busy_timeout({int(config.busy_timeout_msec)})",
        ]
        with self._lock:
            for statement in statements:
                self._keeper.execute(statement)
        self._pragmas.extend(statements)

    def new_transaction(self) -> sqlite3.Connection:
        """Return a session; unless transactions are off, one has already begun."""
        if self._shared:
            self._lock.acquire()
            session = self._keeper
        else:
            session = self._open()
        with self._registry_lock:
            self._active.append(session)
        try:
            if not self._no_transactions:
                session.execute(f"BEGIN {self._txlock}")
        except Exception:
            self._release(session)
            raise
        return session

    def _release(self, session: sqlite3.Connection) -> None:
        with self._registry_lock:
            try:
                self._active.remove(session)
            except ValueError:
                return
        if self._shared:
            self._lock.release()
        else:
            session.close()

    def commit(self, session: sqlite3.Connection) -> None:
        """Commit the session's changes and release it."""
        try:
            if not self._no_transactions and session.in_transaction:
                session.execute("COMMIT")
        finally:
            self._release(session)

    def rollback(self, session: sqlite3.Connection) -> None:
        """Discard the session's changes and release it."""
        try:
            if not self._no_transactions and session.in_transaction:
                session.execute("ROLLBACK")
        finally:
            self._release(session)

    def close(self) -> None:
        """Close the connection kept for the life of this object."""
        self._keeper.close()