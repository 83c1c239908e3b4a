"""
store/sql.py -- SQLAlchemy Core implementation of the KeyValueStore protocol.

Pattern: Repository + Data Mapper. SqlStore is the repository for one
namespace of a shared `kv_entries` table; the encode/decode pairs at the
bottom of this module are the mappers between domain dataclasses and the
JSON text column.

Selected with STORE_URL (e.g. sqlite:///portalauth.db). Reset tokens and
rate-limit counters then survive a restart.

Concurrency:
  Per-key locks are process-local (same KeyLocks as MemoryStore). Two app
  processes pointed at the same database can still interleave a
  read-modify-write on one key -- multi-instance deployments need a store
  with server-side atomic increments. Each individual statement runs in its
  own transaction.

Security:
  All queries use bound parameters. No f-strings in SQL.
"""

from __future__ import annotations

import json
from collections.abc import Callable
from datetime import datetime, timezone
from typing import Generic, TypeVar

from sqlalchemy import Column, MetaData, String, Table, Text, create_engine, event, select
from sqlalchemy.engine import Engine
from sqlalchemy.pool import StaticPool

from auth.models import RateLimitEntry, ResetToken
from store.kv import KeyLocks

V = TypeVar("V")

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_entries = Table(
    "kv_entries",
    _metadata,
    Column("namespace", String(64), primary_key=True),
    Column("key", String(255), primary_key=True),
    Column("value", Text, nullable=False),  # JSON document
    Column("updated_at", String(32), nullable=False),
)

RESET_TOKENS = "reset_tokens"
RATE_LIMITS = "rate_limits"


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode for concurrent read safety.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


def create_store_engine(db_url: str) -> Engine:
    """Build an engine and make sure the kv_entries table exists.

    A bare in-memory SQLite URL gets a StaticPool so every thread sees the
    same database instead of a blank one per connection.
    """
    connect_args: dict = {}
    kwargs: dict = {}
    if db_url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
    if db_url in ("sqlite://", "sqlite:///:memory:"):
        kwargs["poolclass"] = StaticPool
    engine = create_engine(db_url, connect_args=connect_args, **kwargs)
    if db_url.startswith("sqlite") and "memory" not in db_url and db_url != "sqlite://":
        event.listen(engine, "connect", _set_wal_mode)
    _metadata.create_all(engine)
    return engine


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class SqlStore(Generic[V]):
    """One namespace of the kv_entries table.

    Usage:
        engine = create_store_engine("sqlite:///portalauth.db")
        tokens = SqlStore(engine, RESET_TOKENS, encode_reset_token, decode_reset_token)
    """

    def __init__(
        self,
        engine: Engine,
        namespace: str,
        encode: Callable[[V], dict],
        decode: Callable[[dict], V],
    ) -> None:
        self.engine = engine
        self.namespace = namespace
        self._encode = encode
        self._decode = decode
        self._keys = KeyLocks()

    def get(self, key: str) -> V | None:
        with self.engine.connect() as conn:
            row = conn.execute(
                select(_entries.c.value).where(
                    _entries.c.namespace == self.namespace,
                    _entries.c.key == key,
                )
            ).first()
        if row is None:
            return None
        return self._decode(json.loads(row.value))

    def set(self, key: str, value: V) -> None:
        """Insert or replace the value for key.

        Delete-then-insert inside one transaction keeps this portable across
        dialects that spell upsert differently.
        """
        with self.engine.begin() as conn:
            conn.execute(self._where(_entries.delete(), key))
            conn.execute(
                _entries.insert().values(
                    namespace=self.namespace,
                    key=key,
                    value=json.dumps(self._encode(value)),
                    updated_at=_now_iso(),
                )
            )

    def delete(self, key: str) -> None:
        with self.engine.begin() as conn:
            conn.execute(self._where(_entries.delete(), key))

    def sweep(self, predicate: Callable[[V], bool]) -> int:
        """Delete every value in this namespace matching predicate. Returns count removed."""
        with self.engine.begin() as conn:
            rows = conn.execute(
                select(_entries.c.key, _entries.c.value).where(_entries.c.namespace == self.namespace)
            ).fetchall()
            doomed = [r.key for r in rows if predicate(self._decode(json.loads(r.value)))]
            if doomed:
                conn.execute(
                    _entries.delete().where(
                        _entries.c.namespace == self.namespace,
                        _entries.c.key.in_(doomed),
                    )
                )
        return len(doomed)

    def lock(self, key: str):
        return self._keys.hold(key)

    def __len__(self) -> int:
        with self.engine.connect() as conn:
            rows = conn.execute(select(_entries.c.key).where(_entries.c.namespace == self.namespace)).fetchall()
        return len(rows)

    def close(self) -> None:
        self.engine.dispose()

    def _where(self, stmt, key: str):
        return stmt.where(_entries.c.namespace == self.namespace, _entries.c.key == key)


# ---------------------------------------------------------------------------
# Mappers
# ---------------------------------------------------------------------------


def encode_reset_token(token: ResetToken) -> dict:
    return {
        "token": token.token,
        "email": token.email,
        "created_at": token.created_at.isoformat(),
        "expires_at": token.expires_at.isoformat(),
        "used": token.used,
    }


def decode_reset_token(data: dict) -> ResetToken:
    return ResetToken(
        token=data["token"],
        email=data["email"],
        created_at=datetime.fromisoformat(data["created_at"]),
        expires_at=datetime.fromisoformat(data["expires_at"]),
        used=bool(data["used"]),
    )


def encode_rate_limit(entry: RateLimitEntry) -> dict:
    return {"count": entry.count, "reset_time": entry.reset_time.isoformat()}


def decode_rate_limit(data: dict) -> RateLimitEntry:
    return RateLimitEntry(count=int(data["count"]), reset_time=datetime.fromisoformat(data["reset_time"]))
