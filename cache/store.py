"""
cache/store.py -- Short-lived storage for WebAuthn ceremony challenges.

A challenge lives from the "start" call of a ceremony until either the
matching "finish" call consumes it or its TTL (300 seconds) runs out. Keys
are (namespace, subject_key):

  registration    -- keyed by the session uuid when given, else the user id
  authentication  -- keyed by user id (email-based login)
  passwordless    -- keyed by the session uuid

A put for an existing key overwrites it: two concurrent starts for the same
subject are last-write-wins, and the loser's finish call will not find its
challenge. There is no per-key locking; the SQLite backend only serializes
statements on its shared connection.

Two backends share the same put/get/delete surface:

  ChallengeCache       -- SQLite table with an expires_at column. Expired rows
                          read as absent and are deleted lazily; purge_expired()
                          trims the rest.
  RedisChallengeStore  -- SETEX under passkey:<namespace>:challenge:<key>;
                          Redis enforces the expiry itself.

Usage:
    store = open_challenge_store(get_settings())
    store.put(Namespace.REGISTRATION, user_id, challenge, auxiliary="My Phone")
    record = store.get(Namespace.REGISTRATION, user_id)   # ChallengeRecord or None
    store.delete(Namespace.REGISTRATION, user_id)
"""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Optional

from redis import Redis

if TYPE_CHECKING:
    from core.config import Settings

logger = logging.getLogger("realm.challenges")

DEFAULT_TTL = 300  # seconds

_DDL = """
CREATE TABLE IF NOT EXISTS passkey_challenges (
    namespace    TEXT NOT NULL,
    subject_key  TEXT NOT NULL,
    challenge    TEXT NOT NULL,
    auxiliary    TEXT,
    created_at   REAL NOT NULL,
    expires_at   REAL NOT NULL,
    PRIMARY KEY (namespace, subject_key)
);
"""


class Namespace(str, Enum):
    REGISTRATION = "registration"
    AUTHENTICATION = "authentication"
    PASSWORDLESS = "passwordless"


@dataclass(frozen=True)
class ChallengeRecord:
    challenge: str
    auxiliary: Optional[str] = None
    created_at: Optional[float] = None


class ChallengeCache:
    """SQLite-backed challenge store.

    One connection is shared by every request thread, so each
    statement-plus-commit runs under _lock. clock is injectable so tests can
    move time past the TTL without sleeping.
    """

    def __init__(
        self,
        db_path: str = ":memory:",
        ttl: int = DEFAULT_TTL,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.ttl = ttl
        self._clock = clock
        self._lock = threading.Lock()
        self._conn = sqlite3.connect(db_path, check_same_thread=False)
        if db_path != ":memory:":
            self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute(_DDL)
        self._conn.commit()

    def put(
        self,
        namespace: Namespace,
        subject_key: str,
        challenge: str,
        ttl_seconds: Optional[int] = None,
        auxiliary: Optional[str] = None,
    ) -> None:
        """Store a challenge, replacing any live one for the same key."""
        now = self._clock()
        ttl = self.ttl if ttl_seconds is None else ttl_seconds
        with self._lock:
            self._conn.execute(
                "INSERT OR REPLACE INTO passkey_challenges "
                "(namespace, subject_key, challenge, auxiliary, created_at, expires_at) VALUES (?, ?, ?, ?, ?, ?)",
                (Namespace(namespace).value, subject_key, challenge, auxiliary, now, now + ttl),
            )
            self._conn.commit()

    def get(self, namespace: Namespace, subject_key: str) -> Optional[ChallengeRecord]:
        """Return the live challenge for the key, or None if absent or expired."""
        ns = Namespace(namespace).value
        with self._lock:
            row = self._conn.execute(
                "SELECT challenge, auxiliary, created_at, expires_at FROM passkey_challenges "
                "WHERE namespace = ? AND subject_key = ?",
                (ns, subject_key),
            ).fetchone()
            if row is None:
                return None
            challenge, auxiliary, created_at, expires_at = row
            if self._clock() >= expires_at:
                self._conn.execute(
                    "DELETE FROM passkey_challenges WHERE namespace = ? AND subject_key = ?",
                    (ns, subject_key),
                )
                self._conn.commit()
                return None
        return ChallengeRecord(challenge=challenge, auxiliary=auxiliary, created_at=created_at)

    def delete(self, namespace: Namespace, subject_key: str) -> None:
        with self._lock:
            self._conn.execute(
                "DELETE FROM passkey_challenges WHERE namespace = ? AND subject_key = ?",
                (Namespace(namespace).value, subject_key),
            )
            self._conn.commit()

    def purge_expired(self) -> int:
        """Delete all expired challenges. Returns number of rows removed."""
        with self._lock:
            cursor = self._conn.execute("DELETE FROM passkey_challenges WHERE expires_at <= ?", (self._clock(),))
            self._conn.commit()
            return cursor.rowcount

    def close(self) -> None:
        with self._lock:
            self._conn.close()


class RedisChallengeStore:
    """Redis-backed challenge store. Expiry is enforced by SETEX."""

    def __init__(self, client: Redis, ttl: int = DEFAULT_TTL) -> None:
        self.ttl = ttl
        self._r = client

    @staticmethod
    def _key(namespace: Namespace, subject_key: str) -> str:
        return f"passkey:{Namespace(namespace).value}:challenge:{subject_key}"

    def put(
        self,
        namespace: Namespace,
        subject_key: str,
        challenge: str,
        ttl_seconds: Optional[int] = None,
        auxiliary: Optional[str] = None,
    ) -> None:
        ttl = self.ttl if ttl_seconds is None else ttl_seconds
        payload = {"challenge": challenge, "auxiliary": auxiliary, "created_at": time.time()}
        self._r.setex(self._key(namespace, subject_key), ttl, json.dumps(payload))

    def get(self, namespace: Namespace, subject_key: str) -> Optional[ChallengeRecord]:
        value = self._r.get(self._key(namespace, subject_key))
        if value is None:
            return None
        data = json.loads(value)
        return ChallengeRecord(
            challenge=data["challenge"],
            auxiliary=data.get("auxiliary"),
            created_at=data.get("created_at"),
        )

    def delete(self, namespace: Namespace, subject_key: str) -> None:
        self._r.delete(self._key(namespace, subject_key))

    def purge_expired(self) -> int:
        return 0

    def close(self) -> None:
        self._r.close()


ChallengeStore = ChallengeCache | RedisChallengeStore


def open_challenge_store(settings: Settings) -> ChallengeStore:
    """Pick the challenge backend from settings: Redis when REDIS_URL is set."""
    if settings.redis_url:
        logger.info("Challenge store: redis")
        return RedisChallengeStore(Redis.from_url(settings.redis_url), ttl=settings.challenge_ttl_seconds)
    logger.info("Challenge store: sqlite (%s)", settings.challenge_db_path)
    return ChallengeCache(settings.challenge_db_path, ttl=settings.challenge_ttl_seconds)
