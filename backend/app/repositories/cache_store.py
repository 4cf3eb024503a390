"""Key-value cache store backed by SQLAlchemy tables."""

from __future__ import annotations

import time
import uuid
from collections.abc import Callable, Iterable, Iterator
from contextlib import contextmanager
from typing import Any

from loguru import logger
from sqlalchemy import delete, or_, select, text, update
from sqlalchemy.exc import IntegrityError, OperationalError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from app.errors import CacheWriteError, LockUnavailable, StoreUnavailable
from app.models import CacheCounter, CacheEntry, CacheLock, CacheSetMember

_CONNECTION_MARKERS = (
    "unable to open",
    "could not connect",
    "connection refused",
    "server closed the connection",
    "could not translate host name",
    "no such table",
)


def _is_connection_failure(exc: OperationalError) -> bool:
    if getattr(exc, "connection_invalidated", False):
        return True
    message = str(exc).lower()
    return any(marker in message for marker in _CONNECTION_MARKERS)


def _glob_to_like(pattern: str) -> str:
    escaped = pattern.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return escaped.replace("*", "%").replace("?", "_")


class CacheStore:
    """Persistent get/set store with set indexes, counters and advisory locks.

    Every public operation runs in its own short transaction; there is no
    cross-key atomicity. Expiry is evaluated against the injected clock so
    tests can simulate the passage of time.
    """

    def __init__(
        self,
        session_factory: sessionmaker[Session] | Callable[[], Session],
        *,
        clock: Callable[[], float] = time.time,
        lock_poll_seconds: float = 0.05,
    ) -> None:
        self._session_factory = session_factory
        self._clock = clock
        self._lock_poll_seconds = lock_poll_seconds

    # ------------------------------------------------------------------
    # Plumbing

    @contextmanager
    def _scope(self, *, write: bool) -> Iterator[Session]:
        session = self._session_factory()
        try:
            yield session
            if write:
                session.commit()
        except OperationalError as exc:
            session.rollback()
            if not write or _is_connection_failure(exc):
                raise StoreUnavailable(str(exc)) from exc
            raise CacheWriteError(str(exc)) from exc
        except SQLAlchemyError as exc:
            session.rollback()
            if write:
                raise CacheWriteError(str(exc)) from exc
            raise StoreUnavailable(str(exc)) from exc
        finally:
            session.close()

    def now(self) -> float:
        return self._clock()

    def ping(self) -> None:
        """Raise StoreUnavailable when the backing database cannot be queried."""

        with self._scope(write=False) as session:
            session.execute(text("SELECT 1"))
            session.execute(select(CacheCounter.key).limit(1))

    # ------------------------------------------------------------------
    # Plain values

    def get(self, key: str) -> Any | None:
        with self._scope(write=False) as session:
            entry = session.get(CacheEntry, key)
            if entry is None:
                return None
            if entry.expires_at is not None and entry.expires_at <= self.now():
                return None
            return entry.value

    def get_many(self, keys: Iterable[str]) -> dict[str, Any]:
        key_list = list(keys)
        if not key_list:
            return {}
        now = self.now()
        with self._scope(write=False) as session:
            rows = session.execute(
                select(CacheEntry).where(
                    CacheEntry.key.in_(key_list),
                    or_(CacheEntry.expires_at.is_(None), CacheEntry.expires_at > now),
                )
            ).scalars()
            return {row.key: row.value for row in rows}

    def set(self, key: str, value: Any, *, ttl: float | None = None) -> None:
        expires_at = self.now() + ttl if ttl is not None else None
        with self._scope(write=True) as session:
            entry = session.get(CacheEntry, key)
            if entry is None:
                session.add(CacheEntry(key=key, value=value, expires_at=expires_at))
            else:
                entry.value = value
                entry.expires_at = expires_at

    def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        with self._scope(write=True) as session:
            result = session.execute(delete(CacheEntry).where(CacheEntry.key.in_(keys)))
            return result.rowcount or 0

    def keys(self, pattern: str = "*") -> list[str]:
        """Return live keys matching a glob pattern (``*`` and ``?`` wildcards)."""

        now = self.now()
        with self._scope(write=False) as session:
            query = (
                select(CacheEntry.key)
                .where(
                    CacheEntry.key.like(_glob_to_like(pattern), escape="\\"),
                    or_(CacheEntry.expires_at.is_(None), CacheEntry.expires_at > now),
                )
                .order_by(CacheEntry.key)
            )
            return list(session.execute(query).scalars())

    # ------------------------------------------------------------------
    # Set membership indexes

    def sadd(self, set_key: str, *members: str) -> int:
        wanted = {member for member in members if member}
        if not wanted:
            return 0
        with self._scope(write=True) as session:
            existing = set(
                session.execute(
                    select(CacheSetMember.member).where(
                        CacheSetMember.set_key == set_key,
                        CacheSetMember.member.in_(wanted),
                    )
                ).scalars()
            )
            missing = sorted(wanted - existing)
            for member in missing:
                session.add(CacheSetMember(set_key=set_key, member=member))
            return len(missing)

    def srem(self, set_key: str, *members: str) -> int:
        if not members:
            return 0
        with self._scope(write=True) as session:
            result = session.execute(
                delete(CacheSetMember).where(
                    CacheSetMember.set_key == set_key,
                    CacheSetMember.member.in_(members),
                )
            )
            return result.rowcount or 0

    def smembers(self, set_key: str) -> set[str]:
        with self._scope(write=False) as session:
            return set(
                session.execute(
                    select(CacheSetMember.member).where(CacheSetMember.set_key == set_key)
                ).scalars()
            )

    def sismember(self, set_key: str, member: str) -> bool:
        with self._scope(write=False) as session:
            found = session.get(CacheSetMember, {"set_key": set_key, "member": member})
            return found is not None

    def sets_containing(self, member: str, prefix: str = "") -> list[str]:
        with self._scope(write=False) as session:
            query = select(CacheSetMember.set_key).where(CacheSetMember.member == member)
            if prefix:
                query = query.where(
                    CacheSetMember.set_key.like(_glob_to_like(prefix) + "%", escape="\\")
                )
            return sorted(session.execute(query).scalars())

    # ------------------------------------------------------------------
    # Counters

    def incr(self, key: str, amount: int = 1) -> int:
        with self._scope(write=True) as session:
            result = session.execute(
                update(CacheCounter)
                .where(CacheCounter.key == key)
                .values(value=CacheCounter.value + amount)
            )
            if not result.rowcount:
                session.add(CacheCounter(key=key, value=amount))
                session.flush()
            return int(
                session.execute(
                    select(CacheCounter.value).where(CacheCounter.key == key)
                ).scalar_one()
            )

    def decr(self, key: str, amount: int = 1) -> int:
        return self.incr(key, -amount)

    def counter(self, key: str) -> int:
        with self._scope(write=False) as session:
            value = session.execute(
                select(CacheCounter.value).where(CacheCounter.key == key)
            ).scalar_one_or_none()
            return int(value or 0)

    # ------------------------------------------------------------------
    # Advisory locks

    def acquire_lock(self, key: str, owner: str, ttl: float) -> bool:
        now = self.now()
        expires_at = now + ttl
        try:
            with self._scope(write=True) as session:
                result = session.execute(
                    update(CacheLock)
                    .where(
                        CacheLock.key == key,
                        or_(CacheLock.expires_at <= now, CacheLock.owner == owner),
                    )
                    .values(owner=owner, expires_at=expires_at)
                )
                if result.rowcount:
                    return True
                if session.get(CacheLock, key) is not None:
                    return False
                session.add(CacheLock(key=key, owner=owner, expires_at=expires_at))
                session.flush()
                return True
        except CacheWriteError as exc:
            if isinstance(exc.__cause__, IntegrityError):
                return False
            raise

    def release_lock(self, key: str, owner: str) -> bool:
        with self._scope(write=True) as session:
            result = session.execute(
                delete(CacheLock).where(CacheLock.key == key, CacheLock.owner == owner)
            )
            return bool(result.rowcount)

    def lock_owner(self, key: str) -> str | None:
        with self._scope(write=False) as session:
            lock = session.get(CacheLock, key)
            if lock is None or lock.expires_at <= self.now():
                return None
            return lock.owner

    @contextmanager
    def lock(
        self,
        key: str,
        *,
        ttl: float,
        wait: float = 0.0,
        owner: str | None = None,
    ) -> Iterator[str]:
        """Hold ``key`` for the duration of the block or raise LockUnavailable.

        Waiting is measured in wall-clock time, independent of the injected
        clock used for expiry.
        """

        token = owner or uuid.uuid4().hex
        deadline = time.monotonic() + wait
        while not self.acquire_lock(key, token, ttl):
            if time.monotonic() >= deadline:
                holder = self.lock_owner(key)
                raise LockUnavailable(f"{key} is held by {holder or 'another writer'}")
            time.sleep(self._lock_poll_seconds)
        try:
            yield token
        finally:
            try:
                self.release_lock(key, token)
            except (CacheWriteError, StoreUnavailable):
                logger.warning("Failed to release lock {}; it expires after {}s", key, ttl)


__all__ = ["CacheStore"]
