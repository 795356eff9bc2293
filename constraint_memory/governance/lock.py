"""
Governance Lock
===============

Single-writer token for the governed resource, stored at .governance.lock.

RULES:
- acquire() fails fast with ConcurrentModificationError while another
  holder's lock is unexpired; no retry happens here
- Re-acquiring by the current holder renews the TTL
- An expired lock is free for anyone; expiry is the only recovery
- heartbeat()/release() by a holder that does not own the lock -> NotFoundError
- Release deletes the lock only if it is still the one that was read
"""

from __future__ import annotations
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional
import logging
import threading

from ..clock import Clock, SystemClock
from ..contracts.base import ConcurrentModificationError, NotFoundError, require_text, to_iso
from ..contracts.events import DomainEvent, EventSink, EventType, discard_event
from ..contracts.models import GovernanceLock
from ..storage import StateStore

logger = logging.getLogger(__name__)

LOCK_KEY = ".governance.lock"


@dataclass
class LockConfig:
    ttl_seconds: float = 300
    heartbeat_interval_seconds: float = 60


class GovernanceLockManager:
    """
    TTL lock over the state store.

    Mutual exclusion comes from the store: create_exclusive() for a free
    lock and compare_and_put() for takeover/renewal. The in-process mutex
    only keeps this manager's own threads from interleaving.
    """

    def __init__(
        self,
        store: StateStore,
        clock: Optional[Clock] = None,
        config: Optional[LockConfig] = None,
        on_event: EventSink = discard_event
    ):
        self._store = store
        self._clock = clock or SystemClock()
        self._config = config or LockConfig()
        self._on_event = on_event
        self._mutex = threading.Lock()

    @property
    def config(self) -> LockConfig:
        return self._config

    def _read(self) -> Optional[dict]:
        return self._store.get(LOCK_KEY)

    def current(self) -> Optional[GovernanceLock]:
        """The unexpired lock, or None."""
        data = self._read()
        if data is None:
            return None
        lock = GovernanceLock.from_dict(data)
        return None if lock.is_expired(self._clock.now()) else lock

    def acquire(self, holder_id: str) -> GovernanceLock:
        holder_id = require_text(holder_id, "holder_id")
        with self._mutex:
            now = self._clock.now()
            fresh = GovernanceLock(
                holder_id=holder_id,
                acquired_at=now,
                expires_at=now + timedelta(seconds=self._config.ttl_seconds),
            )
            if self._store.create_exclusive(LOCK_KEY, fresh.to_dict()):
                self._emit(EventType.LOCK_ACQUIRED, fresh)
                logger.debug("Governance lock acquired by %s", holder_id)
                return fresh

            stored = self._read()
            if stored is None:
                raise ConcurrentModificationError(
                    "Governance lock released while acquiring; request it again",
                    context=(("holder_id", holder_id),)
                )
            existing = GovernanceLock.from_dict(stored)
            if existing.holder_id != holder_id and not existing.is_expired(now):
                raise ConcurrentModificationError(
                    f"Governance lock held by {existing.holder_id} until {to_iso(existing.expires_at)}",
                    context=(("holder_id", existing.holder_id), ("expires_at", to_iso(existing.expires_at)))
                )

            if existing.holder_id == holder_id and not existing.is_expired(now):
                lock = GovernanceLock(holder_id, existing.acquired_at, fresh.expires_at)
            else:
                if existing.holder_id != holder_id:
                    logger.info("Taking over expired governance lock from %s", existing.holder_id)
                lock = fresh

            if not self._store.compare_and_put(LOCK_KEY, stored, lock.to_dict()):
                raise ConcurrentModificationError(
                    "Governance lock changed while acquiring",
                    context=(("holder_id", holder_id),)
                )
            self._emit(EventType.LOCK_ACQUIRED, lock)
            return lock

    def heartbeat(self, holder_id: str) -> GovernanceLock:
        """Extend expires_at by the TTL."""
        holder_id = require_text(holder_id, "holder_id")
        with self._mutex:
            stored, existing = self._owned(holder_id)
            renewed = GovernanceLock(
                holder_id=holder_id,
                acquired_at=existing.acquired_at,
                expires_at=self._clock.now() + timedelta(seconds=self._config.ttl_seconds),
            )
            if not self._store.compare_and_put(LOCK_KEY, stored, renewed.to_dict()):
                raise ConcurrentModificationError(
                    "Governance lock changed during heartbeat",
                    context=(("holder_id", holder_id),)
                )
            return renewed

    def release(self, holder_id: str) -> None:
        holder_id = require_text(holder_id, "holder_id")
        with self._mutex:
            stored, existing = self._owned(holder_id)
            if not self._store.compare_and_delete(LOCK_KEY, stored):
                raise NotFoundError(
                    f"Governance lock changed before {holder_id} could release it",
                    context=(("holder_id", holder_id),)
                )
            self._emit(EventType.LOCK_RELEASED, existing)
            logger.debug("Governance lock released by %s", holder_id)

    def release_if_held(self, holder_id: str) -> bool:
        """Release without raising; False when the lock was lost meanwhile."""
        with self._mutex:
            stored = self._read()
            if stored is None or stored.get('holder_id') != holder_id:
                return False
            # Another process may have taken over since the read
            if not self._store.compare_and_delete(LOCK_KEY, stored):
                return False
            self._emit(EventType.LOCK_RELEASED, GovernanceLock.from_dict(stored))
            return True

    def needs_heartbeat(self, lock: GovernanceLock) -> bool:
        remaining = (lock.expires_at - self._clock.now()).total_seconds()
        return remaining <= self._config.ttl_seconds - self._config.heartbeat_interval_seconds

    def _owned(self, holder_id: str):
        stored = self._read()
        if stored is None or stored.get('holder_id') != holder_id:
            raise NotFoundError(
                f"Governance lock is not held by {holder_id}",
                context=(("holder_id", holder_id),)
            )
        return stored, GovernanceLock.from_dict(stored)

    def _emit(self, event_type: EventType, lock: GovernanceLock) -> None:
        self._on_event(DomainEvent(
            event_type=event_type,
            timestamp=self._clock.now(),
            entity_id=lock.holder_id,
            details=(('expires_at', to_iso(lock.expires_at)),),
        ))
