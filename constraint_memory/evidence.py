"""
Evidence Store
==============

Append-only storage of raw failure/pattern occurrences.

INVARIANTS:
- No updates or deletes - append only
- Every entry has a monotonic sequence number
- Hash chain for integrity verification
- Identity is derived from content, so re-writing the same evidence is a no-op

Observations reference evidence by id; they never copy it.
"""

from __future__ import annotations
from dataclasses import replace
from datetime import datetime
from typing import Callable, List, Optional, Tuple
import hashlib
import logging

from .clock import Clock, SystemClock
from .contracts.base import (
    InvalidInputError, NotFoundError, ObservationKind, Severity,
    require_text, sha256_digest, short_hash, to_iso
)
from .contracts.events import DomainEvent, EventSink, EventType, discard_event
from .contracts.models import Evidence
from .storage import StateStore

logger = logging.getLogger(__name__)

Hasher = Callable[[bytes], str]
Verifier = Callable[[str, str], bool]

EVIDENCE_DIR = "evidence"
HEAD_KEY = ".evidence-head.json"


def compute_entry_hash(sequence: int, evidence_id: str, content_hash: str, previous_hash: str) -> str:
    content = f"{sequence}|{evidence_id}|{content_hash}|{previous_hash}"
    return hashlib.sha256(content.encode()).hexdigest()


class EvidenceStore:
    """
    Append-only evidence log.

    GUARANTEES:
    ===========
    1. NO updates - entries are immutable once written
    2. NO deletes - the log only grows
    3. Verifiable - hash chain ensures integrity
    4. Fail closed - a signed entry that does not verify is rejected
    """

    def __init__(
        self,
        store: StateStore,
        clock: Optional[Clock] = None,
        hasher: Hasher = sha256_digest,
        verifier: Optional[Verifier] = None,
        on_event: EventSink = discard_event
    ):
        self._store = store
        self._clock = clock or SystemClock()
        self._hasher = hasher
        self._verifier = verifier
        self._on_event = on_event

    # -------------------------------------------------------------------------
    # Construction
    # -------------------------------------------------------------------------

    def build(
        self,
        description: str,
        source: str,
        session_id: str,
        user_id: str,
        kind: ObservationKind = ObservationKind.FAILURE,
        severity: Severity = Severity.IMPORTANT,
        timestamp: Optional[datetime] = None,
        signature: Optional[str] = None
    ) -> Evidence:
        """
        Create an unsaved Evidence with deterministic identity.

        Raises InvalidInputError for empty description or provenance.
        """
        description = require_text(description, "description")
        source = require_text(source, "source")
        session_id = require_text(session_id, "session_id")
        user_id = require_text(user_id, "user_id")
        timestamp = timestamp or self._clock.now()

        payload = "|".join((
            kind.value, source, session_id, user_id, to_iso(timestamp), description
        )).encode('utf-8')
        content_hash = self._hasher(payload)

        return Evidence(
            id=f"ev_{short_hash(content_hash, 16)}",
            description=description,
            source=source,
            session_id=session_id,
            user_id=user_id,
            timestamp=timestamp,
            kind=kind,
            severity=severity,
            content_hash=content_hash,
            signature=signature,
        )

    # -------------------------------------------------------------------------
    # Write path
    # -------------------------------------------------------------------------

    def write(self, evidence: Evidence) -> Evidence:
        """
        Append evidence to the log.

        This is the ONLY write operation. Returns the stored entry with its
        sequence and chain hashes.
        """
        require_text(evidence.description, "description")
        existing = self._store.get(self._key(evidence.id))
        if existing is not None:
            return Evidence.from_dict(existing)

        if evidence.signature is not None and self._verifier is not None:
            if not self._verifier(evidence.content_hash, evidence.signature):
                raise InvalidInputError(
                    f"Evidence {evidence.id} signature verification failed",
                    context=(("evidence_id", evidence.id),)
                )

        head_sequence, head_hash = self.head()
        sequence = head_sequence + 1
        stored = Evidence(
            id=evidence.id,
            description=evidence.description,
            source=evidence.source,
            session_id=evidence.session_id,
            user_id=evidence.user_id,
            timestamp=evidence.timestamp,
            kind=evidence.kind,
            severity=evidence.severity,
            content_hash=evidence.content_hash,
            signature=evidence.signature,
            sequence=sequence,
            previous_hash=head_hash,
            entry_hash="",
        )
        entry_hash = compute_entry_hash(sequence, stored.id, stored.content_hash, head_hash)
        stored = replace(stored, entry_hash=entry_hash)

        # Entry before head; head() recovers a pointer left one behind
        self._store.put(self._key(stored.id), stored.to_dict())
        self._store.put(HEAD_KEY, {'sequence': sequence, 'hash': entry_hash})

        self._on_event(DomainEvent(
            event_type=EventType.EVIDENCE_RECORDED,
            timestamp=self._clock.now(),
            entity_id=stored.id,
            details=(('sequence', str(sequence)), ('source', stored.source)),
        ))
        return stored

    # -------------------------------------------------------------------------
    # Read path
    # -------------------------------------------------------------------------

    def head(self) -> Tuple[int, str]:
        """
        (sequence, entry_hash) of the last entry.

        The head pointer is trusted while it counts as many entries as are
        stored. Otherwise it was left behind by an interrupted write and the
        last stored entry is used instead.
        """
        data = self._store.get(HEAD_KEY) or {'sequence': 0, 'hash': ""}
        stored_count = len(self._store.list(EVIDENCE_DIR))
        if data['sequence'] == stored_count:
            return (data['sequence'], data['hash'])

        entries = self.all()
        if not entries:
            return (0, "")
        last = entries[-1]
        logger.warning(
            "Evidence head at sequence %d but %d entries stored; using %s (sequence %d)",
            data['sequence'], stored_count, last.id, last.sequence
        )
        return (last.sequence, last.entry_hash)

    def get(self, evidence_id: str) -> Evidence:
        data = self._store.get(self._key(evidence_id))
        if data is None:
            raise NotFoundError(
                f"Evidence not found: {evidence_id}",
                context=(("evidence_id", evidence_id),)
            )
        return Evidence.from_dict(data)

    def all(self) -> List[Evidence]:
        """All evidence in sequence order."""
        entries = [Evidence.from_dict(self._store.get(key)) for key in self._store.list(EVIDENCE_DIR)]
        return sorted(entries, key=lambda e: e.sequence)

    def verify_integrity(self) -> Tuple[bool, Optional[str]]:
        """
        Verify sequence continuity and the hash chain.

        Returns (is_valid, error_message).
        """
        expected_previous = ""
        for index, entry in enumerate(self.all(), start=1):
            if entry.sequence != index:
                return (False, f"Sequence gap: expected {index}, got {entry.sequence} ({entry.id})")
            if entry.previous_hash != expected_previous:
                return (False, f"Hash chain broken at sequence {entry.sequence}")
            recomputed = compute_entry_hash(entry.sequence, entry.id, entry.content_hash, entry.previous_hash)
            if recomputed != entry.entry_hash:
                return (False, f"Corrupt entry at sequence {entry.sequence}: hash mismatch")
            expected_previous = entry.entry_hash

        head_sequence, head_hash = self.head()
        if head_hash != expected_previous:
            return (False, f"Head hash does not match last entry (head sequence {head_sequence})")
        return (True, None)

    @staticmethod
    def _key(evidence_id: str) -> str:
        return f"{EVIDENCE_DIR}/{evidence_id}.json"
