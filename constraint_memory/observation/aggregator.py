"""
Observation Aggregator
======================

Groups evidence into Observations and maintains the R/C/D counters.

RESPONSIBILITY:
- Match new evidence against existing observations of the same kind
- Maintain recurrence, confirmation and disconfirmation counters
- Merge duplicates, archive stale observations, restore within the window

WHAT THIS MODULE MUST NOT DO:
=============================
- Decide eligibility (delegated to EligibilityEngine)
- Create or transition constraints
- Copy evidence into observations (ids only)
"""

from __future__ import annotations
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import List, Optional, Tuple
import logging
import re

from ..clock import Clock, SystemClock
from ..contracts.base import (
    InvalidInputError, NotFoundError, ObservationKind, RecoveryExpiredError,
    Severity, from_iso, require_text, to_iso
)
from ..contracts.events import DomainEvent, EventSink, EventType, discard_event
from ..contracts.models import Evidence, Observation
from ..storage import StateStore
from .eligibility import EligibilityEngine
from .similarity import Similarity

logger = logging.getLogger(__name__)

OBSERVATIONS_DIR = "observations"
ARCHIVE_DIR = "observations/archive"

_SLUG_RE = re.compile(r"[^a-z0-9]+")


@dataclass
class AggregatorConfig:
    """Matching thresholds by severity; configuration, not law."""
    critical_threshold: float = 0.85
    important_threshold: float = 0.80
    minor_threshold: float = 0.70
    fast_decision_seconds: float = 5.0
    recovery_window_days: int = 30
    max_slug_length: int = 60

    def threshold_for(self, severity: Severity) -> float:
        return {
            Severity.CRITICAL: self.critical_threshold,
            Severity.IMPORTANT: self.important_threshold,
            Severity.MINOR: self.minor_threshold,
        }[severity]


def slugify(text: str, max_length: int = 60) -> str:
    """Deterministic slug: lowercase words joined by '-', cut at a word boundary."""
    slug = _SLUG_RE.sub('-', text.lower()).strip('-')
    if len(slug) > max_length:
        slug = slug[:max_length].rsplit('-', 1)[0] or slug[:max_length]
    return slug or "observation"


class ObservationAggregator:
    """
    Evidence -> Observation aggregation.

    Every counter mutation is followed by an eligibility evaluation so that
    CandidateReady fires on exactly the mutation that makes an observation
    eligible.
    """

    def __init__(
        self,
        store: StateStore,
        similarity: Similarity,
        clock: Optional[Clock] = None,
        config: Optional[AggregatorConfig] = None,
        eligibility: Optional[EligibilityEngine] = None,
        on_event: EventSink = discard_event
    ):
        self._store = store
        self._similarity = similarity
        self._clock = clock or SystemClock()
        self._config = config or AggregatorConfig()
        self._eligibility = eligibility or EligibilityEngine(on_event=on_event)
        self._on_event = on_event

    @property
    def config(self) -> AggregatorConfig:
        return self._config

    # =========================================================================
    # RECURRENCE
    # =========================================================================

    def record(self, evidence: Evidence, slug: Optional[str] = None) -> Tuple[Observation, bool]:
        """
        Link evidence to the best matching observation or create a new one.

        Returns (observation, matched). `slug` names a newly created
        observation; it is ignored when the evidence matches.
        """
        description = require_text(evidence.description, "description")
        now = self._clock.now()

        for existing in self.all(kind=evidence.kind):
            if evidence.id in existing.evidence_ids:
                return (existing, True)

        best, score = self._best_match(description, evidence.kind, evidence.severity)
        if best is not None:
            updated = best.link_evidence(evidence, now)
            self._save(updated)
            logger.debug("Evidence %s matched %s (score %.3f)", evidence.id, best.slug, score)
            self._emit(EventType.OBSERVATION_MATCHED, now, updated.slug,
                       evidence_id=evidence.id, score=f"{score:.3f}", r_count=str(updated.r_count))
            self._eligibility.evaluate(best, updated)
            return (updated, True)

        created = Observation(
            slug=self._unique_slug(slug or description),
            kind=evidence.kind,
            description=description,
            severity=evidence.severity,
            created_at=now,
            updated_at=now,
        ).link_evidence(evidence, now)
        self._save(created)
        logger.info("Created observation %s", created.slug)
        self._emit(EventType.OBSERVATION_CREATED, now, created.slug, evidence_id=evidence.id)
        self._eligibility.evaluate(None, created)
        return (created, False)

    def _best_match(
        self,
        description: str,
        kind: ObservationKind,
        severity: Severity
    ) -> Tuple[Optional[Observation], float]:
        threshold = self._config.threshold_for(severity)
        best: Optional[Observation] = None
        best_score = 0.0
        for candidate in self.all(kind=kind):
            score = float(self._similarity(description, candidate.description))
            if not 0.0 <= score <= 1.0:
                raise InvalidInputError(
                    f"similarity returned {score}, expected a value in [0, 1]",
                    context=(("slug", candidate.slug),)
                )
            if score > threshold and score > best_score:
                best, best_score = candidate, score
        return (best, best_score)

    # =========================================================================
    # HUMAN DECISIONS
    # =========================================================================

    def confirm(self, slug: str, user_id: str, decision_latency: Optional[float] = None) -> Observation:
        """Record a confirmation. c_unique_users never double counts a user."""
        user_id = require_text(user_id, "user_id")
        current = self.get(slug)
        now = self._clock.now()
        updated = replace(
            current,
            c_count=current.c_count + 1,
            c_unique_users=current.c_unique_users | {user_id},
            updated_at=now,
        )
        return self._apply_decision(current, updated, EventType.CONFIRMED, user_id, decision_latency, now)

    def disconfirm(self, slug: str, user_id: str, decision_latency: Optional[float] = None) -> Observation:
        user_id = require_text(user_id, "user_id")
        current = self.get(slug)
        now = self._clock.now()
        updated = replace(
            current,
            d_count=current.d_count + 1,
            d_unique_users=current.d_unique_users | {user_id},
            updated_at=now,
        )
        return self._apply_decision(current, updated, EventType.DISCONFIRMED, user_id, decision_latency, now)

    def _apply_decision(
        self,
        before: Observation,
        after: Observation,
        event_type: EventType,
        user_id: str,
        decision_latency: Optional[float],
        now: datetime
    ) -> Observation:
        if isinstance(decision_latency, timedelta):
            decision_latency = decision_latency.total_seconds()
        if decision_latency is not None and decision_latency < 0:
            raise InvalidInputError("decision_latency cannot be negative",
                                    context=(("slug", before.slug),))

        self._save(after)
        self._emit(event_type, now, after.slug, user_id=user_id)

        if decision_latency is not None and decision_latency < self._config.fast_decision_seconds:
            # Bias signal only, the decision still counts
            logger.warning(
                "Fast decision on %s by %s: %.1fs (< %.1fs)",
                after.slug, user_id, decision_latency, self._config.fast_decision_seconds
            )
            self._emit(EventType.FAST_DECISION, now, after.slug,
                       user_id=user_id, latency_seconds=f"{decision_latency:.3f}")

        self._eligibility.evaluate(before, after)
        return after

    # =========================================================================
    # MAINTENANCE
    # =========================================================================

    def merge(self, source_slug: str, target_slug: str) -> Observation:
        """
        Fold a duplicate observation into another and remove the source.

        An observation backing a constraint can only be a merge target.
        """
        if source_slug == target_slug:
            raise InvalidInputError("Cannot merge an observation into itself",
                                    context=(("slug", source_slug),))
        source = self.get(source_slug)
        target = self.get(target_slug)
        if source.kind != target.kind:
            raise InvalidInputError(
                f"Cannot merge {source.kind.value} observation into {target.kind.value}",
                context=(("source", source_slug), ("target", target_slug))
            )
        if source.constraint_id:
            # The constraint's source_observation_id must keep resolving
            raise InvalidInputError(
                f"{source_slug} backs {source.constraint_id}; merge {target_slug} into it instead",
                context=(("source", source_slug), ("constraint_id", source.constraint_id))
            )

        now = self._clock.now()
        evidence_ids = target.evidence_ids + tuple(
            e for e in source.evidence_ids if e not in target.evidence_ids
        )
        merged = replace(
            target,
            r_count=target.r_count + source.r_count,
            c_count=target.c_count + source.c_count,
            d_count=target.d_count + source.d_count,
            c_unique_users=target.c_unique_users | source.c_unique_users,
            d_unique_users=target.d_unique_users | source.d_unique_users,
            sources=target.sources | source.sources,
            evidence_ids=evidence_ids,
            constraint_id=target.constraint_id,
            created_at=min(target.created_at, source.created_at),
            updated_at=now,
        )
        self._save(merged)
        self._store.delete(self._key(source_slug))
        logger.info("Merged observation %s into %s", source_slug, target_slug)
        self._emit(EventType.OBSERVATION_MERGED, now, target_slug, source=source_slug)
        self._eligibility.evaluate(target, merged)
        return merged

    def link_constraint(self, slug: str, constraint_id: str) -> Observation:
        current = self.get(slug)
        if current.constraint_id and current.constraint_id != constraint_id:
            raise InvalidInputError(
                f"Observation {slug} already backs {current.constraint_id}",
                context=(("slug", slug), ("constraint_id", current.constraint_id))
            )
        updated = replace(current, constraint_id=constraint_id, updated_at=self._clock.now())
        self._save(updated)
        return updated

    def archive(self, slug: str, actor: str) -> Observation:
        """Soft-delete: move to observations/archive, restorable within the window."""
        actor = require_text(actor, "actor")
        current = self.get(slug)
        now = self._clock.now()
        self._store.move(self._key(slug), self._archive_key(slug), {
            'observation': current.to_dict(),
            'archived_at': to_iso(now),
            'archived_by': actor,
        })
        self._emit(EventType.OBSERVATION_ARCHIVED, now, slug, actor=actor)
        return current

    def restore(self, slug: str, actor: str) -> Observation:
        """Bring an archived observation back; RecoveryExpiredError past the window."""
        actor = require_text(actor, "actor")
        record = self._store.get(self._archive_key(slug))
        if record is None:
            raise NotFoundError(f"Archived observation not found: {slug}", context=(("slug", slug),))
        now = self._clock.now()
        archived_at = from_iso(record['archived_at'])
        deadline = archived_at + timedelta(days=self._config.recovery_window_days)
        if now > deadline:
            raise RecoveryExpiredError(
                f"Observation {slug} was archived {(now - archived_at).days} days ago; "
                f"recovery window is {self._config.recovery_window_days} days",
                context=(("slug", slug), ("archived_at", record['archived_at']))
            )
        if self._store.exists(self._key(slug)):
            raise InvalidInputError(f"Observation {slug} already exists", context=(("slug", slug),))

        observation = replace(Observation.from_dict(record['observation']), updated_at=now)
        self._store.move(self._archive_key(slug), self._key(slug), observation.to_dict())
        self._emit(EventType.OBSERVATION_RESTORED, now, slug, actor=actor)
        return observation

    # =========================================================================
    # QUERIES (read-only)
    # =========================================================================

    def get(self, slug: str) -> Observation:
        data = self._store.get(self._key(slug))
        if data is None:
            raise NotFoundError(f"Observation not found: {slug}", context=(("slug", slug),))
        return Observation.from_dict(data)

    def all(self, kind: Optional[ObservationKind] = None) -> List[Observation]:
        observations = [Observation.from_dict(self._store.get(key)) for key in self._store.list(OBSERVATIONS_DIR)]
        if kind is not None:
            observations = [o for o in observations if o.kind == kind]
        return observations

    def archived(self) -> List[Tuple[Observation, datetime]]:
        records = [self._store.get(key) for key in self._store.list(ARCHIVE_DIR)]
        return [(Observation.from_dict(r['observation']), from_iso(r['archived_at'])) for r in records]

    # =========================================================================
    # INTERNALS
    # =========================================================================

    def _unique_slug(self, text: str) -> str:
        base = slugify(text, self._config.max_slug_length)
        slug, n = base, 2
        while self._store.exists(self._key(slug)) or self._store.exists(self._archive_key(slug)):
            slug = f"{base}-{n}"
            n += 1
        return slug

    def _save(self, observation: Observation) -> None:
        self._store.put(self._key(observation.slug), observation.to_dict())

    def _emit(self, event_type: EventType, at: datetime, entity_id: str, **details: str) -> None:
        self._on_event(DomainEvent(
            event_type=event_type,
            timestamp=at,
            entity_id=entity_id,
            details=tuple(sorted(details.items())),
        ))

    @staticmethod
    def _key(slug: str) -> str:
        return f"{OBSERVATIONS_DIR}/{slug}.json"

    @staticmethod
    def _archive_key(slug: str) -> str:
        return f"{ARCHIVE_DIR}/{slug}.json"
