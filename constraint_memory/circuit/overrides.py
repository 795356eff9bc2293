"""
Override Manager
================

Emergency, human-approved, time-boxed bypass of a BLOCK verdict.

LIFECYCLE:
    REQUESTED --approve(token)--> ACTIVE --consume (single use)--> USED
    REQUESTED --deny--> DENIED
    REQUESTED --(approval window elapsed)--> TIMEOUT
    ACTIVE --(expires_at passed)--> EXPIRED
    REQUESTED/ACTIVE --revoke / invalidate_all--> REVOKED

INVARIANTS:
- At most one live (REQUESTED or ACTIVE) override per constraint
- An override never touches circuit state
- Retirement of a constraint invalidates every live override for it
"""

from __future__ import annotations
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional
import logging
import secrets

from ..clock import Clock, SystemClock
from ..contracts.base import (
    InvalidInputError, InvalidTransitionError, NotFoundError, OverrideState,
    ReasonRequiredError, require_text
)
from ..contracts.events import DomainEvent, EventSink, EventType, discard_event
from ..contracts.models import AuditEntry, Override
from ..storage import StateStore
from .breaker import AuditSink

logger = logging.getLogger(__name__)

OVERRIDES_KEY = ".overrides.json"
TOKEN_ALPHABET = "ABCDEFGHJKMNPQRSTUVWXYZ23456789"

TokenFactory = Callable[[], str]


@dataclass
class OverrideConfig:
    """Override limits."""
    default_duration_minutes: float = 60
    max_duration_hours: float = 24
    approval_timeout_minutes: float = 5
    token_length: int = 6


def generate_token(length: int = 6) -> str:
    """Approval token without ambiguous characters (no 0/O, 1/I/L)."""
    return "".join(secrets.choice(TOKEN_ALPHABET) for _ in range(length))


class OverrideManager:
    """
    Override requests and approvals backed by .overrides.json.

    The file maps constraint_id -> list of overrides, oldest first. Reads
    report time-derived states (EXPIRED, TIMEOUT) without writing; the
    next mutation persists them.
    """

    def __init__(
        self,
        store: StateStore,
        clock: Optional[Clock] = None,
        config: Optional[OverrideConfig] = None,
        token_factory: Optional[TokenFactory] = None,
        audit_sink: Optional[AuditSink] = None,
        on_event: EventSink = discard_event
    ):
        self._store = store
        self._clock = clock or SystemClock()
        self._config = config or OverrideConfig()
        self._token_factory = token_factory or (lambda: generate_token(self._config.token_length))
        self._audit_sink = audit_sink
        self._on_event = on_event

    # =========================================================================
    # PERSISTENCE
    # =========================================================================

    def _load(self, now: datetime) -> Dict[str, List[Override]]:
        data = self._store.get(OVERRIDES_KEY) or {}
        return {
            cid: [self._effective(Override.from_dict(o), now) for o in records]
            for cid, records in data.items()
        }

    def _save(self, overrides: Dict[str, List[Override]]) -> None:
        self._store.put(OVERRIDES_KEY, {
            cid: [o.to_dict() for o in records] for cid, records in sorted(overrides.items())
        })

    def _effective(self, override: Override, now: datetime) -> Override:
        if override.state == OverrideState.ACTIVE and now >= override.expires_at:
            return replace(override, state=OverrideState.EXPIRED)
        if override.state == OverrideState.REQUESTED and now > self._approval_deadline(override):
            return replace(override, state=OverrideState.TIMEOUT)
        return override

    def _approval_deadline(self, override: Override) -> datetime:
        return override.requested_at + timedelta(minutes=self._config.approval_timeout_minutes)

    @staticmethod
    def _live_index(records: List[Override]) -> Optional[int]:
        for index in range(len(records) - 1, -1, -1):
            if records[index].state.is_live:
                return index
        return None

    # =========================================================================
    # QUERIES
    # =========================================================================

    def current(self, constraint_id: str) -> Optional[Override]:
        """The live override for a constraint, if any."""
        records = self._load(self._clock.now()).get(constraint_id, [])
        index = self._live_index(records)
        return None if index is None else records[index]

    def history(self, constraint_id: str) -> List[Override]:
        return list(self._load(self._clock.now()).get(constraint_id, []))

    def all(self) -> Dict[str, List[Override]]:
        return self._load(self._clock.now())

    # =========================================================================
    # REQUEST / DECISION
    # =========================================================================

    def request(
        self,
        constraint_id: str,
        requested_by: str,
        reason: str,
        duration: Optional[timedelta] = None,
        single_use: bool = True
    ) -> Override:
        requested_by = require_text(requested_by, "requested_by")
        if reason is None or not reason.strip():
            raise ReasonRequiredError("Override request requires a reason",
                                      context=(("constraint_id", constraint_id),))
        duration = duration if duration is not None else timedelta(minutes=self._config.default_duration_minutes)
        if duration <= timedelta(0) or duration > timedelta(hours=self._config.max_duration_hours):
            raise InvalidInputError(
                f"Override duration must be between 0 and {self._config.max_duration_hours}h",
                context=(("constraint_id", constraint_id), ("duration_seconds", str(duration.total_seconds())))
            )

        now = self._clock.now()
        overrides = self._load(now)
        records = overrides.setdefault(constraint_id, [])
        if self._live_index(records) is not None:
            raise InvalidInputError(
                f"Constraint {constraint_id} already has a live override",
                context=(("constraint_id", constraint_id),)
            )

        override = Override(
            constraint_id=constraint_id,
            reason=reason.strip(),
            requested_by=requested_by,
            requested_at=now,
            expires_at=now + duration,
            token=self._token_factory(),
            single_use=single_use,
        )
        self._audit(constraint_id, requested_by, "override_requested", None, override.state, override.reason)
        records.append(override)
        self._save(overrides)
        self._emit(override, now)
        logger.info("Override requested for %s by %s", constraint_id, requested_by)
        return override

    def approve(self, constraint_id: str, approver: str, token: str) -> Override:
        """
        Activate a pending request. The token must match and the approval
        window must still be open; the validity period starts now.
        """
        approver = require_text(approver, "approver")
        now = self._clock.now()
        overrides = self._load(now)
        records = overrides.get(constraint_id, [])
        pending = self._latest(records, (OverrideState.REQUESTED, OverrideState.TIMEOUT), constraint_id)

        if records[pending].state == OverrideState.TIMEOUT:
            self._save(overrides)
            raise InvalidTransitionError(
                f"Override approval window for {constraint_id} elapsed; request again",
                allowed=("request",),
                context=(("constraint_id", constraint_id),)
            )
        if (token or "").strip().upper() != records[pending].token:
            raise InvalidInputError("Override token does not match",
                                    context=(("constraint_id", constraint_id),))

        requested = records[pending]
        approved = replace(
            requested,
            state=OverrideState.ACTIVE,
            approver=approver,
            expires_at=now + (requested.expires_at - requested.requested_at),
        )
        records[pending] = approved
        self._save(overrides)
        self._audit(constraint_id, approver, "override_approved", requested.state, approved.state, requested.reason)
        self._emit(approved, now)
        logger.warning("Override ACTIVE for %s until %s (approved by %s)",
                       constraint_id, approved.expires_at.isoformat(), approver)
        return approved

    def deny(self, constraint_id: str, approver: str, reason: Optional[str] = None) -> Override:
        approver = require_text(approver, "approver")
        return self._close(constraint_id, approver, OverrideState.DENIED, (OverrideState.REQUESTED,),
                           "override_denied", reason)

    def revoke(self, constraint_id: str, actor: str, reason: Optional[str] = None) -> Override:
        actor = require_text(actor, "actor")
        return self._close(constraint_id, actor, OverrideState.REVOKED,
                           (OverrideState.REQUESTED, OverrideState.ACTIVE), "override_revoked", reason)

    def _close(
        self,
        constraint_id: str,
        actor: str,
        target: OverrideState,
        from_states: tuple,
        action: str,
        reason: Optional[str]
    ) -> Override:
        now = self._clock.now()
        overrides = self._load(now)
        records = overrides.get(constraint_id, [])
        index = self._latest(records, from_states, constraint_id)
        before = records[index]
        records[index] = replace(before, state=target, invalidated_reason=reason)
        self._save(overrides)
        self._audit(constraint_id, actor, action, before.state, target, reason)
        self._emit(records[index], now)
        return records[index]

    @staticmethod
    def _latest(records: List[Override], states: tuple, constraint_id: str) -> int:
        for index in range(len(records) - 1, -1, -1):
            if records[index].state in states:
                return index
        raise NotFoundError(
            f"No {'/'.join(s.value for s in states)} override for {constraint_id}",
            context=(("constraint_id", constraint_id),)
        )

    # =========================================================================
    # ENFORCEMENT PATH
    # =========================================================================

    def consume(self, constraint_id: str) -> Optional[Override]:
        """
        Use the active override, if any. Single-use overrides become USED.

        Returns None when no usable override exists.
        """
        now = self._clock.now()
        overrides = self._load(now)
        records = overrides.get(constraint_id, [])
        index = self._live_index(records)
        if index is None or not records[index].is_usable(now):
            return None

        override = records[index]
        if override.single_use:
            override = replace(override, used=True, state=OverrideState.USED)
            records[index] = override
            self._save(overrides)
            self._emit(override, now)
        self._audit(constraint_id, override.approver or override.requested_by, "override_used",
                    OverrideState.ACTIVE, override.state, override.reason)
        logger.warning("Override used for %s", constraint_id)
        return override

    def invalidate_all(self, constraint_id: str, reason: str) -> int:
        """Revoke every live override (constraint left BLOCK enforcement)."""
        now = self._clock.now()
        overrides = self._load(now)
        records = overrides.get(constraint_id, [])
        count = 0
        for index, override in enumerate(records):
            if override.state.is_live:
                records[index] = replace(override, state=OverrideState.REVOKED, invalidated_reason=reason)
                self._emit(records[index], now)
                count += 1
        if records:
            self._save(overrides)
        if count:
            logger.info("Invalidated %d override(s) for %s: %s", count, constraint_id, reason)
        return count

    # =========================================================================
    # INTERNALS
    # =========================================================================

    def _audit(
        self,
        constraint_id: str,
        actor: str,
        action: str,
        from_state: Optional[OverrideState],
        to_state: OverrideState,
        reason: Optional[str]
    ) -> None:
        if self._audit_sink is None:
            return
        self._audit_sink(constraint_id, AuditEntry(
            timestamp=self._clock.now(),
            actor=actor,
            action=action,
            from_state=from_state.value if from_state else None,
            to_state=to_state.value,
            reason=reason,
        ))

    def _emit(self, override: Override, at: datetime) -> None:
        self._on_event(DomainEvent(
            event_type=EventType.OVERRIDE_CHANGED,
            timestamp=at,
            entity_id=override.constraint_id,
            details=(('state', override.state.value),),
        ))
