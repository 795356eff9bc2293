"""
Base Contracts and Shared Types

These are the foundational types used across all layers.
Enumerations are closed-world: every state a record can be in is listed here.

BOUNDARY ENFORCEMENT:
=====================
- This module is READ-ONLY from all layers
- No behavior beyond pure conversions, no side effects
- Errors are explicit and typed, never silent
"""

from __future__ import annotations
from datetime import datetime, timezone
from enum import Enum, auto
from typing import Optional, Tuple
import hashlib


# =============================================================================
# ERROR STATES (Explicit, never silent)
# =============================================================================

class ErrorCode(Enum):
    """
    Explicit error codes for deterministic error handling.
    Every exception raised by the core carries exactly one of these.
    """
    NOT_FOUND = auto()
    INVALID_INPUT = auto()
    INVALID_TRANSITION = auto()
    CONCURRENT_MODIFICATION = auto()
    THRESHOLD_BLOCKED = auto()
    REASON_REQUIRED = auto()
    RECOVERY_EXPIRED = auto()
    SCHEMA_MIGRATION_FAILED = auto()
    CORRUPT_STATE = auto()


class ConstraintMemoryError(Exception):
    """
    Root of the error taxonomy.

    Errors carry a code and an immutable context tuple so callers can
    report them without parsing messages.
    """
    code: ErrorCode = ErrorCode.INVALID_INPUT

    def __init__(self, message: str, context: Tuple[Tuple[str, str], ...] = ()):
        super().__init__(message)
        self.message = message
        self.context = context

    def with_context(self, key: str, value: str) -> 'ConstraintMemoryError':
        self.context = self.context + ((key, value),)
        return self

    def to_dict(self) -> dict:
        return {
            'code': self.code.name,
            'message': self.message,
            'context': dict(self.context),
        }


class NotFoundError(ConstraintMemoryError):
    """Unknown slug, constraint, circuit, override or lock holder."""
    code = ErrorCode.NOT_FOUND


class InvalidInputError(ConstraintMemoryError):
    """Empty or malformed evidence, actor, reason or parameter."""
    code = ErrorCode.INVALID_INPUT


class ReasonRequiredError(InvalidInputError):
    """A transition or operation that mandates a reason was given none."""
    code = ErrorCode.REASON_REQUIRED


class InvalidTransitionError(ConstraintMemoryError):
    """Disallowed state change. Reports the allowed transition set."""
    code = ErrorCode.INVALID_TRANSITION

    def __init__(
        self,
        message: str,
        allowed: Tuple[str, ...] = (),
        context: Tuple[Tuple[str, str], ...] = ()
    ):
        super().__init__(message, context)
        self.allowed = tuple(allowed)

    def to_dict(self) -> dict:
        data = super().to_dict()
        data['allowed'] = list(self.allowed)
        return data


class ConcurrentModificationError(ConstraintMemoryError):
    """Lock contention or version mismatch on write."""
    code = ErrorCode.CONCURRENT_MODIFICATION


class ThresholdBlockedError(ConstraintMemoryError):
    """Circuit is OPEN: the action is refused until cooldown or override."""
    code = ErrorCode.THRESHOLD_BLOCKED

    def __init__(
        self,
        message: str,
        constraint_id: str,
        cooldown_remaining_seconds: float,
        override_hint: str,
        context: Tuple[Tuple[str, str], ...] = ()
    ):
        super().__init__(message, context)
        self.constraint_id = constraint_id
        self.cooldown_remaining_seconds = cooldown_remaining_seconds
        self.override_hint = override_hint

    def to_dict(self) -> dict:
        data = super().to_dict()
        data.update({
            'constraint_id': self.constraint_id,
            'cooldown_remaining_seconds': self.cooldown_remaining_seconds,
            'override_hint': self.override_hint,
        })
        return data


class RecoveryExpiredError(ConstraintMemoryError):
    """Soft-delete recovery window has elapsed."""
    code = ErrorCode.RECOVERY_EXPIRED


class SchemaMigrationError(ConstraintMemoryError):
    """A schema migration step failed; the stored document was left untouched."""
    code = ErrorCode.SCHEMA_MIGRATION_FAILED


class CorruptStateError(ConstraintMemoryError):
    """A persisted document could not be parsed."""
    code = ErrorCode.CORRUPT_STATE


# =============================================================================
# CLOSED-WORLD ENUMERATIONS
# =============================================================================

class ObservationKind(Enum):
    FAILURE = "failure"
    PATTERN = "pattern"


class Severity(Enum):
    CRITICAL = "CRITICAL"
    IMPORTANT = "IMPORTANT"
    MINOR = "MINOR"


class EvidenceTier(Enum):
    """Evidence strength derived purely from the recurrence counter."""
    WEAK = "weak"
    EMERGING = "emerging"
    STRONG = "strong"
    ESTABLISHED = "established"

    @staticmethod
    def from_recurrence(r_count: int) -> 'EvidenceTier':
        if r_count >= 5:
            return EvidenceTier.ESTABLISHED
        if r_count >= 3:
            return EvidenceTier.STRONG
        if r_count >= 2:
            return EvidenceTier.EMERGING
        return EvidenceTier.WEAK


class ConstraintState(Enum):
    DRAFT = "draft"
    ACTIVE = "active"
    RETIRING = "retiring"
    RETIRED = "retired"
    DELETED = "deleted"

    @property
    def is_enforced(self) -> bool:
        return self in (ConstraintState.ACTIVE, ConstraintState.RETIRING)

    @property
    def is_terminal(self) -> bool:
        return self in (ConstraintState.RETIRED, ConstraintState.DELETED)


class EnforcementMode(Enum):
    """How a violating action is treated for a constraint in a given state."""
    BLOCK = "BLOCK"
    WARN = "WARN"
    NONE = "NONE"

    @staticmethod
    def for_state(state: ConstraintState) -> 'EnforcementMode':
        if state == ConstraintState.ACTIVE:
            return EnforcementMode.BLOCK
        if state == ConstraintState.RETIRING:
            return EnforcementMode.WARN
        return EnforcementMode.NONE


class CircuitStatus(Enum):
    CLOSED = "CLOSED"
    OPEN = "OPEN"
    HALF_OPEN = "HALF_OPEN"


class OverrideState(Enum):
    REQUESTED = "REQUESTED"
    ACTIVE = "ACTIVE"
    USED = "USED"
    EXPIRED = "EXPIRED"
    REVOKED = "REVOKED"
    DENIED = "DENIED"
    TIMEOUT = "TIMEOUT"

    @property
    def is_live(self) -> bool:
        return self in (OverrideState.REQUESTED, OverrideState.ACTIVE)


class AlertStatus(Enum):
    OPEN = "open"
    ACKNOWLEDGED = "acknowledged"
    RESOLVED = "resolved"


class AdoptionPhase(Enum):
    LEARNING = "LEARNING"
    STABILIZING = "STABILIZING"
    MATURE = "MATURE"
    PROBLEMATIC = "PROBLEMATIC"


# =============================================================================
# TEMPORAL HELPERS (UTC only, never local time)
# =============================================================================

def ensure_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def to_iso(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    return ensure_utc(value).isoformat()


def from_iso(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    return ensure_utc(datetime.fromisoformat(value.replace('Z', '+00:00')))


# =============================================================================
# IDENTITY HELPERS
# =============================================================================

def sha256_digest(payload: bytes) -> str:
    """Default content hash used when no evidence packet service is injected."""
    return hashlib.sha256(payload).hexdigest()


def short_hash(seed: str, length: int = 12) -> str:
    return hashlib.sha256(seed.encode('utf-8')).hexdigest()[:length]


def require_text(value: Optional[str], field_name: str) -> str:
    """Return the stripped value or raise InvalidInputError if blank."""
    if value is None or not isinstance(value, str) or not value.strip():
        raise InvalidInputError(
            f"{field_name} must be a non-empty string",
            context=(("field", field_name),)
        )
    return value.strip()
