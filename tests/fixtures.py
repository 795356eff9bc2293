"""
Test Fixtures

Deterministic builders for engine tests.
All fixtures are explicit: fixed timestamps, stub similarity, scripted
override tokens. No live model and no wall clock.
"""

from datetime import datetime, timedelta, timezone
from typing import Dict, Iterable, Optional, Tuple

from constraint_memory.clock import ManualClock
from constraint_memory.contracts.base import ConstraintState, ObservationKind, Severity, short_hash
from constraint_memory.contracts.models import (
    AuditEntry, Constraint, Evidence, Observation
)
from constraint_memory.engine import ConstraintMemoryEngine, EngineConfig
from constraint_memory.storage import FileStateStore, InMemoryStateStore, StateStore


# =============================================================================
# FIXED TIMESTAMPS (deterministic)
# =============================================================================

EPOCH = datetime(2026, 1, 1, 0, 0, 0, tzinfo=timezone.utc)
T1 = datetime(2026, 1, 1, 10, 0, 0, tzinfo=timezone.utc)
T2 = datetime(2026, 1, 1, 10, 5, 0, tzinfo=timezone.utc)
T3 = datetime(2026, 1, 2, 9, 30, 0, tzinfo=timezone.utc)

FORCE_PUSH = "Agent ran git push --force on the main branch"
FORCE_PUSH_SLUG = "git-force-push"
FORCE_PUSH_ID = "cst-git-force-push"


# =============================================================================
# STUB SIMILARITY
# =============================================================================

class TableSimilarity:
    """
    Deterministic similarity stand-in.

    Identical text (ignoring case and whitespace) scores 1.0; any pair
    listed in `table` scores its entry; everything else scores `default`.
    """

    def __init__(self, table: Optional[Dict[Tuple[str, str], float]] = None, default: float = 0.0):
        self._table = {frozenset(pair): score for pair, score in (table or {}).items()}
        self._default = default
        self.calls = 0

    def __call__(self, text_a: str, text_b: str) -> float:
        self.calls += 1
        if " ".join(text_a.lower().split()) == " ".join(text_b.lower().split()):
            return 1.0
        return self._table.get(frozenset((text_a, text_b)), self._default)


def scripted_tokens(prefix: str = "TKN") -> Iterable[str]:
    n = 0
    while True:
        n += 1
        yield f"{prefix}{n:03d}"


# =============================================================================
# BUILDERS
# =============================================================================

def make_engine(
    clock: Optional[ManualClock] = None,
    store: Optional[StateStore] = None,
    similarity=None,
    config: Optional[EngineConfig] = None
) -> ConstraintMemoryEngine:
    clock = clock or ManualClock(EPOCH)
    tokens = scripted_tokens()
    return ConstraintMemoryEngine(
        config=config,
        store=store or InMemoryStateStore(clock=clock),
        clock=clock,
        similarity=similarity or TableSimilarity(),
        token_factory=lambda: next(tokens),
    )


def make_evidence(
    description: str = FORCE_PUSH,
    source: str = "transcript-a.log:12",
    session_id: str = "session-1",
    user_id: str = "alice",
    timestamp: datetime = T1,
    kind: ObservationKind = ObservationKind.FAILURE,
    severity: Severity = Severity.IMPORTANT,
    evidence_id: Optional[str] = None
) -> Evidence:
    return Evidence(
        id=evidence_id or f"ev_{short_hash(f'{description}|{source}|{session_id}|{timestamp.isoformat()}', 16)}",
        description=description,
        source=source,
        session_id=session_id,
        user_id=user_id,
        timestamp=timestamp,
        kind=kind,
        severity=severity,
    )


def make_observation(
    slug: str = FORCE_PUSH_SLUG,
    r_count: int = 3,
    c_users: Tuple[str, ...] = ("alice", "bob"),
    d_users: Tuple[str, ...] = (),
    sources: Tuple[str, ...] = ("a.log|s1|2026-01-01", "b.log|s2|2026-01-01"),
    kind: ObservationKind = ObservationKind.FAILURE,
    c_count: Optional[int] = None,
    d_count: Optional[int] = None,
    at: datetime = T1
) -> Observation:
    return Observation(
        slug=slug,
        kind=kind,
        description=FORCE_PUSH,
        severity=Severity.IMPORTANT,
        created_at=at,
        updated_at=at,
        r_count=r_count,
        c_count=len(c_users) if c_count is None else c_count,
        d_count=len(d_users) if d_count is None else d_count,
        c_unique_users=frozenset(c_users),
        d_unique_users=frozenset(d_users),
        sources=frozenset(sources),
        evidence_ids=tuple(f"ev_{n}" for n in range(r_count)),
    )


def make_constraint(
    constraint_id: str = FORCE_PUSH_ID,
    state: ConstraintState = ConstraintState.ACTIVE,
    at: datetime = T1
) -> Constraint:
    return Constraint(
        id=constraint_id,
        scope_text=FORCE_PUSH,
        severity=Severity.IMPORTANT,
        state=state,
        source_observation_id=FORCE_PUSH_SLUG,
        created_at=at,
        updated_at=at,
        state_entered_at=at,
        audit_log=(AuditEntry(at, "maintainer", "create", None, state.value),),
    )


def seed_candidate(
    engine: ConstraintMemoryEngine,
    description: str = FORCE_PUSH,
    slug: str = FORCE_PUSH_SLUG,
    confirmers: Tuple[str, ...] = ("alice", "bob")
) -> Observation:
    """
    Three occurrences from two users and three sources, then one
    confirmation per confirmer. With the default policy the last
    confirmation creates the draft constraint.
    """
    occurrences = (
        ("transcript-a.log:12", "session-1", "alice"),
        ("transcript-b.log:40", "session-2", "bob"),
        ("transcript-c.log:7", "session-3", "alice"),
    )
    for source, session_id, user_id in occurrences:
        engine.record_evidence(description, source, session_id, user_id, slug=slug)
    observation = engine.get_observation(slug)
    for user in confirmers:
        observation = engine.confirm(slug, user, decision_latency=30.0)
    return observation


def seed_active_constraint(engine: ConstraintMemoryEngine, actor: str = "maintainer") -> Constraint:
    observation = seed_candidate(engine)
    return engine.activate(observation.constraint_id, actor, reason="reviewed")


def violate(engine: ConstraintMemoryEngine, constraint_id: str, count: int, prefix: str = "push",
            spacing: timedelta = timedelta(minutes=1), actor: str = "agent"):
    """Record `count` distinct violations, advancing the clock between them."""
    verdicts = []
    for n in range(count):
        verdicts.append(engine.evaluate_action(constraint_id, f"{prefix}-{n}", violates=True, actor=actor))
        engine.clock.advance(spacing)
    return verdicts


def seed_state_dir(state_dir: str, age: timedelta = timedelta(0)) -> ConstraintMemoryEngine:
    """
    Seed a file-backed state directory with one active constraint.

    Out-of-process readers (API, forensic CLI) use the wall clock, so the
    seed is written `age` before now rather than at EPOCH.
    """
    clock = ManualClock(datetime.now(timezone.utc) - age)
    engine = make_engine(clock=clock, store=FileStateStore(state_dir, clock))
    seed_active_constraint(engine)
    return engine
