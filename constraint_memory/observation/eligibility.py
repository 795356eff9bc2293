"""
Eligibility Engine
==================

Pure decision over an Observation's counters: is it a constraint candidate?

    kind == failure
    AND r_count >= 3
    AND c_count >= 2
    AND |source files| >= 2                     (distinct paths, :line dropped)
    AND |c_unique_users| >= 2
    AND d_count / (c_count + d_count) < 0.2     (ratio is 0 when no decisions)

GUARANTEES:
- is_eligible() has no side effects and reads no clock
- CandidateReady is emitted only on a false -> true edge
- Nothing here creates or transitions a Constraint; the lifecycle consumes
  the event and never moves past draft on its own
"""

from __future__ import annotations
from dataclasses import dataclass
from typing import Dict, Optional

from ..contracts.base import ObservationKind
from ..contracts.events import DomainEvent, EventSink, candidate_ready, discard_event
from ..contracts.models import Observation


@dataclass(frozen=True)
class EligibilityPolicy:
    """Thresholds for constraint candidacy."""
    min_recurrence: int = 3
    min_confirmations: int = 2
    min_sources: int = 2
    min_unique_confirmers: int = 2
    max_disconfirmation_ratio: float = 0.2


DEFAULT_POLICY = EligibilityPolicy()


def eligibility_gates(obs: Observation, policy: EligibilityPolicy = DEFAULT_POLICY) -> Dict[str, bool]:
    """Each gate of the eligibility rule and whether it passes."""
    return {
        'failure_kind': obs.kind == ObservationKind.FAILURE,
        'recurrence': obs.r_count >= policy.min_recurrence,
        'confirmations': obs.c_count >= policy.min_confirmations,
        'sources': len(obs.source_files) >= policy.min_sources,
        'unique_confirmers': len(obs.c_unique_users) >= policy.min_unique_confirmers,
        'disconfirmation_ratio': obs.disconfirmation_ratio < policy.max_disconfirmation_ratio,
    }


def is_eligible(obs: Observation, policy: EligibilityPolicy = DEFAULT_POLICY) -> bool:
    return all(eligibility_gates(obs, policy).values())


def suggest_retirement(obs: Observation) -> bool:
    """More disconfirmations than confirmations: the rule is probably wrong."""
    return obs.d_count > obs.c_count


class EligibilityEngine:
    """
    Edge detector around is_eligible().

    Called by the aggregator with the observation before and after every
    counter mutation.
    """

    def __init__(self, policy: Optional[EligibilityPolicy] = None, on_event: EventSink = discard_event):
        self._policy = policy or DEFAULT_POLICY
        self._on_event = on_event

    @property
    def policy(self) -> EligibilityPolicy:
        return self._policy

    def is_eligible(self, obs: Observation) -> bool:
        return is_eligible(obs, self._policy)

    def evaluate(self, before: Optional[Observation], after: Observation) -> Optional[DomainEvent]:
        """Emit and return CandidateReady if eligibility flipped false -> true."""
        was_eligible = before is not None and self.is_eligible(before)
        if was_eligible or not self.is_eligible(after):
            return None
        event = candidate_ready(after, after.updated_at)
        self._on_event(event)
        return event
