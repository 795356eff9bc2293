"""
Observation Layer

RESPONSIBILITY: Evidence -> Observation aggregation and candidacy decisions
ALLOWED INPUTS: Evidence records, human confirm/disconfirm decisions
OUTPUTS: Observations, CandidateReady events

WHAT THIS LAYER MUST NOT DO:
============================
- Create or transition constraints
- Interpret text beyond the injected similarity score
- Auto-promote a candidate past draft
"""

from .aggregator import AggregatorConfig, ObservationAggregator, slugify
from .eligibility import (
    DEFAULT_POLICY, EligibilityEngine, EligibilityPolicy,
    eligibility_gates, is_eligible, suggest_retirement
)
from .similarity import Similarity, SimilarityConfig, TokenVectorSimilarity, exact_match_similarity

__all__ = [
    'AggregatorConfig', 'ObservationAggregator', 'slugify',
    'DEFAULT_POLICY', 'EligibilityEngine', 'EligibilityPolicy',
    'eligibility_gates', 'is_eligible', 'suggest_retirement',
    'Similarity', 'SimilarityConfig', 'TokenVectorSimilarity', 'exact_match_similarity',
]
