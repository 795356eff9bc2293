"""
Enforcement Protection Layer

RESPONSIBILITY: Runtime violation tracking and emergency bypass
ALLOWED INPUTS: Violations and successes for enforced constraints, override decisions
OUTPUTS: CircuitState, CheckResult, Override

WHAT THIS LAYER MUST NOT DO:
============================
- Change constraint lifecycle state
- Let an override reset a circuit
- Keep live circuits or overrides for a retired constraint
"""

from .breaker import (
    ARCHIVE_KEY, CIRCUIT_KEY, AuditSink, CheckResult, CircuitBreaker,
    CircuitConfig, override_hint
)
from .overrides import (
    OVERRIDES_KEY, TOKEN_ALPHABET, OverrideConfig, OverrideManager, generate_token
)

__all__ = [
    'ARCHIVE_KEY', 'CIRCUIT_KEY', 'AuditSink', 'CheckResult', 'CircuitBreaker',
    'CircuitConfig', 'override_hint',
    'OVERRIDES_KEY', 'TOKEN_ALPHABET', 'OverrideConfig', 'OverrideManager', 'generate_token',
]
