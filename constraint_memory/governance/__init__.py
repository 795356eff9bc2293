"""
Governance Layer

RESPONSIBILITY: Single-writer locking, bulk state operations, health and alerting
ALLOWED INPUTS: Lifecycle, aggregator and breaker components; holder identities
OUTPUTS: GovernanceLock, BulkResult, HealthReport, GovernanceAlert

WHAT THIS LAYER MUST NOT DO:
============================
- Retry on lock contention
- Bypass the lifecycle state machine for bulk transitions
- Execute destructive bulk operations without an explicit confirm
"""

from .coordinator import (
    ALERT_STATE_KEY, BulkResult, GovernanceCoordinator, render_alert_markdown, render_digest_markdown
)
from .health import (
    ALERT_MODE_DIGEST, ALERT_MODE_PER_EVENT, METRIC_DORMANCY, METRIC_FALSE_POSITIVE,
    METRIC_TRIP_FREQUENCY, AlertFatigue, assess_alert_fatigue,
    Breach, ConstraintHealth, GovernanceConfig, HealthReport,
    adoption_phase, assess_constraint, violation_trend, weekly_violations
)
from .lock import LOCK_KEY, GovernanceLockManager, LockConfig

__all__ = [
    'ALERT_STATE_KEY', 'BulkResult', 'GovernanceCoordinator', 'render_alert_markdown', 'render_digest_markdown',
    'ALERT_MODE_DIGEST', 'ALERT_MODE_PER_EVENT', 'AlertFatigue', 'assess_alert_fatigue',
    'METRIC_DORMANCY', 'METRIC_FALSE_POSITIVE', 'METRIC_TRIP_FREQUENCY',
    'Breach', 'ConstraintHealth', 'GovernanceConfig', 'HealthReport',
    'adoption_phase', 'assess_constraint', 'violation_trend', 'weekly_violations',
    'LOCK_KEY', 'GovernanceLockManager', 'LockConfig',
]
