"""
API Mapper
==========

Transforms internal records into read-only DTOs for the dashboard API.
Exposes state as stored; derived values are only added, never smoothed.
Override approval tokens never leave the process.
"""
from typing import Any, Dict, List, Optional

from ..contracts.base import EnforcementMode, to_iso
from ..contracts.models import CircuitState, Constraint, Observation, Override


def map_observation_to_dto(observation: Observation) -> Dict[str, Any]:
    dto = observation.to_dict()
    dto["disconfirmation_ratio"] = round(observation.disconfirmation_ratio, 4)
    dto["evidence_count"] = len(observation.evidence_ids)
    return dto


def map_constraint_to_dto(constraint: Constraint, include_audit: bool = False) -> Dict[str, Any]:
    """Constraint summary; the audit trail only on the detail view."""
    dto = {
        "id": constraint.id,
        "scope_text": constraint.scope_text,
        "severity": constraint.severity.value,
        "state": constraint.state.value,
        "enforcement_mode": EnforcementMode.for_state(constraint.state).value,
        "source_observation_id": constraint.source_observation_id,
        "created_at": to_iso(constraint.created_at),
        "updated_at": to_iso(constraint.updated_at),
        "state_entered_at": to_iso(constraint.state_entered_at),
        "last_review_at": to_iso(constraint.last_review_at),
        "version": constraint.version,
        "audit_entries": len(constraint.audit_log),
    }
    if include_audit:
        dto["audit_log"] = [entry.to_dict() for entry in constraint.audit_log]
    return dto


def map_override_to_dto(override: Override) -> Dict[str, Any]:
    dto = override.to_dict()
    dto.pop("token", None)
    return dto


def map_circuit_to_dto(circuit: CircuitState, override: Optional[Override] = None) -> Dict[str, Any]:
    dto = circuit.to_dict()
    dto["violation_count"] = len(circuit.violations)
    dto["trip_count"] = len(circuit.trips)
    dto["override"] = map_override_to_dto(override) if override is not None else None
    return dto


def map_circuits_to_dto(circuits: Dict[str, CircuitState], overrides: Dict[str, Override]) -> List[Dict[str, Any]]:
    return [
        map_circuit_to_dto(circuits[cid], overrides.get(cid))
        for cid in sorted(circuits)
    ]
