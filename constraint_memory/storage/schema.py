"""
Schema Versioning
=================

Every persisted document is wrapped in an envelope:

    {"schema_version": "1.1.0", "migration_history": [...], "data": {...}}

Documents written before envelopes existed are read as version 1.0.0.
Migrations run on a deep copy; a failing step raises SchemaMigrationError
and the stored document is left exactly as it was.
"""

from __future__ import annotations
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Dict, List, Optional
import copy

from ..contracts.base import SchemaMigrationError, to_iso

CURRENT_SCHEMA_VERSION = "1.1.0"
LEGACY_SCHEMA_VERSION = "1.0.0"
MIGRATION_TOOL = "constraint-memory-migrate"


def make_envelope(data: dict, history: Optional[List[dict]] = None) -> dict:
    return {
        'schema_version': CURRENT_SCHEMA_VERSION,
        'migration_history': list(history or []),
        'data': data,
    }


def read_envelope(document: dict) -> dict:
    """Normalize a raw document into an envelope (legacy docs become 1.0.0)."""
    if isinstance(document, dict) and 'schema_version' in document and 'data' in document:
        return document
    return {
        'schema_version': LEGACY_SCHEMA_VERSION,
        'migration_history': [],
        'data': document,
    }


@dataclass(frozen=True)
class MigrationStep:
    """One schema upgrade. `apply` receives the store key and the data."""
    from_version: str
    to_version: str
    apply: Callable[[str, dict], dict]
    description: str = ""


class MigrationRegistry:
    """
    Ordered chain of migration steps.

    GUARANTEES:
    - Steps are applied in from -> to order until CURRENT_SCHEMA_VERSION
    - Input envelope is never mutated
    """

    def __init__(self, target_version: str = CURRENT_SCHEMA_VERSION):
        self._steps: Dict[str, MigrationStep] = {}
        self._target = target_version

    @property
    def target_version(self) -> str:
        return self._target

    def register(self, step: MigrationStep) -> None:
        if step.from_version in self._steps:
            raise ValueError(f"Migration from {step.from_version} already registered")
        self._steps[step.from_version] = step

    def needs_migration(self, envelope: dict) -> bool:
        return envelope.get('schema_version') != self._target

    def migrate(self, key: str, envelope: dict, at: datetime) -> dict:
        """Return a migrated copy of the envelope or raise SchemaMigrationError."""
        working = copy.deepcopy(envelope)
        version = working.get('schema_version', LEGACY_SCHEMA_VERSION)
        seen = set()

        while version != self._target:
            step = self._steps.get(version)
            if step is None or version in seen:
                raise SchemaMigrationError(
                    f"No migration path from {version} to {self._target} for {key}",
                    context=(("key", key), ("from", version), ("to", self._target))
                )
            seen.add(version)
            try:
                working['data'] = step.apply(key, working['data'])
            except (KeyError, TypeError, ValueError) as exc:
                raise SchemaMigrationError(
                    f"Migration {step.from_version} -> {step.to_version} failed for {key}: {exc}",
                    context=(("key", key), ("from", step.from_version), ("to", step.to_version))
                ) from exc
            working['migration_history'] = list(working.get('migration_history', [])) + [{
                'from': step.from_version,
                'to': step.to_version,
                'date': to_iso(at),
                'tool': MIGRATION_TOOL,
            }]
            version = step.to_version
            working['schema_version'] = version

        return working


# =============================================================================
# BUILT-IN MIGRATIONS
# =============================================================================

CIRCUIT_KEYS = ('.circuit-state.json', '.circuit-state-archive.json')


def _upgrade_circuit_record(record: dict) -> dict:
    if not isinstance(record, dict):
        raise TypeError(f"circuit record must be an object, got {type(record).__name__}")
    upgraded = dict(record)
    if upgraded.get('state') == 'HALF-OPEN':
        upgraded['state'] = 'HALF_OPEN'
    if 'last_trip' in upgraded:
        upgraded.setdefault('tripped_at', upgraded['last_trip'])
        del upgraded['last_trip']
    if 'last_reset' in upgraded:
        upgraded.setdefault('last_reset_at', upgraded['last_reset'])
        del upgraded['last_reset']
    return upgraded


def circuit_states_1_0_to_1_1(key: str, data: dict) -> dict:
    """1.0.0 stored HALF-OPEN and last_trip/last_reset; 1.1.0 uses HALF_OPEN and *_at."""
    if key not in CIRCUIT_KEYS:
        return data
    upgraded = {}
    for constraint_id, value in data.items():
        if isinstance(value, list):
            upgraded[constraint_id] = [
                dict(entry, circuit=_upgrade_circuit_record(entry['circuit']))
                if 'circuit' in entry else _upgrade_circuit_record(entry)
                for entry in value
            ]
        else:
            record = _upgrade_circuit_record(value)
            record.setdefault('constraint_id', constraint_id)
            upgraded[constraint_id] = record
    return upgraded


def default_registry() -> MigrationRegistry:
    registry = MigrationRegistry()
    registry.register(MigrationStep(
        from_version="1.0.0",
        to_version="1.1.0",
        apply=circuit_states_1_0_to_1_1,
        description="Rename HALF-OPEN circuit state and trip/reset timestamp fields",
    ))
    return registry
