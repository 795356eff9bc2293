"""
Forensic Reporter CLI
=====================

Tool for forensic inspection of a constraint memory state directory.
Bypasses the API and reads disk state directly.

COMMANDS:
- verify:        Check evidence hash chain integrity
- status:        Constraint, circuit and override summary
- audit:         Dump one constraint's audit trail
- dashboard:     Print the governance dashboard (JSON)
- check-alerts:  Evaluate health and write edge-triggered alert files

USAGE:
    python -m constraint_memory.forensic [--state-dir DIR] COMMAND [ARGS]
"""
import argparse
import json
import sys
from typing import List, Optional

from .contracts.base import ConstraintMemoryError, ConstraintState
from .engine import ConstraintMemoryEngine, EngineConfig
from .governance import ALERT_MODE_DIGEST
from .observability import ObservabilityConfig, configure_logging
from .storage import StorageConfig

DEFAULT_STATE_DIR = "./.constraint-memory"


def open_engine(state_dir: str, log_level: str = "WARNING") -> ConstraintMemoryEngine:
    config = EngineConfig(
        storage=StorageConfig(backend_type="file", state_dir=state_dir),
        observability=ObservabilityConfig(log_level=log_level),
    )
    configure_logging(config.observability)
    return ConstraintMemoryEngine(config)


def cmd_verify(engine: ConstraintMemoryEngine, args) -> int:
    """Verify evidence hash chain integrity."""
    print(f"[*] Verifying evidence at: {args.state_dir}")
    entries = engine.evidence_store.all()
    print(f"    Loaded {len(entries)} evidence entries.")

    valid, error = engine.verify_evidence()
    if not valid:
        print(f"[FAIL] {error}")
        return 1

    _, head_hash = engine.evidence_store.head()
    print(f"[PASS] Hash chain intact ({len(entries)} entries, head {head_hash[:12] or '-'})")
    return 0


def cmd_status(engine: ConstraintMemoryEngine, args) -> int:
    """Summarize constraints by state with circuit and override detail."""
    constraints = engine.constraints()
    print(f"[*] {len(constraints)} constraint(s), {len(engine.observations())} observation(s)")
    for state in ConstraintState:
        members = [c for c in constraints if c.state == state]
        if not members:
            continue
        print(f"\n{state.value.upper()} ({len(members)})")
        for constraint in members:
            circuit = engine.breaker.find(constraint.id)
            override = engine.current_override(constraint.id)
            line = f"  {constraint.id:<40} v{constraint.version}"
            if circuit is not None:
                line += f"  circuit={circuit.state.value} violations={len(circuit.violations)}"
            if override is not None:
                line += f"  override={override.state.value}"
            print(line)

    open_alerts = engine.alerts()
    pending = [a for a in open_alerts if a.status.value != "resolved"]
    if pending:
        print(f"\n[INFO] {len(pending)} unresolved governance alert(s)")
    return 0


def cmd_audit(engine: ConstraintMemoryEngine, args) -> int:
    """Dump the audit trail of one constraint (Git-style)."""
    constraint = engine.get_constraint(args.constraint_id)
    print(f"constraint {constraint.id}")
    print(f"State:  {constraint.state.value}  (version {constraint.version})")
    print(f"Scope:  {constraint.scope_text}")
    print(f"Source: {constraint.source_observation_id}")
    print("")
    for entry in reversed(constraint.audit_log):
        transition = f"{entry.from_state or '-'} -> {entry.to_state or '-'}"
        print(f"{entry.timestamp.isoformat()}  {entry.action:<20} {transition:<24} by {entry.actor}")
        if entry.reason:
            print(f"    {entry.reason}")
    return 0


def cmd_dashboard(engine: ConstraintMemoryEngine, args) -> int:
    print(json.dumps(engine.dashboard(), indent=2, sort_keys=True))
    return 0


def cmd_check_alerts(engine: ConstraintMemoryEngine, args) -> int:
    raised = engine.check_alerts(args.actor)
    for alert in raised:
        print(f"[ALERT] {alert.metric} {alert.constraint_id}: {alert.current_value} (threshold {alert.threshold})")
    if not raised:
        print("[PASS] No new governance alerts.")
    mode = engine.alert_mode()
    if mode['mode'] == ALERT_MODE_DIGEST:
        print(f"[DIGEST] Alerts delivered as a digest since {mode['switched_at']}: {mode['reason']}")
    return 0


COMMANDS = {
    "verify": cmd_verify,
    "status": cmd_status,
    "audit": cmd_audit,
    "dashboard": cmd_dashboard,
    "check-alerts": cmd_check_alerts,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Constraint Memory Forensic Reporter")
    parser.add_argument("--state-dir", default=DEFAULT_STATE_DIR, help="Path to state directory")
    parser.add_argument("--log-level", default="WARNING", help="Logging level")

    subparsers = parser.add_subparsers(dest="command")

    subparsers.add_parser("verify", help="Verify evidence integrity")
    subparsers.add_parser("status", help="Summarize constraints and circuits")
    audit_parser = subparsers.add_parser("audit", help="Show a constraint's audit trail")
    audit_parser.add_argument("constraint_id", help="Constraint id, e.g. cst-git-force-push")
    subparsers.add_parser("dashboard", help="Print governance dashboard")
    alerts_parser = subparsers.add_parser("check-alerts", help="Raise edge-triggered alerts")
    alerts_parser.add_argument("--actor", default="forensic-cli", help="Actor taking the governance lock")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    handler = COMMANDS.get(args.command)
    if handler is None:
        parser.print_help()
        return 2

    engine = open_engine(args.state_dir, args.log_level)
    try:
        return handler(engine, args)
    except ConstraintMemoryError as e:
        print(f"[FAIL] {e.code.name}: {e.message}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
