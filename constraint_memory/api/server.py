"""
Constraint Memory Engine: Governance API Server
===============================================

Read-only API surfacing constraint memory state and governance health.
Every mutation goes through the engine (CLI or embedding code), never
through HTTP.

Endpoints:
- GET /health                         -> Liveness
- GET /api/v1/dashboard               -> Health dashboard
- GET /api/v1/constraints             -> Constraints (optional ?state=)
- GET /api/v1/constraints/{id}        -> Constraint detail with audit trail
- GET /api/v1/observations            -> Observations (optional ?kind=)
- GET /api/v1/observations/{slug}     -> Observation detail
- GET /api/v1/circuits                -> Circuit breaker states
- GET /api/v1/alerts                  -> Governance alerts (optional ?status=)
- GET /api/v1/evidence/verify         -> Evidence chain integrity

Usage:
    uvicorn constraint_memory.api.server:app --reload
"""
import os
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel

from ..contracts.base import (
    AlertStatus, ConstraintState, NotFoundError, ObservationKind
)
from ..engine import ConstraintMemoryEngine, EngineConfig
from ..observability import ObservabilityConfig, configure_logging
from ..storage import StorageConfig
from .mapper import (
    map_circuits_to_dto, map_constraint_to_dto, map_observation_to_dto
)

# =============================================================================
# INFRASTRUCTURE SETUP
# =============================================================================

# Global Engine Instance
engine_instance: Optional[ConstraintMemoryEngine] = None


class HealthStatus(BaseModel):
    status: str
    mode: str
    constraints: int
    observations: int


class IntegrityStatus(BaseModel):
    valid: bool
    entries: int
    error: Optional[str] = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Initialize the engine on startup."""
    global engine_instance

    # Use default state directory or env override
    state_dir = os.environ.get("CME_STATE_DIR", os.path.join(os.getcwd(), ".constraint-memory"))

    print(f"[*] Initializing Constraint Memory at: {state_dir}")

    config = EngineConfig(
        storage=StorageConfig(backend_type="file", state_dir=state_dir),
        observability=ObservabilityConfig(log_level=os.environ.get("CME_LOG_LEVEL", "INFO")),
    )
    configure_logging(config.observability)

    try:
        engine_instance = ConstraintMemoryEngine(config)
        print("[*] Engine initialized successfully.")
    except Exception as e:
        print(f"[!] FAILED to initialize engine: {e}")
        raise

    yield

    print("[*] Shutting down engine.")
    engine_instance = None


app = FastAPI(
    title="Constraint Memory Engine API",
    version="0.1.0",
    description="Read-only governance view over constraint memory",
    lifespan=lifespan
)

# CORS (Allow dashboards)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["GET"],  # STRICT READ-ONLY
    allow_headers=["*"],
)


def _engine() -> ConstraintMemoryEngine:
    if engine_instance is None:
        raise HTTPException(status_code=503, detail="Engine not initialized")
    return engine_instance


def _parse_enum(enum_cls, value: Optional[str], name: str):
    if value is None:
        return None
    try:
        return enum_cls(value)
    except ValueError:
        allowed = ", ".join(m.value for m in enum_cls)
        raise HTTPException(400, detail=f"Invalid {name} '{value}'. Allowed: {allowed}")


# =============================================================================
# ENDPOINTS
# =============================================================================

@app.get("/health", response_model=HealthStatus)
async def health_check():
    """System status."""
    engine = _engine()
    return HealthStatus(
        status="online",
        mode="read-only",
        constraints=len(engine.constraints()),
        observations=len(engine.observations()),
    )


@app.get("/api/v1/dashboard")
async def get_dashboard():
    """
    Governance dashboard.
    Same health snapshot the alert emitter uses.
    """
    return _engine().dashboard()


@app.get("/api/v1/constraints")
async def list_constraints(state: Optional[str] = None):
    engine = _engine()
    parsed = _parse_enum(ConstraintState, state, "state")
    return {"constraints": [map_constraint_to_dto(c) for c in engine.constraints(parsed)]}


@app.get("/api/v1/constraints/{constraint_id}")
async def get_constraint(constraint_id: str):
    engine = _engine()
    try:
        constraint = engine.get_constraint(constraint_id)
    except NotFoundError as e:
        raise HTTPException(404, detail=e.message)
    dto = map_constraint_to_dto(constraint, include_audit=True)
    circuit = engine.breaker.find(constraint_id)
    dto["circuit"] = circuit.to_dict() if circuit else None
    return dto


@app.get("/api/v1/observations")
async def list_observations(kind: Optional[str] = None):
    engine = _engine()
    parsed = _parse_enum(ObservationKind, kind, "kind")
    return {"observations": [map_observation_to_dto(o) for o in engine.observations(parsed)]}


@app.get("/api/v1/observations/{slug}")
async def get_observation(slug: str):
    engine = _engine()
    try:
        observation = engine.get_observation(slug)
    except NotFoundError as e:
        raise HTTPException(404, detail=e.message)
    dto = map_observation_to_dto(observation)
    dto["eligibility"] = engine.eligibility_report(slug)
    return dto


@app.get("/api/v1/circuits")
async def list_circuits():
    engine = _engine()
    circuits = engine.circuits()
    overrides = {}
    for cid in circuits:
        current = engine.current_override(cid)
        if current is not None:
            overrides[cid] = current
    return {"circuits": map_circuits_to_dto(circuits, overrides)}


@app.get("/api/v1/alerts")
async def list_alerts(status: Optional[str] = None):
    engine = _engine()
    parsed = _parse_enum(AlertStatus, status, "status")
    return {"alerts": [a.to_dict() for a in engine.alerts(parsed)]}


@app.get("/api/v1/evidence/verify", response_model=IntegrityStatus)
async def verify_evidence():
    """Walk the evidence hash chain."""
    engine = _engine()
    valid, error = engine.verify_evidence()
    return IntegrityStatus(valid=valid, entries=len(engine.evidence_store.all()), error=error)
