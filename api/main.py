"""FastAPI server for Arbiter."""

from __future__ import annotations

import os
from threading import Lock
from typing import Optional, Dict, Any, List

from fastapi import FastAPI, HTTPException, Header, Depends
from pydantic import BaseModel, Field

from arbiter import (
    BudgetExceededError,
    FallbackOrchestrator,
    HealthStatus,
    InvalidTransitionError,
    MockInvoker,
    NoAdmissibleBackendError,
    PhaseId,
    QueryClassifier,
    Session,
    UnknownBackendError,
    ValidationError,
    load_config,
)


def _get_api_key() -> Optional[str]:
    return os.getenv("ARBITER_API_KEY")


def _require_api_key(x_api_key: Optional[str] = Header(default=None)) -> None:
    api_key = _get_api_key()
    if api_key and x_api_key != api_key:
        raise HTTPException(status_code=401, detail="Invalid API key")


class _State:
    """Process-local orchestrator and sessions."""

    def __init__(self):
        self.lock = Lock()
        self.orchestrator: Optional[FallbackOrchestrator] = None
        self.config = None
        self.sessions: Dict[str, Session] = {}

    def get_orchestrator(self) -> FallbackOrchestrator:
        with self.lock:
            if self.orchestrator is None:
                self.config = load_config()
                invoker = MockInvoker() if os.getenv("ARBITER_DRY_RUN") else None
                self.orchestrator = FallbackOrchestrator.from_config(self.config, invoker=invoker)
            return self.orchestrator

    def get_session(self, session_id: str) -> Session:
        with self.lock:
            s = self.sessions.get(session_id)
        if s is None:
            raise HTTPException(status_code=404, detail="Session not found")
        return s

    def reset(self) -> None:
        with self.lock:
            if self.orchestrator is not None:
                self.orchestrator.close()
            self.orchestrator = None
            self.config = None
            self.sessions.clear()


state = _State()
app = FastAPI(title="Arbiter API", version="0.1.0")


class ClassifyRequest(BaseModel):
    query: str = Field(..., min_length=1)


class SessionRequest(BaseModel):
    session_id: Optional[str] = None
    phase: PhaseId = PhaseId.PLAN


class TransitionRequest(BaseModel):
    phase: PhaseId


class ArbitrateRequest(BaseModel):
    query: str = Field(..., min_length=1)


class ArbitrateResponse(BaseModel):
    chosen_backend: str
    attempts_made: int
    tokens_used: int
    budget_warning: bool
    query_id: str
    phase: PhaseId
    ranking: List[str]
    latency_ms: int
    fallback_used: bool
    why: str
    payload: Optional[Any] = None


class HealthRequest(BaseModel):
    status: HealthStatus


@app.get("/health")
def health() -> Dict[str, str]:
    return {"status": "ok"}


@app.post("/classify", dependencies=[Depends(_require_api_key)])
def classify(req: ClassifyRequest) -> Dict[str, Any]:
    result = QueryClassifier().explain(req.query)
    return {
        "ranking": [c.value for c in result.ranking],
        "reason": result.reason,
        "identifiers": list(result.identifiers),
        "heuristic_version": result.heuristic_version,
    }


@app.post("/sessions", dependencies=[Depends(_require_api_key)])
def create_session(req: SessionRequest) -> Dict[str, Any]:
    orchestrator = state.get_orchestrator()
    s = Session(orchestrator, config=state.config, session_id=req.session_id, phase_id=req.phase)
    with state.lock:
        if s.session_id in state.sessions:
            raise HTTPException(status_code=409, detail="Session already exists")
        state.sessions[s.session_id] = s.__enter__()
    return {"session_id": s.session_id, "phase": s.phase_id.value}


@app.delete("/sessions/{session_id}", dependencies=[Depends(_require_api_key)])
def end_session(session_id: str) -> Dict[str, Any]:
    s = state.get_session(session_id)
    s.cancel()
    s.__exit__(None, None, None)
    with state.lock:
        state.sessions.pop(session_id, None)
    return {"ended": True}


@app.post("/sessions/{session_id}/transition", dependencies=[Depends(_require_api_key)])
def transition(session_id: str, req: TransitionRequest) -> Dict[str, Any]:
    s = state.get_session(session_id)
    try:
        previous = s.transition(req.phase)
    except InvalidTransitionError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    return {"previous": previous.value, "phase": s.phase_id.value}


@app.post(
    "/sessions/{session_id}/arbitrate",
    response_model=ArbitrateResponse,
    dependencies=[Depends(_require_api_key)],
)
def arbitrate(session_id: str, req: ArbitrateRequest) -> ArbitrateResponse:
    s = state.get_session(session_id)
    try:
        result = s.arbitrate(req.query)
    except ValidationError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except BudgetExceededError as exc:
        raise HTTPException(status_code=402, detail=str(exc)) from exc
    except NoAdmissibleBackendError as exc:
        raise HTTPException(status_code=429, detail=str(exc)) from exc

    return ArbitrateResponse(
        chosen_backend=result.chosen_backend,
        attempts_made=result.attempts_made,
        tokens_used=result.tokens_used,
        budget_warning=result.budget_warning,
        query_id=result.query_id,
        phase=result.phase_id,
        ranking=[c.value for c in result.ranking],
        latency_ms=result.latency_ms,
        fallback_used=result.fallback_used,
        why=result.why,
        payload=result.payload,
    )


@app.get("/sessions/{session_id}/budget", dependencies=[Depends(_require_api_key)])
def budget(session_id: str) -> Dict[str, Any]:
    s = state.get_session(session_id)
    return {
        "phase": s.phase_id.value,
        "policy": s.ledger.policy.value,
        "phases": s.ledger.get_summary(),
    }


@app.get("/backends", dependencies=[Depends(_require_api_key)])
def backends() -> List[Dict[str, Any]]:
    orchestrator = state.get_orchestrator()
    return [
        {
            "backend_id": b.backend_id,
            "tags": sorted(t.value for t in b.tags),
            "health": b.health.value,
            "quota": orchestrator.quota.get_stats(b.backend_id),
        }
        for b in orchestrator.registry.list()
    ]


@app.put("/backends/{backend_id}/health", dependencies=[Depends(_require_api_key)])
def set_backend_health(backend_id: str, req: HealthRequest) -> Dict[str, Any]:
    orchestrator = state.get_orchestrator()
    try:
        orchestrator.set_health(backend_id, req.status)
    except UnknownBackendError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return {"backend_id": backend_id, "health": req.status.value}
