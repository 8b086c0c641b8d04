import os
import logging
from typing import Optional, Dict, Any

from fastapi import Depends, FastAPI, Header, HTTPException
from pydantic import BaseModel, Field

from prometheus_fastapi_instrumentator import Instrumentator
import sentry_sdk
from sentry_sdk.integrations.fastapi import FastApiIntegration

from garmentops.obs.logging_config import setup_logging
from ..config import get_cohere_key, MODEL_NAME, DB_PATH, INTERNAL_API_KEY, ensure_dirs
from ..db import make_engine, init_db
from ..graph.build_graph import OpsAgent
from ..llm import build_gateway
from ..tools.store_tools import OpsStore

log = logging.getLogger(__name__)

# ----------------- Bootstrap -----------------
ensure_dirs()
app = FastAPI(title="GarmentOps Agent API")

# ---- Observability ----
setup_logging()
if os.getenv("SENTRY_DSN"):
    sentry_sdk.init(
        dsn=os.getenv("SENTRY_DSN"),
        integrations=[FastApiIntegration()],
        traces_sample_rate=float(os.getenv("SENTRY_TRACES", "0.0")),
    )
if os.getenv("PROMETHEUS_ENABLE", "0") == "1":
    Instrumentator().instrument(app).expose(app, include_in_schema=False, endpoint="/metrics")

# ----------------- Dependencies -----------------
_store: Optional[OpsStore] = None
_agent: Optional[OpsAgent] = None

def get_store() -> OpsStore:
    global _store
    if _store is None:
        engine = make_engine()
        init_db(engine)
        _store = OpsStore(engine)
    return _store

def get_agent(store: OpsStore = Depends(get_store)) -> OpsAgent:
    global _agent
    if _agent is None:
        _agent = OpsAgent(store, build_gateway())
    return _agent

def require_internal_key(x_internal_key: Optional[str] = Header(default=None)) -> None:
    if INTERNAL_API_KEY and x_internal_key != INTERNAL_API_KEY:
        raise HTTPException(status_code=401, detail="invalid internal key")

# ----------------- Models -----------------
class AgentRunIn(BaseModel):
    request_id: str = Field(..., alias="requestId", min_length=1)
    raw_input: Optional[str] = Field(default=None, alias="rawInput")

    model_config = {"populate_by_name": True}

def _run_summary(request_id: str, message: str, out: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "success": True,
        "message": message,
        "requestId": request_id,
        "decision": out.get("decision"),
        "tasksCreated": len(out.get("planned_tasks") or []),
        "response": out.get("response"),
        "error": out.get("error"),
    }

# ----------------- Misc -----------------
@app.get("/health")
def health():
    return {"status": "ok", "llm_ready": bool(get_cohere_key())}

@app.get("/info")
def info():
    return {"llm_ready": bool(get_cohere_key()), "model": MODEL_NAME, "db_path": DB_PATH}

# ----------------- Agent -----------------
@app.post("/internal/agent/enqueue", dependencies=[Depends(require_internal_key)])
async def enqueue(body: AgentRunIn, agent: OpsAgent = Depends(get_agent)):
    log.info("enqueue request %s", body.request_id)
    out = await agent.run(body.request_id, body.raw_input)
    return _run_summary(body.request_id, "Request processed by agent", out)

@app.post("/internal/agent/re-evaluate/{request_id}", dependencies=[Depends(require_internal_key)])
async def re_evaluate(request_id: str, agent: OpsAgent = Depends(get_agent),
                      store: OpsStore = Depends(get_store)):
    if await store.get_request(request_id) is None:
        raise HTTPException(status_code=404, detail="Request not found")
    log.info("re-evaluate request %s", request_id)
    out = await agent.run(request_id)
    return _run_summary(request_id, "Re-evaluation completed", out)

@app.post("/internal/agent/simulate", dependencies=[Depends(require_internal_key)])
async def simulate(body: AgentRunIn, agent: OpsAgent = Depends(get_agent)):
    out = await agent.simulate(body.request_id, body.raw_input)
    decision = out.get("decision") or {}
    planned = out.get("planned_tasks") or []
    return {
        "success": True,
        "message": "Simulation complete",
        "decision": out.get("decision"),
        "reason": decision.get("reason"),
        "wouldCreateTasks": len(planned) > 0,
        "plannedTasks": planned,
        "response": out.get("response"),
    }

# ----------------- Audit -----------------
@app.get("/internal/audit", dependencies=[Depends(require_internal_key)])
async def audit(requestId: Optional[str] = None, actor: Optional[str] = None, action: Optional[str] = None,
                start: Optional[str] = None, end: Optional[str] = None, page: int = 1, limit: int = 50,
                store: OpsStore = Depends(get_store)):
    return await store.query_audit(request_id=requestId, actor=actor, action=action,
                                   start=start, end=end, page=page, limit=min(limit, 200))
