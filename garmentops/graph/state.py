# garmentops/graph/state.py
from typing import TypedDict, List, Optional, Any, Dict, Literal

from pydantic import BaseModel, Field, field_validator

ACCEPT_AND_PLAN = "ACCEPT_AND_PLAN"
DELAY_REQUEST = "DELAY_REQUEST"
ESCALATE_TO_OWNER = "ESCALATE_TO_OWNER"
DECISION_ACTIONS = (ACCEPT_AND_PLAN, DELAY_REQUEST, ESCALATE_TO_OWNER)

# ---------- Model-facing shapes ----------
class RequestItem(BaseModel):
    sku: str
    qty: int = 1
    size: Optional[str] = None
    color: Optional[str] = None
    fabric: Optional[str] = None
    alteration_type: Optional[str] = None
    measurement: Optional[Dict[str, Any]] = None
    notes: Optional[str] = None

class TimeWindow(BaseModel):
    start: str
    end: str

class NormalizedPayload(BaseModel):
    """
    type: alteration (fix existing clothes) | order (catalog item) | stitching (new from fabric)
    """
    type: Literal["alteration", "order", "stitching"]
    items: List[RequestItem] = Field(default_factory=list)
    required_skills: List[str] = Field(default_factory=list)
    estimated_minutes: int = 0
    preferred_slot: Optional[TimeWindow] = None
    notes: Optional[str] = None

class AgentDecision(BaseModel):
    action: str = ""
    reason: str = Field(min_length=1)
    delay_until: Optional[str] = Field(default=None, alias="delayUntil")
    escalation_priority: Optional[Literal["low", "medium", "high"]] = Field(default=None, alias="escalationPriority")

    model_config = {"populate_by_name": True}

    @field_validator("action", mode="before")
    @classmethod
    def _action_text(cls, v):
        return "" if v is None else str(v).strip()

    @field_validator("escalation_priority", mode="before")
    @classmethod
    def _lower_priority(cls, v):
        if isinstance(v, str):
            v = v.strip().lower()
            return v if v in ("low", "medium", "high") else None
        return None

class PlannedTask(BaseModel):
    title: str
    description: Optional[str] = None
    required_skills: List[str] = Field(default_factory=list)
    estimated_min: int = 30
    suggested_worker_id: Optional[str] = None

# ---------- Workflow state ----------
class OpsState(TypedDict, total=False):
    request_id: str
    request: Optional[Dict[str, Any]]          # id, status, priority, due_by, payload
    customer: Optional[Dict[str, Any]]
    raw_input: Optional[str]                   # free text (e.g. WhatsApp) awaiting normalization
    inventory: List[Dict[str, Any]]
    inventory_check: Optional[Dict[str, Any]]  # {available, items:[{sku, requested, available, shortage}]}
    staff: List[Dict[str, Any]]
    staff_load: List[Dict[str, Any]]           # {id, name, skills, active_tasks, estimated_minutes_remaining}
    active_tasks: List[Dict[str, Any]]
    decision: Optional[Dict[str, Any]]         # AgentDecision.model_dump()
    planned_tasks: Optional[List[Dict[str, Any]]]
    response: Optional[str]
    iteration: int
    error: Optional[str]
    is_simulation: bool

def create_initial_state(request_id: str, raw_input: Optional[str] = None, **overrides: Any) -> OpsState:
    state: OpsState = {
        "request_id": request_id,
        "raw_input": raw_input,
        "inventory": [],
        "staff": [],
        "staff_load": [],
        "active_tasks": [],
        "iteration": 0,
        "is_simulation": False,
    }
    state.update(overrides)
    return state

def merge_patch(state: OpsState, patch: Optional[Dict[str, Any]]) -> OpsState:
    """Overlay `patch` onto `state` key by key. Present keys replace, absent keys are kept."""
    merged: OpsState = dict(state)  # type: ignore[assignment]
    merged.update(patch or {})
    return merged
