# garmentops/graph/nodes.py
import logging
import math
import re
from typing import Dict, Any, List, Optional

from pydantic import ValidationError

from ..llm import ModelGateway
from ..tools.store_tools import OpsStore
from ..util.inventory import check_inventory, compute_staff_load
from ..util.json_extract import parse_json
from .prompts import normalize_prompt, decide_prompt, plan_tasks_prompt, respond_prompt
from .state import (
    OpsState, NormalizedPayload, AgentDecision, PlannedTask,
    ACCEPT_AND_PLAN, DELAY_REQUEST, ESCALATE_TO_OWNER, DECISION_ACTIONS,
)

log = logging.getLogger(__name__)

ESCALATION_PRIORITY = {"high": 10, "medium": 5, "low": 1}

FALLBACK_RESPONSES = {
    ACCEPT_AND_PLAN: "Your request has been received and is being processed. We will update you shortly.",
    DELAY_REQUEST: "We're currently experiencing high demand. Your request has been queued and will be processed soon.",
    ESCALATE_TO_OWNER: "Your request requires special attention. Our team will contact you shortly.",
}
GENERIC_FALLBACK_RESPONSE = "Thank you for your request. We'll be in touch soon."

# "[Name]", "{name}", "<Shop Name>" left behind by the model
_PLACEHOLDER = re.compile(r"\[[A-Z][^\]\n]{0,30}\]|\{[A-Za-z_ ]{1,30}\}|<[A-Z][A-Za-z ]{0,30}>")

def _escalate(reason: str, priority: str) -> Dict[str, Any]:
    return AgentDecision(action=ESCALATE_TO_OWNER, reason=reason, escalation_priority=priority).model_dump()

def _ctx(request_id: Optional[str]) -> Dict[str, Any]:
    return {"request_id": request_id}

def _payload(state: OpsState) -> Optional[Dict[str, Any]]:
    return (state.get("request") or {}).get("payload")

# ---------- Observe ----------
async def _normalize_raw_input(raw_input: str, request_id: str, store: OpsStore,
                               gateway: ModelGateway, persist: bool = True) -> Optional[Dict[str, Any]]:
    """Derive a NormalizedPayload from free text and, unless simulating, persist it. Unparseable output leaves it unset."""
    raw = await gateway.generate(normalize_prompt(raw_input))
    try:
        payload = NormalizedPayload.model_validate(parse_json(raw)).model_dump(exclude_none=True)
    except (ValueError, ValidationError) as e:
        log.warning("observe: could not parse normalized payload for %s: %s", request_id, e, extra=_ctx(request_id))
        return None
    if persist:
        await store.set_request_payload(request_id, payload)
    return payload

async def observe_node(state: OpsState, store: OpsStore, gateway: ModelGateway):
    request_id = state.get("request_id")
    iteration = (state.get("iteration") or 0) + 1
    log.info("observe: request %s (pass %d)", request_id, iteration, extra=_ctx(request_id))
    try:
        req = await store.get_request(request_id)
        if req is None:
            return {"iteration": iteration, "error": f"Request not found: {request_id}"}

        payload = req.get("payload")
        if state.get("raw_input") and not payload:
            log.info("observe: normalizing raw input for %s", request_id, extra=_ctx(request_id))
            payload = await _normalize_raw_input(state["raw_input"], request_id, store, gateway,
                                                 persist=not state.get("is_simulation"))

        customer = req.pop("customer", None)
        req["payload"] = payload
        return {"request": req, "customer": customer, "iteration": iteration}
    except Exception as e:
        log.exception("observe failed for %s", request_id, extra=_ctx(request_id))
        return {"iteration": iteration, "error": f"Observe error: {e}"}

# ---------- Orient ----------
async def orient_node(state: OpsState, store: OpsStore):
    try:
        inventory = await store.list_inventory()
        staff = await store.list_active_workers()
        active_tasks = await store.list_active_tasks()
    except Exception as e:
        log.exception("orient failed for %s", state.get("request_id"), extra=_ctx(state.get("request_id")))
        return {"error": f"Orient error: {e}"}

    staff_load = compute_staff_load(staff, active_tasks)
    inventory_check = check_inventory(_payload(state), inventory)
    log.info("orient: %d inventory items, %d workers, %d active tasks",
             len(inventory), len(staff), len(active_tasks), extra=_ctx(state.get("request_id")))
    return {
        "inventory": inventory,
        "inventory_check": inventory_check,
        "staff": staff,
        "staff_load": staff_load,
        "active_tasks": active_tasks,
    }

# ---------- Decide ----------
def build_decision_context(state: OpsState) -> Dict[str, Any]:
    """What the model sees: summaries only, never raw worker or task rows."""
    request = state.get("request") or {}
    customer = state.get("customer")
    return {
        "request": {
            "id": request.get("id"),
            "status": request.get("status"),
            "priority": request.get("priority"),
            "dueBy": request.get("due_by"),
            "payload": request.get("payload"),
        },
        "customer": {"name": customer.get("name"), "phone": customer.get("phone")} if customer else None,
        "inventoryCheck": state.get("inventory_check"),
        "staffLoad": [
            {
                "name": s["name"],
                "skills": s["skills"],
                "activeTasks": s["active_tasks"],
                "estimatedMinutesRemaining": s["estimated_minutes_remaining"],
            }
            for s in state.get("staff_load") or []
        ],
        "activeTasksCount": len(state.get("active_tasks") or []),
    }

async def decide_node(state: OpsState, gateway: ModelGateway):
    if state.get("error"):
        log.info("decide: upstream error, escalating without consulting the model", extra=_ctx(state.get("request_id")))
        return {"decision": _escalate(f"System error occurred: {state['error']}", "high")}

    try:
        raw = await gateway.generate(decide_prompt(build_decision_context(state)))
        data = parse_json(raw)
        if not isinstance(data, dict):
            raise ValueError(f"expected a JSON object, got {type(data).__name__}")
        decision = AgentDecision.model_validate(data)
    except Exception as e:
        log.exception("decide failed for %s", state.get("request_id"), extra=_ctx(state.get("request_id")))
        return {"decision": _escalate(f"Decision error: {e}", "high")}

    if decision.action not in DECISION_ACTIONS:
        log.warning("decide: invalid action %r, escalating", decision.action, extra=_ctx(state.get("request_id")))
        return {"decision": _escalate(f"Invalid decision action received: {decision.action}", "medium")}

    log.info("decide: %s - %s", decision.action, decision.reason, extra=_ctx(state.get("request_id")))
    return {"decision": decision.model_dump()}

# ---------- Plan tasks ----------
FALLBACK_TASK = {
    "title": "Process Request",
    "description": "Generic task created due to planning error",
    "required_skills": [],
    "estimated_min": 60,
    "suggested_worker_id": None,
}

def _is_minutes(v: Any) -> bool:
    return isinstance(v, (int, float)) and not isinstance(v, bool) and math.isfinite(v)

def coerce_task(raw: Any) -> Dict[str, Any]:
    """Turn one model-proposed task into a PlannedTask, defaulting whatever is malformed."""
    raw = raw if isinstance(raw, dict) else {}
    title = raw.get("title")
    skills = raw.get("requiredSkills", raw.get("required_skills"))
    est = raw.get("estimatedMin", raw.get("estimated_min"))
    worker = raw.get("suggestedWorkerId", raw.get("suggested_worker_id"))
    descr = raw.get("description")
    return PlannedTask(
        title=title.strip() if isinstance(title, str) and title.strip() else "Untitled Task",
        description=descr if isinstance(descr, str) else None,
        required_skills=[str(s) for s in skills] if isinstance(skills, list) else [],
        estimated_min=int(est) if _is_minutes(est) else 30,
        suggested_worker_id=str(worker) if worker else None,
    ).model_dump()

def _dedupe_titles(tasks: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    # titles are the natural key of a task within its request
    seen: Dict[str, int] = {}
    for t in tasks:
        n = seen.get(t["title"], 0)
        seen[t["title"]] = n + 1
        if n:
            t["title"] = f"{t['title']} ({n + 1})"
    return tasks

async def plan_tasks_node(state: OpsState, gateway: ModelGateway):
    if (state.get("decision") or {}).get("action") != ACCEPT_AND_PLAN:
        log.info("plan_tasks: skipped, decision is not %s", ACCEPT_AND_PLAN, extra=_ctx(state.get("request_id")))
        return {}
    payload = _payload(state)
    if not payload:
        log.warning("plan_tasks: no payload to plan for %s", state.get("request_id"), extra=_ctx(state.get("request_id")))
        return {}

    try:
        context = {
            "order": payload,
            "availableWorkers": [
                {
                    "id": s["id"],
                    "name": s["name"],
                    "skills": s["skills"],
                    "currentLoad": s["active_tasks"],
                    "estimatedFreeIn": s["estimated_minutes_remaining"],
                }
                for s in state.get("staff_load") or []
            ],
        }
        data = parse_json(await gateway.generate(plan_tasks_prompt(context)))
        if isinstance(data, dict) and isinstance(data.get("tasks"), list):
            data = data["tasks"]
        if not isinstance(data, list) or not data:
            raise ValueError("expected a non-empty JSON array of tasks")
        planned = _dedupe_titles([coerce_task(t) for t in data])
    except Exception:
        log.exception("plan_tasks failed for %s, using fallback task", state.get("request_id"), extra=_ctx(state.get("request_id")))
        return {"planned_tasks": [dict(FALLBACK_TASK)]}

    log.info("plan_tasks: planned %d tasks", len(planned), extra=_ctx(state.get("request_id")))
    return {"planned_tasks": planned}

# ---------- Act ----------
async def _accept_and_plan(state: OpsState, request_id: str, store: OpsStore) -> Dict[str, Any]:
    tasks = state.get("planned_tasks") or []
    if not tasks:
        # Accepted work with nothing to hand out: park it for the owner instead of
        # reporting it as in progress.
        log.warning("act: no planned tasks for %s, holding for owner review", request_id, extra=_ctx(request_id))
        payload = await store.block_request(request_id, {
            "_escalated": True,
            "_escalationReason": "Accepted but no tasks could be planned",
            "_escalationPriority": "medium",
        }, priority=ESCALATION_PRIORITY["medium"])
        return {"status": "BLOCKED", "payload": payload, "tasks_created": 0}
    created = await store.accept_plan(request_id, tasks)
    log.info("act: created %d of %d tasks for %s", len(created), len(tasks), request_id, extra=_ctx(request_id))
    return {"status": "IN_PROGRESS", "tasks_created": len(created)}

async def _delay(decision: Dict[str, Any], request_id: str, store: OpsStore) -> Dict[str, Any]:
    payload = await store.block_request(request_id, {
        "_delayed": True,
        "_delayReason": decision.get("reason"),
        "_delayUntil": decision.get("delay_until"),
    })
    log.info("act: request %s delayed", request_id, extra=_ctx(request_id))
    return {"status": "BLOCKED", "payload": payload}

async def _escalate_to_owner(decision: Dict[str, Any], request_id: str, store: OpsStore) -> Dict[str, Any]:
    prio = decision.get("escalation_priority")
    payload = await store.block_request(request_id, {
        "_escalated": True,
        "_escalationReason": decision.get("reason"),
        "_escalationPriority": prio,
    }, priority=ESCALATION_PRIORITY.get(prio, ESCALATION_PRIORITY["low"]))
    log.info("act: request %s escalated to owner (%s)", request_id, prio, extra=_ctx(request_id))
    return {"status": "BLOCKED", "priority": ESCALATION_PRIORITY.get(prio, 1), "payload": payload}

async def act_node(state: OpsState, store: OpsStore):
    decision = state.get("decision")
    request = state.get("request") or {}
    request_id = request.get("id") or state.get("request_id")
    if not decision or not request_id:
        log.warning("act: nothing to act on", extra=_ctx(request_id))
        return {}

    action = decision["action"]
    if state.get("is_simulation"):
        log.info("act: simulation, skipping writes for %s (%d planned tasks)",
                 action, len(state.get("planned_tasks") or []), extra=_ctx(request_id))
        accepted = action == ACCEPT_AND_PLAN and bool(state.get("planned_tasks"))
        status = "IN_PROGRESS" if accepted else "BLOCKED"
        return {"request": {**request, "id": request_id, "status": status}}

    try:
        if action == ACCEPT_AND_PLAN:
            outcome = await _accept_and_plan(state, request_id, store)
        elif action == DELAY_REQUEST:
            outcome = await _delay(decision, request_id, store)
        elif action == ESCALATE_TO_OWNER:
            outcome = await _escalate_to_owner(decision, request_id, store)
        else:
            raise ValueError(f"unknown action {action!r}")

        tasks_created = outcome.pop("tasks_created", None)
        await store.append_audit(
            request_id=request_id,
            actor="AGENT",
            action=action.lower(),
            context={
                "decision": decision,
                "plannedTasksCount": len(state.get("planned_tasks") or []),
                "tasksCreated": tasks_created,
                "inventoryCheck": state.get("inventory_check"),
                "staffLoadSnapshot": (state.get("staff_load") or [])[:5],
            },
            reason=decision.get("reason"),
        )
    except Exception as e:
        log.exception("act failed for %s", request_id, extra=_ctx(request_id))
        return {"error": f"Act error: {e}"}

    log.info("act: %s executed and audit logged", action, extra=_ctx(request_id))
    return {"request": {**request, "id": request_id, **outcome}}

# ---------- Respond ----------
def _fallback_response(state: OpsState) -> str:
    action = (state.get("decision") or {}).get("action")
    return FALLBACK_RESPONSES.get(action, GENERIC_FALLBACK_RESPONSE)

async def respond_node(state: OpsState, gateway: ModelGateway):
    payload = _payload(state) or {}
    customer = state.get("customer")
    context = {
        "decision": state.get("decision"),
        "request": {
            "id": (state.get("request") or {}).get("id") or state.get("request_id"),
            "type": payload.get("type"),
            "items": payload.get("items"),
        },
        "customer": {"name": customer.get("name")} if customer else None,
        "tasksCreated": len(state.get("planned_tasks") or []),
        "error": state.get("error"),
    }
    try:
        text = (await gateway.generate(respond_prompt(context))).strip()
        if not text:
            raise ValueError("empty response")
        if _PLACEHOLDER.search(text):
            raise ValueError(f"unresolved placeholder in response: {text!r}")
    except Exception:
        log.exception("respond failed for %s, using fallback message", state.get("request_id"), extra=_ctx(state.get("request_id")))
        return {"response": _fallback_response(state)}

    log.info("respond: response generated", extra=_ctx(state.get("request_id")))
    return {"response": text}
