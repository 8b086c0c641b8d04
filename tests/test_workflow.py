# tests/test_workflow.py
import asyncio
import json

import pytest

from garmentops.errors import StoreError
from garmentops.graph.build_graph import OpsAgent, Stage, route_after_decision
from garmentops.graph.state import DECISION_ACTIONS, create_initial_state, merge_patch
from conftest import ScriptedGateway, run

ACCEPT = '{"action": "ACCEPT_AND_PLAN", "reason": "Stock and staff available"}'
PLAN = json.dumps([
    {"title": "Shorten sleeves", "requiredSkills": ["tailoring"], "estimatedMin": 40, "suggestedWorkerId": "w-1"},
    {"title": "Press and pack", "requiredSkills": [], "estimatedMin": 15},
])
REPLY = "Great news, Ayesha! Our tailors are starting on your shirt."


class OverlapGateway(ScriptedGateway):
    """Counts runs sitting between their decide and respond calls."""

    def __init__(self, **replies):
        super().__init__(**replies)
        self.in_flight = 0
        self.max_in_flight = 0

    async def generate(self, prompt: str) -> str:
        reply = await super().generate(prompt)
        kind = self.calls[-1]
        if kind == "decide":
            self.in_flight += 1
            self.max_in_flight = max(self.max_in_flight, self.in_flight)
        await asyncio.sleep(0.02)
        if kind == "respond":
            self.in_flight -= 1
        return reply


class FlakyStore:
    """Real store, except loading a request blows up."""

    def __init__(self, inner):
        self.inner = inner

    async def get_request(self, request_id):
        raise StoreError("database unavailable")

    def __getattr__(self, name):
        return getattr(self.inner, name)


def _assert_terminal(out):
    assert out["decision"]["action"] in DECISION_ACTIONS
    assert isinstance(out["response"], str) and out["response"].strip()
    if out["decision"]["action"] != "ACCEPT_AND_PLAN":
        assert not out.get("planned_tasks")

# ---------- routing & merge ----------

def test_route_after_decision():
    assert route_after_decision({"decision": {"action": "ACCEPT_AND_PLAN"}}) == Stage.PLAN_TASKS.value
    assert route_after_decision({"decision": {"action": "DELAY_REQUEST"}}) == Stage.ACT.value
    assert route_after_decision({"decision": {"action": "ESCALATE_TO_OWNER"}}) == Stage.ACT.value
    assert route_after_decision({"decision": None}) == Stage.RESPOND.value
    assert route_after_decision({}) == Stage.RESPOND.value

def test_merge_patch_replaces_present_keys_only():
    state = create_initial_state("req-1", "hello")
    state["request"] = {"id": "req-1", "status": "NEW", "payload": {"type": "order"}}
    merged = merge_patch(state, {"request": {"id": "req-1", "status": "BLOCKED"}, "error": None})
    assert merged["request"] == {"id": "req-1", "status": "BLOCKED"}
    assert merged["error"] is None
    assert merged["raw_input"] == "hello"
    assert state["request"]["status"] == "NEW"
    assert merge_patch(state, None) == state

def test_initial_state_defaults_and_overrides():
    state = create_initial_state("req-9", is_simulation=True)
    assert state["iteration"] == 0
    assert state["inventory"] == [] and state["staff_load"] == [] and state["active_tasks"] == []
    assert state["is_simulation"] is True

# ---------- scenarios ----------

def test_scenario_a_accept_and_plan(shop):
    gw = ScriptedGateway(decide=ACCEPT, plan=PLAN, respond=REPLY)
    out = run(OpsAgent(shop, gw).run("req-1"))

    _assert_terminal(out)
    assert out["iteration"] == 1
    assert out["inventory_check"]["available"] is True
    assert out["decision"]["action"] == "ACCEPT_AND_PLAN"
    assert len(out["planned_tasks"]) == 2
    assert out["request"]["status"] == "IN_PROGRESS"
    assert out["response"] == REPLY
    assert gw.calls == ["decide", "plan", "respond"]

    assert run(shop.get_request("req-1"))["status"] == "IN_PROGRESS"
    tasks = {t["title"]: t for t in run(shop.list_tasks_for_request("req-1"))}
    assert tasks["Shorten sleeves"]["status"] == "ASSIGNED"
    assert tasks["Press and pack"]["status"] == "PENDING"
    audit = run(shop.query_audit(request_id="req-1"))["data"]
    assert [a["action"] for a in audit] == ["accept_and_plan"]
    assert audit[0]["reason"] == "Stock and staff available"

@pytest.mark.parametrize("reply,action", [
    ('{"action": "DELAY_REQUEST", "reason": "SH-001 out of stock", "delayUntil": "2026-10-25"}', "DELAY_REQUEST"),
    ('{"action": "ESCALATE_TO_OWNER", "reason": "SH-001 short", "escalationPriority": "medium"}', "ESCALATE_TO_OWNER"),
    (ACCEPT, "ACCEPT_AND_PLAN"),
])
def test_scenario_b_shortage_still_consults_model(shop, reply, action):
    run(shop.upsert_inventory_item("SH-001", "White Cotton Shirt", 0))
    gw = ScriptedGateway(decide=reply, plan=PLAN, respond="We'll be in touch about your shirt soon.")
    out = run(OpsAgent(shop, gw).run("req-1"))

    _assert_terminal(out)
    assert out["inventory_check"]["items"][0]["shortage"] == 1
    assert out["inventory_check"]["available"] is False
    assert '"available": false' in gw.prompts["decide"]
    assert out["decision"]["action"] == action
    status = run(shop.get_request("req-1"))["status"]
    assert status == ("IN_PROGRESS" if action == "ACCEPT_AND_PLAN" else "BLOCKED")

def test_scenario_c_store_failure_escalates(shop):
    gw = ScriptedGateway(decide=ACCEPT, respond=RuntimeError("model down"))
    out = run(OpsAgent(FlakyStore(shop), gw).run("req-1"))

    _assert_terminal(out)
    assert out["error"].startswith("Observe error: database unavailable")
    assert out["decision"]["action"] == "ESCALATE_TO_OWNER"
    assert out["decision"]["escalation_priority"] == "high"
    assert "decide" not in gw.calls
    assert out["response"] == "Your request requires special attention. Our team will contact you shortly."

    req = run(shop.get_request("req-1"))
    assert req["status"] == "BLOCKED"
    assert req["priority"] == 10
    audit = run(shop.query_audit(request_id="req-1"))["data"]
    assert [a["action"] for a in audit] == ["escalate_to_owner"]

def test_scenario_d_decide_gateway_failure(shop):
    gw = ScriptedGateway(decide=ConnectionError("network unreachable"), respond="We'll reach out shortly.")
    out = run(OpsAgent(shop, gw).run("req-1"))

    _assert_terminal(out)
    assert out["decision"]["action"] == "ESCALATE_TO_OWNER"
    assert out["decision"]["escalation_priority"] == "high"
    assert out["decision"]["reason"].startswith("Decision error: ")
    assert out["response"] == "We'll reach out shortly."
    assert "plan" not in gw.calls

def test_missing_request_escalates_and_reports_act_error(store):
    out = run(OpsAgent(store, ScriptedGateway()).run("ghost"))
    _assert_terminal(out)
    assert out["decision"]["action"] == "ESCALATE_TO_OWNER"
    assert out["error"].startswith("Act error:")

# ---------- properties ----------

@pytest.mark.parametrize("reply", [
    "no idea", '{"action": 42, "reason": "x"}', '{"action": "SHIP_IT", "reason": "x"}', "[1, 2, 3]", "",
])
def test_decision_closed_even_for_garbage(shop, reply):
    out = run(OpsAgent(shop, ScriptedGateway(decide=reply)).run("req-1"))
    _assert_terminal(out)
    assert out["decision"]["action"] == "ESCALATE_TO_OWNER"
    assert not out.get("planned_tasks")

def test_every_model_call_failing_still_responds(shop):
    out = run(OpsAgent(shop, ScriptedGateway()).run("req-1", "please fix my shirt"))
    _assert_terminal(out)

def test_simulation_has_no_side_effects(shop):
    gw = ScriptedGateway(decide=ACCEPT, plan=PLAN, respond=REPLY)
    out = run(OpsAgent(shop, gw).simulate("req-1"))

    assert out["is_simulation"] is True
    assert out["decision"]["action"] == "ACCEPT_AND_PLAN"
    assert len(out["planned_tasks"]) == 2
    assert out["response"] == REPLY
    assert run(shop.get_request("req-1"))["status"] == "NEW"
    assert run(shop.list_tasks_for_request("req-1")) == []
    assert run(shop.query_audit())["pagination"]["total"] == 0

def test_simulation_does_not_save_normalized_payload(store):
    run(store.create_request(id="req-1", channel="whatsapp"))
    run(store.upsert_inventory_item("SH-001", "White Cotton Shirt", 5))
    normalized = '{"type": "alteration", "items": [{"sku": "SH-001", "qty": 1}], "estimated_minutes": 30}'
    gw = ScriptedGateway(normalize=normalized, decide=ACCEPT, plan=PLAN, respond=REPLY)

    out = run(OpsAgent(store, gw).simulate("req-1", "fix my shirt"))
    assert out["request"]["payload"]["type"] == "alteration"
    assert out["inventory_check"]["available"] is True
    assert run(store.get_request("req-1"))["payload"] is None
    assert run(store.list_tasks_for_request("req-1")) == []

def test_normalization_runs_once_across_runs(store):
    run(store.create_request(id="req-1", channel="whatsapp"))
    run(store.upsert_inventory_item("SH-001", "White Cotton Shirt", 5))
    normalized = '{"type": "alteration", "items": [{"sku": "SH-001", "qty": 1}], ' \
                 '"required_skills": ["tailoring"], "estimated_minutes": 30}'
    gw = ScriptedGateway(normalize=normalized, decide='{"action": "DELAY_REQUEST", "reason": "nobody free"}',
                         respond="Sorry for the wait!")
    agent = OpsAgent(store, gw)

    first = run(agent.run("req-1", "can u take in my shirt sleeves"))
    second = run(agent.run("req-1", "can u take in my shirt sleeves"))
    assert gw.calls.count("normalize") == 1
    assert first["inventory_check"]["available"] is True
    assert second["request"]["payload"]["_delayed"] is True
    assert second["request"]["payload"]["type"] == "alteration"

def test_stream_yields_each_stage_in_order(shop):
    gw = ScriptedGateway(decide='{"action": "ESCALATE_TO_OWNER", "reason": "custom embroidery"}', respond="Hi!")

    async def collect():
        return [e async for e in OpsAgent(shop, gw).stream("req-1")]

    events = run(collect())
    assert [e["stage"] for e in events] == ["observe", "orient", "decide", "act", "respond"]
    final = events[-1]["state"]
    assert final["response"] == "Hi!"
    assert final["decision"]["action"] == "ESCALATE_TO_OWNER"
    assert final["request"]["status"] == "BLOCKED"
    assert events[1]["patch"]["inventory_check"]["available"] is True

def test_stream_and_run_agree(shop):
    gw = ScriptedGateway(decide=ACCEPT, plan=PLAN, respond=REPLY)

    async def last_state():
        state = None
        async for e in OpsAgent(shop, gw).stream("req-1", overrides={"is_simulation": True}):
            state = e["state"]
        return state

    streamed = run(last_state())
    ran = run(OpsAgent(shop, gw).simulate("req-1"))
    for key in ("decision", "planned_tasks", "response", "inventory_check", "iteration"):
        assert streamed[key] == ran[key]

def test_concurrent_runs_for_different_requests(shop):
    async def both():
        await shop.create_request(customer_id="c-1", id="req-2", payload={
            "type": "order", "items": [{"sku": "SH-001", "qty": 2}],
            "required_skills": [], "estimated_minutes": 10,
        })
        agent = OpsAgent(shop, ScriptedGateway(decide=ACCEPT, plan=PLAN, respond=REPLY))
        return await asyncio.gather(agent.run("req-1"), agent.run("req-2"))

    a, b = run(both())
    assert a["request_id"] == "req-1" and b["request_id"] == "req-2"
    assert a["request"]["status"] == b["request"]["status"] == "IN_PROGRESS"
    assert len(run(shop.list_tasks_for_request("req-2"))) == 2

def test_runs_for_the_same_request_take_turns(shop):
    gw = OverlapGateway(decide='{"action": "ESCALATE_TO_OWNER", "reason": "custom embroidery"}', respond="Hi!")
    agent = OpsAgent(shop, gw)

    async def both():
        return await asyncio.gather(agent.run("req-1"), agent.run("req-1"))

    a, b = run(both())
    assert gw.calls == ["decide", "respond", "decide", "respond"]
    assert gw.max_in_flight == 1
    assert a["response"] == b["response"] == "Hi!"

def test_closing_a_stream_early_releases_the_request(shop):
    gw = ScriptedGateway(decide='{"action": "ESCALATE_TO_OWNER", "reason": "custom embroidery"}', respond="Hi!")
    agent = OpsAgent(shop, gw)

    async def go():
        events = agent.stream("req-1")
        first = await events.__anext__()
        await events.aclose()
        return first, await asyncio.wait_for(agent.run("req-1"), timeout=5)

    first, out = run(go())
    assert first["stage"] == "observe"
    assert out["response"] == "Hi!"
    assert gw.calls[-2:] == ["decide", "respond"]
