from __future__ import annotations

import asyncio
import logging
import weakref
from enum import Enum
from typing import Any, AsyncIterator, Dict, Optional

from langgraph.graph import StateGraph, END

from ..llm import ModelGateway
from ..tools.store_tools import OpsStore
from .state import OpsState, ACCEPT_AND_PLAN, DELAY_REQUEST, ESCALATE_TO_OWNER, create_initial_state, merge_patch
from .nodes import observe_node, orient_node, decide_node, plan_tasks_node, act_node, respond_node

log = logging.getLogger(__name__)


class Stage(str, Enum):
    OBSERVE = "observe"
    ORIENT = "orient"
    DECIDE = "decide"
    PLAN_TASKS = "plan_tasks"
    ACT = "act"
    RESPOND = "respond"


def route_after_decision(state: Dict[str, Any]) -> str:
    decision = (state or {}).get("decision")
    if not decision:
        return Stage.RESPOND.value
    action = decision.get("action")
    if action == ACCEPT_AND_PLAN:
        return Stage.PLAN_TASKS.value
    if action in (DELAY_REQUEST, ESCALATE_TO_OWNER):
        return Stage.ACT.value
    return Stage.RESPOND.value


def build_graph(store: OpsStore, gateway: ModelGateway):
    g = StateGraph(OpsState)

    async def _observe(state: OpsState): return await observe_node(state, store, gateway)
    async def _orient(state: OpsState):  return await orient_node(state, store)
    async def _decide(state: OpsState):  return await decide_node(state, gateway)
    async def _plan(state: OpsState):    return await plan_tasks_node(state, gateway)
    async def _act(state: OpsState):     return await act_node(state, store)
    async def _respond(state: OpsState): return await respond_node(state, gateway)

    g.add_node(Stage.OBSERVE.value, _observe)
    g.add_node(Stage.ORIENT.value, _orient)
    g.add_node(Stage.DECIDE.value, _decide)
    g.add_node(Stage.PLAN_TASKS.value, _plan)
    g.add_node(Stage.ACT.value, _act)
    g.add_node(Stage.RESPOND.value, _respond)

    g.set_entry_point(Stage.OBSERVE.value)
    g.add_edge(Stage.OBSERVE.value, Stage.ORIENT.value)
    g.add_edge(Stage.ORIENT.value, Stage.DECIDE.value)

    g.add_conditional_edges(Stage.DECIDE.value, route_after_decision, {
        Stage.PLAN_TASKS.value: Stage.PLAN_TASKS.value,
        Stage.ACT.value: Stage.ACT.value,
        Stage.RESPOND.value: Stage.RESPOND.value,
    })

    g.add_edge(Stage.PLAN_TASKS.value, Stage.ACT.value)
    g.add_edge(Stage.ACT.value, Stage.RESPOND.value)
    g.add_edge(Stage.RESPOND.value, END)

    return g.compile()


class OpsAgent:
    """
    Runs the observe -> orient -> decide -> (plan_tasks) -> act -> respond
    workflow for one request at a time per request id.
    """

    def __init__(self, store: OpsStore, gateway: ModelGateway) -> None:
        self.store = store
        self.gateway = gateway
        self.graph = build_graph(store, gateway)
        self._locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()

    def _lock_for(self, request_id: str) -> asyncio.Lock:
        # Overlapping runs for one request in this process queue up; other requests run freely.
        lock = self._locks.get(request_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[request_id] = lock
        return lock

    async def run(self, request_id: str, raw_input: Optional[str] = None,
                  overrides: Optional[Dict[str, Any]] = None) -> OpsState:
        state = create_initial_state(request_id, raw_input, **(overrides or {}))
        log.info("agent run started for %s", request_id)
        async with self._lock_for(request_id):
            out = await self.graph.ainvoke(state)
        log.info("agent run finished for %s: %s", request_id, (out.get("decision") or {}).get("action"))
        return out

    async def stream(self, request_id: str, raw_input: Optional[str] = None,
                     overrides: Optional[Dict[str, Any]] = None) -> AsyncIterator[Dict[str, Any]]:
        """
        Yield {"stage", "patch", "state"} after every stage, `state` being the merged state so far.

        The request's lock is held until the generator is exhausted or closed; callers that
        stop early should close it (`contextlib.aclosing`) rather than leave it to the GC.
        """
        state = create_initial_state(request_id, raw_input, **(overrides or {}))
        async with self._lock_for(request_id):
            updates = self.graph.astream(state, stream_mode="updates")
            try:
                async for event in updates:
                    for stage, patch in event.items():
                        state = merge_patch(state, patch)
                        yield {"stage": stage, "patch": patch or {}, "state": state}
            finally:
                await updates.aclose()

    async def simulate(self, request_id: str, raw_input: Optional[str] = None) -> OpsState:
        return await self.run(request_id, raw_input, {"is_simulation": True})
