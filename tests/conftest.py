# tests/conftest.py
import asyncio

import pytest

from garmentops.db import make_engine, init_db
from garmentops.errors import ModelGatewayError
from garmentops.tools.store_tools import OpsStore


class ScriptedGateway:
    """Fake model gateway: replies by prompt kind, raises when the reply is an exception or missing."""

    MARKERS = {
        "normalize": "order triage agent",
        "decide": "OPERATIONAL SNAPSHOT",
        "plan": "production planner",
        "respond": "customer messages",
    }

    def __init__(self, **replies):
        self.replies = replies
        self.calls = []
        self.prompts = {}

    async def generate(self, prompt: str) -> str:
        kind = next(k for k, marker in self.MARKERS.items() if marker in prompt)
        self.calls.append(kind)
        self.prompts[kind] = prompt
        reply = self.replies.get(kind)
        if reply is None:
            raise ModelGatewayError(f"Model gateway error: nothing scripted for {kind}")
        if isinstance(reply, Exception):
            raise reply
        return reply


def run(coro):
    return asyncio.run(coro)


@pytest.fixture
def store(tmp_path):
    engine = make_engine(str(tmp_path / "ops.db"))
    init_db(engine)
    return OpsStore(engine)


ALTERATION_PAYLOAD = {
    "type": "alteration",
    "items": [{"sku": "SH-001", "qty": 1}],
    "required_skills": ["tailoring"],
    "estimated_minutes": 45,
}


@pytest.fixture
def shop(store):
    """One customer, one idle tailor, SH-001 in stock, and request req-1 asking for one shirt alteration."""
    async def _setup():
        await store.create_customer("Ayesha Khan", phone="03001234567", id="c-1")
        await store.create_worker("Amina", ["tailoring"], id="w-1")
        await store.upsert_inventory_item("SH-001", "White Cotton Shirt", 5)
        await store.create_request(customer_id="c-1", payload=ALTERATION_PAYLOAD, id="req-1")
    run(_setup())
    return store
