# garmentops/graph/prompts.py
import json
from typing import Any

from langchain_core.prompts import PromptTemplate

def _dump(context: Any) -> str:
    return json.dumps(context, indent=2, ensure_ascii=False, default=str)

_normalize = PromptTemplate.from_template(
    "You are an order triage agent for a garment and tailoring shop.\n"
    "Turn the customer's message into a structured work order.\n\n"
    "CUSTOMER MESSAGE:\n\"{raw_input}\"\n\n"
    "Fields:\n"
    "- type: \"alteration\" (fixing existing clothes), \"stitching\" (new garment from customer fabric) "
    "or \"order\" (standard catalog item).\n"
    "- items: list of {{sku, qty, size, color, fabric, alteration_type, measurement}}. "
    "Use a readable SKU like \"BLUE-JEANS\" for named items, \"GENERAL-GARMENT\" otherwise.\n"
    "- required_skills: only from [\"tailoring\", \"heavy_stitching\", \"finishing\", \"cutting\", \"embroidery\"].\n"
    "- estimated_minutes: simple alteration 30-45, standard stitching 120-240, complex order 300+.\n"
    "- notes: the customer's tone and urgency.\n\n"
    "Leave out anything the customer did not say. Ignore deadlines; they are handled later.\n"
    "Return ONLY the JSON object."
)

_decide = PromptTemplate.from_template(
    "You run operations for a custom garment and tailoring shop. Keep work flowing, "
    "keep customers happy and do not burn out the staff.\n\n"
    "OPERATIONAL SNAPSHOT:\n{context}\n\n"
    "Choose exactly one action:\n"
    "- ACCEPT_AND_PLAN: stock is fully available and at least one qualified worker has capacity.\n"
    "- DELAY_REQUEST: stock is missing or every qualified worker has more than 480 minutes queued. "
    "Set delayUntil to when capacity frees up.\n"
    "- ESCALATE_TO_OWNER: unusual or complex work, a high-priority request that is short on stock, "
    "or a conflict between priority and resources.\n\n"
    "If inventoryCheck.available is false do not accept unless a partial start is justified. "
    "Treat dueBy as a hard deadline. The reason must name the workers or SKUs involved.\n\n"
    "Reply with strict JSON:\n"
    "{{\"action\": \"ACCEPT_AND_PLAN\" | \"DELAY_REQUEST\" | \"ESCALATE_TO_OWNER\", "
    "\"reason\": \"...\", \"delayUntil\": \"ISO-8601 (optional)\", "
    "\"escalationPriority\": \"low\" | \"medium\" | \"high\" (optional)}}"
)

_plan_tasks = PromptTemplate.from_template(
    "You are the production planner of a tailoring shop. Break this order into production tasks.\n\n"
    "ORDER AND WORKFORCE:\n{context}\n\n"
    "Order the tasks preparation, core work, then finishing and QC. Merge tiny steps. "
    "Only suggest a worker who has the required skills and no more than 480 minutes queued; "
    "prefer the least loaded one. Rough timings: cutting 15-30, stitching 60-120, "
    "complex alterations 45-90, finishing 15-20 minutes.\n\n"
    "Return ONLY a JSON array:\n"
    "[{{\"title\": \"...\", \"description\": \"...\", \"requiredSkills\": [\"...\"], "
    "\"estimatedMin\": 30, \"suggestedWorkerId\": \"worker id (optional)\"}}]"
)

_respond = PromptTemplate.from_template(
    "You write customer messages for a bespoke tailoring shop.\n\n"
    "CONTEXT:\n{context}\n\n"
    "- ACCEPT_AND_PLAN: confirm we are starting work on their items and give a sense of the steps involved.\n"
    "- DELAY_REQUEST: apologise, reassure them, and mention when we expect to start if delayUntil is known.\n"
    "- ESCALATE_TO_OWNER: acknowledge the request and say the shop owner will review it and reach out.\n\n"
    "Warm, plain language, under 100 words. No internal terms such as tasks, agents or escalation. "
    "Never leave placeholders; if the name is missing, skip the greeting name.\n"
    "Return ONLY the message text."
)

def normalize_prompt(raw_input: str) -> str:
    return _normalize.format(raw_input=raw_input)

def decide_prompt(context: Any) -> str:
    return _decide.format(context=_dump(context))

def plan_tasks_prompt(context: Any) -> str:
    return _plan_tasks.format(context=_dump(context))

def respond_prompt(context: Any) -> str:
    return _respond.format(context=_dump(context))
