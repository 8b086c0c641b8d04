# garmentops/util/inventory.py
from typing import Any, Dict, List, Optional

def check_inventory(payload: Optional[Dict[str, Any]], inventory: List[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    """
    Requested-vs-available per SKU. None when the payload carries no item list.
    A SKU missing from stock counts as zero available; a missing qty counts as one.
    """
    if not isinstance(payload, dict) or not isinstance(payload.get("items"), list):
        return None
    stock = {i["sku"]: int(i.get("quantity") or 0) for i in inventory}
    items = []
    for item in payload["items"]:
        if not isinstance(item, dict):
            continue
        sku = item.get("sku")
        requested = item.get("qty")
        requested = int(requested) if isinstance(requested, (int, float)) else 1
        available = stock.get(sku, 0)
        items.append({
            "sku": sku,
            "requested": requested,
            "available": available,
            "shortage": max(0, requested - available),
        })
    return {"available": is_available(items), "items": items}

def is_available(items: List[Dict[str, Any]]) -> bool:
    return all(i["shortage"] == 0 for i in items)

def compute_staff_load(staff: List[Dict[str, Any]], active_tasks: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Active task count and summed estimated minutes for each worker."""
    by_worker: Dict[str, List[Dict[str, Any]]] = {}
    for t in active_tasks:
        wid = t.get("assigned_to_id")
        if wid:
            by_worker.setdefault(wid, []).append(t)
    load = []
    for w in staff:
        tasks = by_worker.get(w["id"], [])
        load.append({
            "id": w["id"],
            "name": w["name"],
            "skills": list(w.get("skills") or []),
            "active_tasks": len(tasks),
            "estimated_minutes_remaining": sum(int(t.get("estimated_min") or 0) for t in tasks),
        })
    return load
