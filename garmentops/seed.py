# garmentops/seed.py
import asyncio
import logging

from .db import make_engine, init_db
from .tools.store_tools import OpsStore

log = logging.getLogger(__name__)

# --------------------------
# Fabric & garment stock
# --------------------------
inventory = [
    ("SH-001",            "White Cotton Shirt",         12),
    ("SH-002",            "Blue Oxford Shirt",           6),
    ("TR-WOOL-32",        "Wool Trousers W32",           4),
    ("FAB-SILK-BLUE",     "Blue Silk Fabric (metre)",    0),
    ("FAB-COTTON-WHT",    "White Cotton Fabric (metre)", 40),
    ("THR-POLY-BLK",      "Black Polyester Thread",     25),
    ("BTN-HORN-20",       "Horn Buttons 20mm",          60),
    ("GENERAL-GARMENT",   "Customer-supplied garment",  999),
]

workers = [
    ("w-amina",  "Amina",  ["tailoring", "finishing"]),
    ("w-bilal",  "Bilal",  ["cutting", "heavy_stitching"]),
    ("w-sana",   "Sana",   ["embroidery", "finishing", "tailoring"]),
]

customers = [
    ("c-ayesha", "Ayesha Khan", "03001234567"),
    ("c-hassan", "Hassan Raza", "03339887766"),
]

requests = [
    ("req-1", "c-ayesha", {
        "type": "alteration",
        "items": [{"sku": "SH-001", "qty": 1, "alteration_type": "sleeve_shortening"}],
        "required_skills": ["tailoring"],
        "estimated_minutes": 45,
    }),
    ("req-2", "c-hassan", {
        "type": "stitching",
        "items": [{"sku": "FAB-SILK-BLUE", "qty": 3}],
        "required_skills": ["cutting", "heavy_stitching", "finishing"],
        "estimated_minutes": 240,
    }),
]

async def seed(store: OpsStore) -> None:
    """Demo shop data. Safe to run repeatedly: every row is keyed by a fixed id or SKU."""
    for sku, name, qty in inventory:
        await store.upsert_inventory_item(sku, name, qty)
    for wid, name, skills in workers:
        await store.create_worker(name, skills, id=wid)
    for cid, name, phone in customers:
        await store.create_customer(name, phone=phone, id=cid)
    for rid, cid, payload in requests:
        await store.create_request(customer_id=cid, payload=payload, id=rid)
    log.info("seeded %d items, %d workers, %d requests", len(inventory), len(workers), len(requests))

def main():
    from .obs.logging_config import setup_logging
    setup_logging()
    engine = make_engine()
    init_db(engine)
    asyncio.run(seed(OpsStore(engine)))

if __name__ == "__main__":
    main()
