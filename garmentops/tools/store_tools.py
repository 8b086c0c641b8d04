# garmentops/tools/store_tools.py
import asyncio
import functools
import logging
import math
from typing import List, Dict, Any, Optional

from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from ..db import q, one, exec_sql, new_id, now_iso, to_json, from_json
from ..errors import StoreError, RequestNotFound

log = logging.getLogger(__name__)

ACTIVE_TASK_STATUSES = ("PENDING", "ASSIGNED", "IN_PROGRESS")
_ACTIVE_IN = ", ".join(f"'{s}'" for s in ACTIVE_TASK_STATUSES)


def _offload(fn):
    """Run a blocking store method in a worker thread and wrap driver errors."""
    @functools.wraps(fn)
    async def wrapper(self, *args, **kwargs):
        try:
            return await asyncio.to_thread(fn, self, *args, **kwargs)
        except SQLAlchemyError as e:
            raise StoreError(f"{fn.__name__} failed: {e}") from e
    return wrapper

# =========================================================
# Row decoding
# =========================================================

def _request_row(row: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if row is None:
        return None
    row["payload"] = from_json(row.get("payload"))
    return row

def _worker_row(row: Dict[str, Any]) -> Dict[str, Any]:
    row["skills"] = from_json(row.get("skills"), [])
    row["is_active"] = bool(row.get("is_active"))
    return row

def _task_row(row: Dict[str, Any]) -> Dict[str, Any]:
    row["required_skills"] = from_json(row.get("required_skills"), [])
    return row

def _audit_row(row: Dict[str, Any]) -> Dict[str, Any]:
    row["context"] = from_json(row.get("context"))
    return row


class OpsStore:
    """Entity store for requests, customers, inventory, workers, tasks and the audit log.

    Every public method is a coroutine; the SQL itself runs synchronously in a
    worker thread so many workflow runs can await the store concurrently.
    Methods that write more than one row do it inside a single transaction.
    """

    def __init__(self, engine: Engine):
        self.engine = engine

    # =========================================================
    # Requests
    # =========================================================

    @_offload
    def get_request(self, request_id: str) -> Optional[Dict[str, Any]]:
        """Request with its customer and tasks, or None when it does not exist."""
        with self.engine.begin() as c:
            req = _request_row(one(c, "SELECT * FROM requests WHERE id=:id", id=request_id))
            if req is None:
                return None
            req["customer"] = None
            if req.get("customer_id"):
                req["customer"] = one(c, "SELECT * FROM customers WHERE id=:id", id=req["customer_id"])
            tasks = q(c, "SELECT * FROM tasks WHERE request_id=:id ORDER BY created_at", id=request_id)
            req["tasks"] = [_task_row(t) for t in tasks]
        return req

    @_offload
    def set_request_payload(self, request_id: str, payload: Dict[str, Any]) -> None:
        with self.engine.begin() as c:
            n = exec_sql(c, "UPDATE requests SET payload=:p, updated_at=:u WHERE id=:id",
                         p=to_json(payload), u=now_iso(), id=request_id)
        if n == 0:
            raise RequestNotFound(request_id)

    @_offload
    def accept_plan(self, request_id: str, tasks: List[Dict[str, Any]]) -> List[str]:
        """Create the planned tasks and move the request to IN_PROGRESS atomically.

        Tasks are keyed by (request_id, title); a task that already exists is
        left alone, so replaying the same plan creates nothing new.
        Returns the ids of the tasks inserted by this call.
        """
        created: List[str] = []
        with self.engine.begin() as c:
            if one(c, "SELECT 1 AS x FROM requests WHERE id=:id", id=request_id) is None:
                raise RequestNotFound(request_id)
            for t in tasks:
                tid = new_id()
                worker = t.get("suggested_worker_id")
                n = exec_sql(c, """
                    INSERT INTO tasks(id, request_id, title, description, required_skills,
                                      estimated_min, status, assigned_to_id, created_at)
                    VALUES (:id, :rid, :title, :descr, :skills, :est, :status, :worker, :ts)
                    ON CONFLICT(request_id, title) DO NOTHING
                """, id=tid, rid=request_id, title=t["title"], descr=t.get("description"),
                     skills=to_json(t.get("required_skills") or []), est=t.get("estimated_min"),
                     status="ASSIGNED" if worker else "PENDING", worker=worker, ts=now_iso())
                if n:
                    created.append(tid)
            exec_sql(c, "UPDATE requests SET status='IN_PROGRESS', updated_at=:u WHERE id=:id",
                     u=now_iso(), id=request_id)
        log.debug("accept_plan %s: %d of %d tasks inserted", request_id, len(created), len(tasks))
        return created

    @_offload
    def block_request(self, request_id: str, payload_patch: Dict[str, Any],
                      priority: Optional[int] = None) -> Dict[str, Any]:
        """Set status BLOCKED and extend the payload bag with `payload_patch`.

        Existing payload keys survive unless the patch names them.
        """
        with self.engine.begin() as c:
            row = one(c, "SELECT payload FROM requests WHERE id=:id", id=request_id)
            if row is None:
                raise RequestNotFound(request_id)
            payload = from_json(row["payload"]) or {}
            payload.update(payload_patch)
            if priority is None:
                exec_sql(c, "UPDATE requests SET status='BLOCKED', payload=:p, updated_at=:u WHERE id=:id",
                         p=to_json(payload), u=now_iso(), id=request_id)
            else:
                exec_sql(c, """
                    UPDATE requests SET status='BLOCKED', priority=:prio, payload=:p, updated_at=:u
                    WHERE id=:id
                """, prio=int(priority), p=to_json(payload), u=now_iso(), id=request_id)
        return payload

    @_offload
    def create_request(self, customer_id: Optional[str] = None, payload: Optional[Dict[str, Any]] = None,
                       priority: int = 0, due_by: Optional[str] = None, status: str = "NEW",
                       channel: str = "web", id: Optional[str] = None) -> Dict[str, Any]:
        rid = id or new_id()
        ts = now_iso()
        with self.engine.begin() as c:
            exec_sql(c, """
                INSERT INTO requests(id, customer_id, channel, status, priority, due_by, payload, created_at, updated_at)
                VALUES (:id, :cid, :ch, :st, :prio, :due, :p, :ts, :ts)
                ON CONFLICT(id) DO NOTHING
            """, id=rid, cid=customer_id, ch=channel, st=status, prio=priority, due=due_by,
                 p=to_json(payload), ts=ts)
            row = one(c, "SELECT * FROM requests WHERE id=:id", id=rid)
        return _request_row(row)

    # =========================================================
    # Customers & workers
    # =========================================================

    @_offload
    def create_customer(self, name: str, phone: Optional[str] = None, email: Optional[str] = None,
                        id: Optional[str] = None) -> Dict[str, Any]:
        cid = id or new_id()
        with self.engine.begin() as c:
            exec_sql(c, """
                INSERT INTO customers(id, name, phone, email, created_at) VALUES (:id, :n, :ph, :em, :ts)
                ON CONFLICT(id) DO UPDATE SET name=excluded.name, phone=excluded.phone, email=excluded.email
            """, id=cid, n=name, ph=phone, em=email, ts=now_iso())
            return one(c, "SELECT * FROM customers WHERE id=:id", id=cid)

    @_offload
    def create_worker(self, name: str, skills: List[str], role: str = "WORKER", is_active: bool = True,
                      email: Optional[str] = None, id: Optional[str] = None) -> Dict[str, Any]:
        wid = id or new_id()
        with self.engine.begin() as c:
            exec_sql(c, """
                INSERT INTO workers(id, name, email, role, skills, is_active, created_at)
                VALUES (:id, :n, :em, :role, :skills, :active, :ts)
                ON CONFLICT(id) DO UPDATE SET name=excluded.name, role=excluded.role,
                    skills=excluded.skills, is_active=excluded.is_active
            """, id=wid, n=name, em=email, role=role, skills=to_json(list(skills)),
                 active=1 if is_active else 0, ts=now_iso())
            return _worker_row(one(c, "SELECT * FROM workers WHERE id=:id", id=wid))

    @_offload
    def list_active_workers(self) -> List[Dict[str, Any]]:
        with self.engine.begin() as c:
            rows = q(c, "SELECT * FROM workers WHERE role='WORKER' AND is_active=1 ORDER BY name")
        return [_worker_row(r) for r in rows]

    # =========================================================
    # Inventory
    # =========================================================

    @_offload
    def upsert_inventory_item(self, sku: str, name: str, quantity: int) -> Dict[str, Any]:
        with self.engine.begin() as c:
            exec_sql(c, """
                INSERT INTO inventory_items(id, sku, name, quantity, updated_at) VALUES (:id, :sku, :n, :qty, :ts)
                ON CONFLICT(sku) DO UPDATE SET name=excluded.name, quantity=excluded.quantity,
                    updated_at=excluded.updated_at
            """, id=new_id(), sku=sku, n=name, qty=int(quantity), ts=now_iso())
            return one(c, "SELECT * FROM inventory_items WHERE sku=:sku", sku=sku)

    @_offload
    def list_inventory(self) -> List[Dict[str, Any]]:
        with self.engine.begin() as c:
            return q(c, "SELECT * FROM inventory_items ORDER BY sku")

    # =========================================================
    # Tasks
    # =========================================================

    @_offload
    def list_active_tasks(self) -> List[Dict[str, Any]]:
        """Every task in a non-terminal status, across all requests, with its assignee."""
        with self.engine.begin() as c:
            rows = q(c, f"""
                SELECT t.*, w.name AS assignee_name, w.skills AS assignee_skills
                FROM tasks t LEFT JOIN workers w ON w.id = t.assigned_to_id
                WHERE t.status IN ({_ACTIVE_IN})
                ORDER BY t.created_at
            """)
        out = []
        for r in rows:
            name = r.pop("assignee_name")
            skills = r.pop("assignee_skills")
            r = _task_row(r)
            r["assigned_to"] = None
            if r.get("assigned_to_id") and name is not None:
                r["assigned_to"] = {"id": r["assigned_to_id"], "name": name,
                                    "skills": from_json(skills, [])}
            out.append(r)
        return out

    @_offload
    def list_tasks_for_request(self, request_id: str) -> List[Dict[str, Any]]:
        with self.engine.begin() as c:
            rows = q(c, "SELECT * FROM tasks WHERE request_id=:id ORDER BY created_at", id=request_id)
        return [_task_row(r) for r in rows]

    # =========================================================
    # Audit log
    # =========================================================

    @_offload
    def append_audit(self, request_id: Optional[str], actor: str, action: str,
                     context: Any = None, reason: Optional[str] = None) -> Dict[str, Any]:
        aid = new_id()
        with self.engine.begin() as c:
            exec_sql(c, """
                INSERT INTO audit_actions(id, request_id, actor, action, context, reason, created_at)
                VALUES (:id, :rid, :actor, :action, :ctx, :reason, :ts)
            """, id=aid, rid=request_id, actor=actor, action=action, ctx=to_json(context),
                 reason=reason, ts=now_iso())
            return _audit_row(one(c, "SELECT * FROM audit_actions WHERE id=:id", id=aid))

    @_offload
    def query_audit(self, request_id: Optional[str] = None, actor: Optional[str] = None,
                    action: Optional[str] = None, start: Optional[str] = None, end: Optional[str] = None,
                    page: int = 1, limit: int = 50) -> Dict[str, Any]:
        """Newest-first audit records matching every given filter, one page at a time."""
        page = max(1, int(page))
        limit = max(1, int(limit))
        where, params = [], {}
        if request_id:
            where.append("request_id = :rid"); params["rid"] = request_id
        if actor:
            where.append("actor = :actor"); params["actor"] = actor
        if action:
            where.append("action = :action"); params["action"] = action
        if start:
            where.append("created_at >= :start"); params["start"] = start
        if end:
            where.append("created_at <= :end"); params["end"] = end
        clause = ("WHERE " + " AND ".join(where)) if where else ""

        with self.engine.begin() as c:
            total = one(c, f"SELECT COUNT(*) AS n FROM audit_actions {clause}", **params)["n"]
            rows = q(c, f"""
                SELECT * FROM audit_actions {clause}
                ORDER BY created_at DESC LIMIT :limit OFFSET :offset
            """, limit=limit, offset=(page - 1) * limit, **params)
        return {
            "data": [_audit_row(r) for r in rows],
            "pagination": {
                "total": total,
                "page": page,
                "limit": limit,
                "totalPages": math.ceil(total / limit),
            },
        }
