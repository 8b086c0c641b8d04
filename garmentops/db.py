import json
import uuid
import datetime as dt
from typing import Any, Dict, List, Optional

from sqlalchemy import create_engine, text
from sqlalchemy.engine import Connection, Engine
from .config import DB_PATH, ensure_dirs

SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS customers (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        phone TEXT,
        email TEXT,
        created_at TEXT NOT NULL
    )""",
    """
    CREATE TABLE IF NOT EXISTS workers (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        email TEXT,
        phone TEXT,
        role TEXT NOT NULL DEFAULT 'WORKER',
        skills TEXT NOT NULL DEFAULT '[]',
        is_active INTEGER NOT NULL DEFAULT 1,
        created_at TEXT NOT NULL
    )""",
    """
    CREATE TABLE IF NOT EXISTS inventory_items (
        id TEXT PRIMARY KEY,
        sku TEXT NOT NULL UNIQUE,
        name TEXT NOT NULL,
        quantity INTEGER NOT NULL DEFAULT 0,
        updated_at TEXT NOT NULL
    )""",
    """
    CREATE TABLE IF NOT EXISTS requests (
        id TEXT PRIMARY KEY,
        customer_id TEXT REFERENCES customers(id),
        channel TEXT NOT NULL DEFAULT 'web',
        status TEXT NOT NULL DEFAULT 'NEW',
        priority INTEGER NOT NULL DEFAULT 0,
        due_by TEXT,
        payload TEXT,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )""",
    """
    CREATE TABLE IF NOT EXISTS tasks (
        id TEXT PRIMARY KEY,
        request_id TEXT NOT NULL REFERENCES requests(id) ON DELETE CASCADE,
        title TEXT NOT NULL,
        description TEXT,
        required_skills TEXT NOT NULL DEFAULT '[]',
        estimated_min INTEGER,
        status TEXT NOT NULL DEFAULT 'PENDING',
        assigned_to_id TEXT REFERENCES workers(id),
        created_at TEXT NOT NULL,
        UNIQUE (request_id, title)
    )""",
    """
    CREATE TABLE IF NOT EXISTS audit_actions (
        id TEXT PRIMARY KEY,
        request_id TEXT,
        actor TEXT NOT NULL,
        action TEXT NOT NULL,
        context TEXT,
        reason TEXT,
        created_at TEXT NOT NULL
    )""",
    "CREATE INDEX IF NOT EXISTS ix_tasks_status ON tasks(status)",
    "CREATE INDEX IF NOT EXISTS ix_audit_request ON audit_actions(request_id, created_at)",
]

def make_engine(path: Optional[str] = None) -> Engine:
    if path is None:
        ensure_dirs()
        path = DB_PATH
    return create_engine(f"sqlite:///{path}", future=True, echo=False)

def init_db(engine: Engine) -> None:
    with engine.begin() as conn:
        for stmt in SCHEMA:
            conn.execute(text(stmt))

def new_id() -> str:
    return str(uuid.uuid4())

def now_iso() -> str:
    return dt.datetime.now(dt.timezone.utc).isoformat(timespec="milliseconds")

def to_json(value: Any) -> Optional[str]:
    return None if value is None else json.dumps(value, ensure_ascii=False, default=str)

def from_json(value: Optional[str], default: Any = None) -> Any:
    if value is None or value == "":
        return default
    return json.loads(value)

def q(conn: Connection, sql: str, **params) -> List[Dict[str, Any]]:
    res = conn.execute(text(sql), params)
    return [dict(r._mapping) for r in res.fetchall()]

def one(conn: Connection, sql: str, **params) -> Optional[Dict[str, Any]]:
    rows = q(conn, sql, **params)
    return rows[0] if rows else None

def exec_sql(conn: Connection, sql: str, **params) -> int:
    return conn.execute(text(sql), params).rowcount
