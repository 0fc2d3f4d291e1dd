from __future__ import annotations

import json
import os
import sqlite3
import uuid
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Optional

BASE_DIR = Path(__file__).resolve().parent
db_path_raw = os.getenv("DB_PATH", str(BASE_DIR / "app.db"))
DB_PATH = Path(db_path_raw).expanduser()
if not DB_PATH.is_absolute():
    DB_PATH = (BASE_DIR / DB_PATH).resolve()
else:
    DB_PATH = DB_PATH.resolve()

# Seconds a writer waits on a locked database before failing.
DB_BUSY_TIMEOUT = float(os.getenv("DB_BUSY_TIMEOUT", "5"))


def get_db() -> sqlite3.Connection:
    conn = sqlite3.connect(DB_PATH, check_same_thread=False, timeout=DB_BUSY_TIMEOUT)
    conn.row_factory = sqlite3.Row
    return conn


def now_iso() -> str:
    return datetime.utcnow().isoformat()


def dump_json(value: Any) -> Optional[str]:
    if value is None:
        return None
    return json.dumps(value)


def load_json(value: Optional[str], default: Any = None) -> Any:
    if not value:
        return default
    try:
        return json.loads(value)
    except ValueError:
        return default


def row_to_dict(row: Optional[sqlite3.Row], json_fields: tuple[str, ...] = ()) -> Optional[Dict[str, Any]]:
    if row is None:
        return None
    data = dict(row)
    for field in json_fields:
        if field in data:
            data[field] = load_json(data[field])
    return data


TABLES = {
    "User": """
        id TEXT PRIMARY KEY,
        email TEXT UNIQUE,
        first_name TEXT,
        last_name TEXT,
        phone TEXT,
        role TEXT,
        scope TEXT,
        assigned_to_agent_id TEXT,
        agent_id TEXT,
        is_active INTEGER DEFAULT 1,
        password_salt TEXT,
        password_hash TEXT,
        created_by TEXT,
        reassigned_by TEXT,
        reassigned_at TEXT,
        inactivated_by TEXT,
        inactivated_at TEXT,
        inactivation_reason TEXT,
        created_at TEXT,
        updated_at TEXT
    """,
    "Agent": """
        id TEXT PRIMARY KEY,
        user_id TEXT,
        first_name TEXT,
        last_name TEXT,
        business_name TEXT,
        agent_code TEXT,
        email TEXT,
        phone TEXT,
        unique_link_code TEXT UNIQUE,
        npn TEXT,
        status TEXT DEFAULT 'active',
        created_at TEXT,
        updated_at TEXT
    """,
    "InsuranceCompany": """
        id TEXT PRIMARY KEY,
        name TEXT,
        slug TEXT UNIQUE,
        created_at TEXT
    """,
    "Application": """
        id TEXT PRIMARY KEY,
        user_id TEXT,
        agent_id TEXT,
        company_id TEXT,
        email TEXT,
        status TEXT,
        effective_date TEXT,
        enrollment_data TEXT,
        api_response TEXT,
        api_error TEXT,
        status_changed_by TEXT,
        status_changed_at TEXT,
        status_change_reason TEXT,
        created_at TEXT,
        updated_at TEXT
    """,
    "Applicant": """
        id TEXT PRIMARY KEY,
        application_id TEXT,
        first_name TEXT,
        last_name TEXT,
        relationship TEXT,
        gender TEXT,
        date_of_birth TEXT,
        smoker INTEGER,
        created_at TEXT
    """,
    "Coverage": """
        id TEXT PRIMARY KEY,
        application_id TEXT,
        plan_key TEXT,
        monthly_premium REAL,
        payment_frequency TEXT,
        effective_date TEXT,
        metadata TEXT,
        created_at TEXT
    """,
    "Beneficiary": """
        id TEXT PRIMARY KEY,
        application_id TEXT,
        first_name TEXT,
        last_name TEXT,
        relationship TEXT,
        percentage REAL,
        created_at TEXT
    """,
    "ApplicationSubmissionResult": """
        id TEXT PRIMARY KEY,
        application_id TEXT,
        carrier TEXT,
        success INTEGER,
        status_code INTEGER,
        policy_number TEXT,
        response TEXT,
        error_message TEXT,
        submitted_by TEXT,
        created_at TEXT
    """,
    "DocumentRequest": """
        id TEXT PRIMARY KEY,
        client_id TEXT,
        application_id TEXT,
        requested_by TEXT,
        document_type TEXT,
        priority TEXT,
        status TEXT,
        due_date TEXT,
        notes TEXT,
        document_id TEXT,
        fulfilled_at TEXT,
        fulfilled_by TEXT,
        created_at TEXT,
        updated_at TEXT
    """,
    "Document": """
        id TEXT PRIMARY KEY,
        client_id TEXT,
        document_type TEXT,
        file_name TEXT,
        file_url TEXT,
        uploaded_at TEXT
    """,
    "Notification": """
        id TEXT PRIMARY KEY,
        user_id TEXT,
        type TEXT,
        title TEXT,
        message TEXT,
        link_url TEXT,
        metadata TEXT,
        is_read INTEGER DEFAULT 0,
        created_at TEXT,
        read_at TEXT
    """,
    "License": """
        id TEXT PRIMARY KEY,
        agent_id TEXT,
        license_number TEXT,
        state TEXT,
        status TEXT,
        document_url TEXT,
        created_at TEXT,
        updated_at TEXT
    """,
    "Appointment": """
        id TEXT PRIMARY KEY,
        agent_id TEXT,
        company_id TEXT,
        agent_number TEXT,
        start_date TEXT,
        expiration_date TEXT,
        status TEXT,
        is_active INTEGER,
        commission_percentage REAL,
        additional_data TEXT,
        created_at TEXT,
        updated_at TEXT
    """,
    "AdminActivityLog": """
        id TEXT PRIMARY KEY,
        user_id TEXT,
        action TEXT,
        entity_type TEXT,
        entity_id TEXT,
        metadata TEXT,
        old_values TEXT,
        new_values TEXT,
        created_at TEXT
    """,
    "AuthSession": """
        id TEXT PRIMARY KEY,
        user_id TEXT,
        session_hash TEXT,
        expires_at TEXT,
        created_at TEXT,
        last_seen_at TEXT
    """,
}

# Columns added after the first release; older databases get them on startup.
LATE_COLUMNS = {
    "User": {"created_by": "TEXT", "phone": "TEXT"},
    "Agent": {
        "email": "TEXT",
        "phone": "TEXT",
        "unique_link_code": "TEXT",
        "npn": "TEXT",
        "status": "TEXT DEFAULT 'active'",
        "updated_at": "TEXT",
    },
    "Application": {"api_error": "TEXT", "status_change_reason": "TEXT"},
    "Notification": {"read_at": "TEXT"},
}

DEFAULT_COMPANIES = [("allstate", "Allstate Health Solutions")]


def init_db() -> None:
    with get_db() as conn:
        cur = conn.cursor()
        for name, columns in TABLES.items():
            cur.execute(f"CREATE TABLE IF NOT EXISTS {name}({columns})")

        for table, columns in LATE_COLUMNS.items():
            cur.execute(f"PRAGMA table_info({table})")
            existing = {row["name"] for row in cur.fetchall()}
            for column, column_type in columns.items():
                if column not in existing:
                    cur.execute(f"ALTER TABLE {table} ADD COLUMN {column} {column_type}")

        cur.execute("CREATE INDEX IF NOT EXISTS idx_notification_user ON Notification(user_id, is_read)")
        cur.execute("CREATE INDEX IF NOT EXISTS idx_application_agent ON Application(agent_id)")
        conn.commit()

        cur.execute("SELECT COUNT(*) AS cnt FROM InsuranceCompany")
        if cur.fetchone()["cnt"] == 0:
            seed_insurance_companies(conn)


def seed_insurance_companies(conn: sqlite3.Connection) -> None:
    cur = conn.cursor()
    for slug, name in DEFAULT_COMPANIES:
        cur.execute(
            "INSERT INTO InsuranceCompany (id, name, slug, created_at) VALUES (?, ?, ?, ?)",
            (str(uuid.uuid4()), name, slug, now_iso()),
        )
    conn.commit()
