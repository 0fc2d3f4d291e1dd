from __future__ import annotations

import hashlib
import os
import re
import secrets
import sqlite3
import uuid
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Dict, List, Optional

import structlog
from fastapi import FastAPI, File, HTTPException, Request, Response, UploadFile
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles
from pydantic import BaseModel

import carriers
from db import BASE_DIR, dump_json, get_db, init_db, load_json, now_iso, row_to_dict
from logging_config import setup_logging
from notifications import NotificationEvent, notify_client_event
from policies import (
    ADMIN_ROLES,
    ENROLLMENT_SUBMIT_ROLES,
    Actor,
    ApplicationStatus,
    Role,
    Scope,
    allowed_transitions_for,
    build_access_filter,
    can_access,
    can_change_status,
    can_create_role,
    can_transition,
    cancellation_block_reason,
    parse_role,
    parse_scope,
    parse_status,
    support_staff_scope_for,
)

logger = structlog.get_logger(__name__)

uploads_dir_raw = os.getenv("UPLOADS_DIR", str(BASE_DIR.parent / "uploads"))
UPLOADS_DIR = Path(uploads_dir_raw).expanduser()
if not UPLOADS_DIR.is_absolute():
    UPLOADS_DIR = (BASE_DIR.parent / UPLOADS_DIR).resolve()
else:
    UPLOADS_DIR = UPLOADS_DIR.resolve()

SESSION_COOKIE_SECURE = os.getenv("SESSION_COOKIE_SECURE", "false").strip().lower() in {
    "1",
    "true",
    "yes",
    "on",
}
SESSION_COOKIE_SAMESITE = os.getenv("SESSION_COOKIE_SAMESITE", "lax").strip().lower()
if SESSION_COOKIE_SAMESITE not in {"lax", "strict", "none"}:
    SESSION_COOKIE_SAMESITE = "lax"

UPLOADS_DIR.mkdir(parents=True, exist_ok=True)

SESSION_COOKIE_NAME = "pa_session"
SESSION_DURATION_HOURS = 24 * 7
PASSWORD_MIN_LENGTH = 8

DOCUMENT_TYPES = {"medical", "identification", "financial", "property", "other"}
DOCUMENT_PRIORITIES = {"low", "medium", "high", "urgent"}
LICENSE_DOCUMENT_MAX_BYTES = 5 * 1024 * 1024
LICENSE_DOCUMENT_CONTENT_TYPES = {"application/pdf"}
STATE_CODE_PATTERN = re.compile(r"^[A-Z]{2}$")
AGENT_LINK_CODE_PATTERN = re.compile(r"^[a-z0-9-]{3,50}$")
AGENT_STATUSES = {"active", "inactive"}
# Agents may edit their own contact details; the rest is admin-only.
AGENT_SELF_EDITABLE_FIELDS = {"first_name", "last_name", "phone"}

app = FastAPI(title="Policy Admin Dashboard API")

FRONTEND_BASE_URL = os.getenv("FRONTEND_BASE_URL", "http://localhost:3000").rstrip("/")
_extra_origins_raw = os.getenv("ALLOWED_ORIGINS", "")
EXTRA_ALLOWED_ORIGINS = [
    origin.strip().rstrip("/")
    for origin in _extra_origins_raw.split(",")
    if origin.strip()
]
ALLOWED_ORIGINS = sorted(set([
    FRONTEND_BASE_URL,
    "http://localhost:3000",
    "http://127.0.0.1:3000",
    *EXTRA_ALLOWED_ORIGINS,
]))

app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ----------------------
# Error envelope
# ----------------------

@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content={"success": False, "error": exc.detail},
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    return JSONResponse(
        status_code=400,
        content={
            "success": False,
            "error": "Invalid request",
            "details": jsonable_encoder(exc.errors()),
        },
    )


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.error(
        "Unhandled exception",
        path=request.url.path,
        method=request.method,
        error=str(exc),
        exc_info=exc,
    )
    return JSONResponse(status_code=500, content={"success": False, "error": "Internal server error"})


# ----------------------
# Request / response models
# ----------------------

class AuthLoginIn(BaseModel):
    email: str
    password: str


class AuthUserOut(BaseModel):
    id: str
    email: str
    role: Optional[str] = None
    scope: Optional[str] = None
    first_name: str = ""
    last_name: str = ""


class ApplicationOut(BaseModel):
    id: str
    user_id: Optional[str] = None
    agent_id: Optional[str] = None
    company_id: Optional[str] = None
    email: Optional[str] = None
    status: str
    effective_date: Optional[str] = None
    status_changed_by: Optional[str] = None
    status_changed_at: Optional[str] = None
    status_change_reason: Optional[str] = None
    api_error: Optional[Any] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None


class ApplicationDetailOut(ApplicationOut):
    enrollment_data: Optional[Dict[str, Any]] = None
    api_response: Optional[Any] = None
    applicants: List[Dict[str, Any]] = []
    coverages: List[Dict[str, Any]] = []
    beneficiaries: List[Dict[str, Any]] = []
    submissions: List[Dict[str, Any]] = []


class StatusChangeIn(BaseModel):
    new_status: str
    reason: Optional[str] = None


class CancelApplicationIn(BaseModel):
    reason: Optional[str] = None


class StatusChangeOut(BaseModel):
    success: bool = True
    previous_status: str
    application: ApplicationOut


class AllowedTransitionsOut(BaseModel):
    application_id: str
    current_status: str
    allowed: List[str]
    can_submit_enrollment: bool = False


class SubmitEnrollmentIn(BaseModel):
    payment_information: Optional[Dict[str, Any]] = None


class SubmitEnrollmentOut(BaseModel):
    success: bool = True
    application: ApplicationOut
    policy_number: Optional[str] = None
    carrier_response: Optional[Any] = None


class NewApplicationNotificationIn(BaseModel):
    application_id: Optional[str] = None
    client_id: Optional[str] = None


class DocumentNotificationIn(BaseModel):
    document_id: Optional[str] = None
    client_id: Optional[str] = None
    document_name: Optional[str] = None


class TicketNotificationIn(BaseModel):
    ticket_id: Optional[str] = None
    client_id: Optional[str] = None
    type: Optional[str] = None
    ticket_number: Optional[str] = None


class NotificationOut(BaseModel):
    id: str
    user_id: str
    type: Optional[str] = None
    title: str
    message: str
    link_url: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None
    is_read: bool = False
    created_at: Optional[str] = None
    read_at: Optional[str] = None


class DocumentRequestIn(BaseModel):
    client_id: str
    document_type: str
    priority: str = "medium"
    application_id: Optional[str] = None
    due_date: Optional[str] = None
    notes: Optional[str] = None


class DocumentRequestFulfillIn(BaseModel):
    document_id: Optional[str] = None


class DocumentRequestOut(BaseModel):
    id: str
    client_id: str
    application_id: Optional[str] = None
    requested_by: Optional[str] = None
    document_type: str
    priority: str
    status: str
    due_date: Optional[str] = None
    notes: Optional[str] = None
    document_id: Optional[str] = None
    fulfilled_at: Optional[str] = None
    fulfilled_by: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None


class UserIn(BaseModel):
    email: str
    first_name: str
    last_name: str
    role: str
    password: str
    phone: str = ""
    scope: Optional[str] = None
    assigned_to_agent_id: Optional[str] = None
    agent_id: Optional[str] = None
    business_name: Optional[str] = None
    agent_code: Optional[str] = None


class UserOut(BaseModel):
    id: str
    email: str
    first_name: str = ""
    last_name: str = ""
    phone: str = ""
    role: Optional[str] = None
    scope: Optional[str] = None
    assigned_to_agent_id: Optional[str] = None
    agent_id: Optional[str] = None
    is_active: bool = True
    created_at: Optional[str] = None
    updated_at: Optional[str] = None


class ReassignClientIn(BaseModel):
    agent_id: str


class InactivateUserIn(BaseModel):
    reason: Optional[str] = None


class InactivateUserOut(BaseModel):
    success: bool = True
    user: UserOut
    cascaded_user_ids: List[str] = []


class AssignRoleIn(BaseModel):
    role: str
    scope: Optional[str] = None
    assigned_to_agent_id: Optional[str] = None
    agent_id: Optional[str] = None


class AgentIn(BaseModel):
    email: str
    first_name: str
    last_name: str
    password: str
    phone: str = ""
    business_name: Optional[str] = None
    agent_code: Optional[str] = None
    unique_link_code: Optional[str] = None
    npn: Optional[str] = None


class AgentUpdate(BaseModel):
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    phone: Optional[str] = None
    business_name: Optional[str] = None
    agent_code: Optional[str] = None
    unique_link_code: Optional[str] = None
    npn: Optional[str] = None
    status: Optional[str] = None


class AgentOut(BaseModel):
    id: str
    user_id: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    business_name: Optional[str] = None
    agent_code: Optional[str] = None
    unique_link_code: Optional[str] = None
    npn: Optional[str] = None
    status: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None


class LicenseIn(BaseModel):
    agent_id: str
    license_number: str
    state: str
    status: str = "active"
    document_url: Optional[str] = None


class LicenseUpdate(BaseModel):
    license_number: Optional[str] = None
    state: Optional[str] = None
    status: Optional[str] = None
    document_url: Optional[str] = None


class LicenseOut(BaseModel):
    id: str
    agent_id: str
    license_number: str
    state: str
    status: Optional[str] = None
    document_url: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None


class AppointmentIn(BaseModel):
    agent_id: str
    company_id: str
    agent_number: str
    start_date: Optional[str] = None
    expiration_date: Optional[str] = None
    status: str = "active"
    commission_percentage: Optional[float] = None
    additional_data: Optional[Dict[str, Any]] = None


class AppointmentUpdate(BaseModel):
    agent_number: Optional[str] = None
    start_date: Optional[str] = None
    expiration_date: Optional[str] = None
    status: Optional[str] = None
    commission_percentage: Optional[float] = None
    additional_data: Optional[Dict[str, Any]] = None


class AppointmentOut(BaseModel):
    id: str
    agent_id: str
    company_id: str
    agent_number: Optional[str] = None
    start_date: Optional[str] = None
    expiration_date: Optional[str] = None
    status: Optional[str] = None
    is_active: bool = False
    commission_percentage: Optional[float] = None
    additional_data: Optional[Dict[str, Any]] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None


class AgentDetailOut(BaseModel):
    agent: AgentOut
    licenses: List[LicenseOut] = []
    appointments: List[AppointmentOut] = []
    clients: List[UserOut] = []
    applications: List[ApplicationOut] = []
    stats: Dict[str, int] = {}


class InsuranceCompanyOut(BaseModel):
    id: str
    name: str
    slug: str


# ----------------------
# Auth helpers
# ----------------------

def sha256_hex(value: str) -> str:
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


def hash_password(password: str, salt: str) -> str:
    return hashlib.pbkdf2_hmac(
        "sha256",
        password.encode("utf-8"),
        salt.encode("utf-8"),
        120000,
    ).hex()


def create_password_credentials(password: str) -> tuple[str, str]:
    salt = secrets.token_hex(16)
    return salt, hash_password(password, salt)


def verify_password(password: str, salt: Optional[str], expected_hash: Optional[str]) -> bool:
    if not password or not salt or not expected_hash:
        return False
    actual_hash = hash_password(password, salt)
    return secrets.compare_digest(actual_hash, expected_hash)


def normalize_user_email(email: Optional[str]) -> str:
    value = (email or "").strip().lower()
    if not value or "@" not in value:
        raise HTTPException(status_code=400, detail="A valid email is required")
    return value


def require_valid_password(password: Optional[str]) -> str:
    value = (password or "").strip()
    if not value:
        raise HTTPException(status_code=400, detail="Password is required")
    if len(value) < PASSWORD_MIN_LENGTH:
        raise HTTPException(
            status_code=400,
            detail=f"Password must be at least {PASSWORD_MIN_LENGTH} characters",
        )
    return value


def revoke_user_sessions(conn: sqlite3.Connection, user_id: str) -> None:
    cur = conn.cursor()
    cur.execute("DELETE FROM AuthSession WHERE user_id = ?", (user_id,))


def create_auth_session(conn: sqlite3.Connection, user_id: str) -> str:
    token = secrets.token_urlsafe(32)
    session_hash = sha256_hex(token)
    now = now_iso()
    expires_at = (datetime.utcnow() + timedelta(hours=SESSION_DURATION_HOURS)).isoformat()
    cur = conn.cursor()
    cur.execute(
        """
        INSERT INTO AuthSession (id, user_id, session_hash, expires_at, created_at, last_seen_at)
        VALUES (?, ?, ?, ?, ?, ?)
        """,
        (str(uuid.uuid4()), user_id, session_hash, expires_at, now, now),
    )
    conn.commit()
    return token


def require_session_user(conn: sqlite3.Connection, request: Request) -> sqlite3.Row:
    """Resolve the session cookie to its live ``User`` row and touch ``last_seen_at``."""
    token = request.cookies.get(SESSION_COOKIE_NAME)
    if not token:
        raise HTTPException(status_code=401, detail="Authentication required")
    session_hash = sha256_hex(token)
    cur = conn.cursor()
    cur.execute(
        """
        SELECT u.*
        FROM AuthSession s
        JOIN User u ON u.id = s.user_id
        WHERE s.session_hash = ? AND s.expires_at > ?
        """,
        (session_hash, now_iso()),
    )
    user = cur.fetchone()
    if not user:
        raise HTTPException(status_code=401, detail="Authentication required")
    if not user["is_active"]:
        raise HTTPException(status_code=401, detail="Account is inactive")
    cur.execute("UPDATE AuthSession SET last_seen_at = ? WHERE session_hash = ?", (now_iso(), session_hash))
    conn.commit()
    return user


def actor_from_user(conn: sqlite3.Connection, user: sqlite3.Row) -> Actor:
    role = parse_role(user["role"])
    own_agent_id = None
    if role == Role.AGENT:
        cur = conn.cursor()
        cur.execute(
            "SELECT id FROM Agent WHERE user_id = ? ORDER BY created_at LIMIT 1",
            (user["id"],),
        )
        agent = cur.fetchone()
        own_agent_id = agent["id"] if agent else None
    return Actor(
        user_id=user["id"],
        email=user["email"],
        role=role,
        scope=parse_scope(user["scope"]),
        assigned_agent_id=user["assigned_to_agent_id"],
        own_agent_id=own_agent_id,
    )


def resolve_actor(conn: sqlite3.Connection, request: Request) -> Actor:
    # The User row is the only source of role and scope; nothing is cached.
    user = require_session_user(conn, request)
    return actor_from_user(conn, user)


def require_admin(actor: Actor) -> None:
    if not actor.is_admin:
        raise HTTPException(status_code=403, detail="Insufficient permissions")


def require_staff(actor: Actor) -> None:
    if not actor.is_staff:
        raise HTTPException(status_code=403, detail="Insufficient permissions")


def auth_user_payload(row: sqlite3.Row) -> AuthUserOut:
    return AuthUserOut(
        id=row["id"],
        email=row["email"],
        role=row["role"],
        scope=row["scope"],
        first_name=row["first_name"] or "",
        last_name=row["last_name"] or "",
    )


# ----------------------
# Fetch helpers
# ----------------------

def fetch_user(conn: sqlite3.Connection, user_id: str) -> sqlite3.Row:
    cur = conn.cursor()
    cur.execute("SELECT * FROM User WHERE id = ?", (user_id,))
    row = cur.fetchone()
    if not row:
        raise HTTPException(status_code=404, detail="User not found")
    return row


def fetch_agent(conn: sqlite3.Connection, agent_id: str) -> sqlite3.Row:
    cur = conn.cursor()
    cur.execute("SELECT * FROM Agent WHERE id = ?", (agent_id,))
    row = cur.fetchone()
    if not row:
        raise HTTPException(status_code=404, detail="Agent not found")
    return row


def fetch_company(conn: sqlite3.Connection, company_id: str) -> sqlite3.Row:
    cur = conn.cursor()
    cur.execute("SELECT * FROM InsuranceCompany WHERE id = ?", (company_id,))
    row = cur.fetchone()
    if not row:
        raise HTTPException(status_code=404, detail="Insurance company not found")
    return row


def fetch_application(conn: sqlite3.Connection, application_id: str) -> sqlite3.Row:
    cur = conn.cursor()
    cur.execute("SELECT * FROM Application WHERE id = ?", (application_id,))
    row = cur.fetchone()
    if not row:
        raise HTTPException(status_code=404, detail="Application not found")
    return row


def fetch_license(conn: sqlite3.Connection, license_id: str) -> sqlite3.Row:
    cur = conn.cursor()
    cur.execute("SELECT * FROM License WHERE id = ?", (license_id,))
    row = cur.fetchone()
    if not row:
        raise HTTPException(status_code=404, detail="License not found")
    return row


def fetch_appointment(conn: sqlite3.Connection, appointment_id: str) -> sqlite3.Row:
    cur = conn.cursor()
    cur.execute("SELECT * FROM Appointment WHERE id = ?", (appointment_id,))
    row = cur.fetchone()
    if not row:
        raise HTTPException(status_code=404, detail="Appointment not found")
    return row


def fetch_document_request(conn: sqlite3.Connection, request_id: str) -> sqlite3.Row:
    cur = conn.cursor()
    cur.execute("SELECT * FROM DocumentRequest WHERE id = ?", (request_id,))
    row = cur.fetchone()
    if not row:
        raise HTTPException(status_code=404, detail="Document request not found")
    return row


def to_user_out(row: sqlite3.Row) -> UserOut:
    data = dict(row)
    data["phone"] = data.get("phone") or ""
    data["first_name"] = data.get("first_name") or ""
    data["last_name"] = data.get("last_name") or ""
    data["is_active"] = bool(data.get("is_active", 1))
    return UserOut(**data)


def to_application_out(row: sqlite3.Row) -> ApplicationOut:
    return ApplicationOut(**row_to_dict(row, json_fields=("api_error",)))


def to_agent_out(row: sqlite3.Row) -> AgentOut:
    return AgentOut(**dict(row))


def to_license_out(row: sqlite3.Row) -> LicenseOut:
    return LicenseOut(**dict(row))


def to_appointment_out(row: sqlite3.Row) -> AppointmentOut:
    data = row_to_dict(row, json_fields=("additional_data",))
    data["is_active"] = bool(data.get("is_active"))
    return AppointmentOut(**data)


def to_notification_out(row: sqlite3.Row) -> NotificationOut:
    data = row_to_dict(row, json_fields=("metadata",))
    data["is_read"] = bool(data.get("is_read"))
    return NotificationOut(**data)


# ----------------------
# Audit log
# ----------------------

def log_activity(
    conn: sqlite3.Connection,
    user_id: Optional[str],
    action: str,
    entity_type: str,
    entity_id: Optional[str],
    *,
    metadata: Optional[Dict[str, Any]] = None,
    old_values: Optional[Dict[str, Any]] = None,
    new_values: Optional[Dict[str, Any]] = None,
) -> None:
    """Queue an audit row on ``conn``; the caller owns the commit."""
    cur = conn.cursor()
    cur.execute(
        """
        INSERT INTO AdminActivityLog (
            id, user_id, action, entity_type, entity_id, metadata, old_values, new_values, created_at
        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            str(uuid.uuid4()),
            user_id,
            action,
            entity_type,
            entity_id,
            dump_json(metadata),
            dump_json(old_values),
            dump_json(new_values),
            now_iso(),
        ),
    )


# ----------------------
# Application lifecycle
# ----------------------

def application_status(row: sqlite3.Row) -> ApplicationStatus:
    status = parse_status(row["status"])
    if status is None:
        raise HTTPException(status_code=400, detail=f"Application has an unknown status: {row['status']}")
    return status


def apply_status_change(
    conn: sqlite3.Connection,
    application: sqlite3.Row,
    actor: Actor,
    new_status: ApplicationStatus,
    reason: Optional[str],
    *,
    extra_fields: Optional[Dict[str, Any]] = None,
) -> sqlite3.Row:
    """Write ``new_status`` only if the row still holds the status we read.

    The status update and its audit row commit together; a concurrent writer
    that got there first turns this call into a 409.
    """
    old_status = application["status"]
    now = now_iso()
    fields: Dict[str, Any] = {
        "status": new_status.value,
        "status_changed_by": actor.user_id,
        "status_changed_at": now,
        "status_change_reason": reason,
        "updated_at": now,
    }
    fields.update(extra_fields or {})
    assignments = ", ".join(f"{column} = ?" for column in fields)

    cur = conn.cursor()
    try:
        cur.execute(
            f"UPDATE Application SET {assignments} WHERE id = ? AND status = ?",
            (*fields.values(), application["id"], old_status),
        )
        if cur.rowcount != 1:
            conn.rollback()
            logger.warning(
                "Application status changed concurrently",
                application_id=application["id"],
                expected_status=old_status,
                new_status=new_status.value,
            )
            raise HTTPException(
                status_code=409,
                detail="Application status was changed by another request; reload and try again",
            )
        log_activity(
            conn,
            actor.user_id,
            "application_state_changed",
            "application",
            application["id"],
            metadata={"reason": reason} if reason else None,
            old_values={"status": old_status},
            new_values={"status": new_status.value},
        )
        conn.commit()
    except sqlite3.Error:
        conn.rollback()
        raise

    logger.info(
        "Application status changed",
        application_id=application["id"],
        actor_id=actor.user_id,
        from_status=old_status,
        to_status=new_status.value,
    )
    return fetch_application(conn, application["id"])


def ensure_can_view_application(actor: Actor, application: sqlite3.Row) -> None:
    if actor.role == Role.CLIENT:
        if application["user_id"] != actor.user_id:
            raise HTTPException(status_code=403, detail="You do not have access to this application")
        return
    if not can_access(actor, application["agent_id"]):
        raise HTTPException(status_code=403, detail="You do not have access to this application")


def record_submission_result(
    conn: sqlite3.Connection,
    application_id: str,
    *,
    carrier: str,
    success: bool,
    submitted_by: str,
    status_code: Optional[int] = None,
    policy_number: Optional[str] = None,
    response: Any = None,
    error_message: Optional[str] = None,
) -> None:
    cur = conn.cursor()
    cur.execute(
        """
        INSERT INTO ApplicationSubmissionResult (
            id, application_id, carrier, success, status_code, policy_number,
            response, error_message, submitted_by, created_at
        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            str(uuid.uuid4()),
            application_id,
            carrier,
            1 if success else 0,
            status_code,
            policy_number,
            dump_json(response),
            error_message,
            submitted_by,
            now_iso(),
        ),
    )


def reprice_coverages(
    enrollment: Dict[str, Any],
    stored_coverages: List[sqlite3.Row],
    fallback_effective_date: Optional[str],
) -> None:
    """Refresh each coverage premium from Rate/Cart, falling back to the stored premium."""
    demographics = enrollment.get("demographics") or {}
    applicants = demographics.get("applicants") or enrollment.get("applicants") or []
    selected_plans = enrollment.get("selectedPlans") or []
    stored_by_plan = {row["plan_key"]: row for row in stored_coverages}

    for coverage in enrollment.get("coverages") or []:
        plan_key = coverage.get("planKey")
        stored = stored_by_plan.get(plan_key)
        metadata = load_json(stored["metadata"], {}) if stored else {}
        stored_premium = stored["monthly_premium"] if stored else None
        product_code = coverage.get("productCode") or (metadata or {}).get("productCode")
        if not product_code:
            product_code = next(
                (plan.get("productCode") for plan in selected_plans if plan.get("planKey") == plan_key),
                None,
            )
        if not product_code:
            if stored_premium is not None:
                coverage["monthlyPremium"] = float(stored_premium)
            continue
        try:
            coverage["monthlyPremium"] = carriers.recalculate_plan_price(
                plan_key,
                product_code,
                applicants,
                zip_code=demographics.get("zipCode") or "",
                state=demographics.get("state") or "",
                effective_date=coverage.get("effectiveDate") or fallback_effective_date or "",
                payment_frequency=coverage.get("paymentFrequency") or "Monthly",
            )
        except carriers.RateCartError as exc:
            logger.warning(
                "Rate/Cart re-rating failed, using stored premium",
                plan_key=plan_key,
                product_code=product_code,
                stored_premium=stored_premium,
                error=exc.message,
            )
            if stored_premium is not None:
                coverage["monthlyPremium"] = float(stored_premium)


# ----------------------
# Agent profiles
# ----------------------

def normalize_link_code(
    conn: sqlite3.Connection, value: Optional[str], exclude_agent_id: Optional[str] = None
) -> Optional[str]:
    code = (value or "").strip().lower()
    if not code:
        return None
    if not AGENT_LINK_CODE_PATTERN.match(code):
        raise HTTPException(
            status_code=400,
            detail="Link code must be 3-50 characters of lowercase letters, numbers and hyphens",
        )
    cur = conn.cursor()
    cur.execute(
        "SELECT id FROM Agent WHERE unique_link_code = ? AND id != ?",
        (code, exclude_agent_id or ""),
    )
    if cur.fetchone():
        raise HTTPException(status_code=400, detail="Link code is already in use")
    return code


def insert_agent_profile(
    conn: sqlite3.Connection,
    user_id: str,
    *,
    first_name: str,
    last_name: str,
    email: Optional[str],
    phone: Optional[str] = None,
    business_name: Optional[str] = None,
    agent_code: Optional[str] = None,
    unique_link_code: Optional[str] = None,
    npn: Optional[str] = None,
) -> str:
    """Create the Agent row that ties ``user_id`` to a portfolio; no commit."""
    agent_id = str(uuid.uuid4())
    now = now_iso()
    cur = conn.cursor()
    cur.execute(
        """
        INSERT INTO Agent (
            id, user_id, first_name, last_name, email, phone, business_name, agent_code,
            unique_link_code, npn, status, created_at, updated_at
        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 'active', ?, ?)
        """,
        (
            agent_id,
            user_id,
            first_name,
            last_name,
            email,
            phone or None,
            (business_name or "").strip() or None,
            (agent_code or "").strip() or None,
            unique_link_code,
            (npn or "").strip() or None,
            now,
            now,
        ),
    )
    return agent_id


# ----------------------
# Upload helpers
# ----------------------

def save_license_document(license_id: str, file: UploadFile) -> str:
    license_dir = UPLOADS_DIR / "licenses" / license_id
    license_dir.mkdir(parents=True, exist_ok=True)
    if (file.content_type or "").lower() not in LICENSE_DOCUMENT_CONTENT_TYPES:
        raise HTTPException(status_code=400, detail="Only PDF files are allowed")
    content = file.file.read()
    if len(content) > LICENSE_DOCUMENT_MAX_BYTES:
        raise HTTPException(status_code=400, detail="File is too large. Maximum size is 5MB")
    file_id = str(uuid.uuid4())
    safe_name = Path(file.filename or f"license-{file_id}.pdf").name
    target_path = license_dir / f"{file_id}-{safe_name}"
    with target_path.open("wb") as f:
        f.write(content)
    return f"/uploads/licenses/{license_id}/{target_path.name}"


def normalize_state_code(value: Optional[str]) -> str:
    state = (value or "").strip().upper()
    if not STATE_CODE_PATTERN.match(state):
        raise HTTPException(status_code=400, detail="State must be a two-letter code (e.g. FL, NY, CA)")
    return state


# ----------------------
# API routes
# ----------------------

@app.on_event("startup")
async def startup_event() -> None:
    setup_logging()
    init_db()


@app.get("/health")
def health() -> Dict[str, str]:
    return {"status": "ok"}


@app.post("/api/auth/login", response_model=AuthUserOut)
def login_with_password(payload: AuthLoginIn, response: Response) -> AuthUserOut:
    email = normalize_user_email(payload.email)
    password = payload.password
    if not password:
        raise HTTPException(status_code=400, detail="Email and password are required")

    with get_db() as conn:
        cur = conn.cursor()
        cur.execute("SELECT * FROM User WHERE email = ?", (email,))
        user = cur.fetchone()
        if not user or not verify_password(
            password,
            user["password_salt"],
            user["password_hash"],
        ):
            raise HTTPException(status_code=401, detail="Invalid email or password.")
        if not user["is_active"]:
            raise HTTPException(status_code=403, detail="Account is inactive")
        session_token = create_auth_session(conn, user["id"])

    response.set_cookie(
        SESSION_COOKIE_NAME,
        session_token,
        httponly=True,
        samesite=SESSION_COOKIE_SAMESITE,
        secure=SESSION_COOKIE_SECURE,
        max_age=SESSION_DURATION_HOURS * 3600,
        path="/",
    )
    logger.info("User logged in", user_id=user["id"])
    return auth_user_payload(user)


@app.get("/api/auth/me", response_model=AuthUserOut)
def get_auth_me(request: Request) -> AuthUserOut:
    with get_db() as conn:
        user = require_session_user(conn, request)
    return auth_user_payload(user)


@app.post("/api/auth/logout")
def logout(response: Response, request: Request) -> Dict[str, str]:
    token = request.cookies.get(SESSION_COOKIE_NAME)
    if token:
        session_hash = sha256_hex(token)
        with get_db() as conn:
            cur = conn.cursor()
            cur.execute("DELETE FROM AuthSession WHERE session_hash = ?", (session_hash,))
            conn.commit()
    response.delete_cookie(SESSION_COOKIE_NAME, path="/")
    return {"status": "ok"}


@app.get("/api/insurance-companies", response_model=List[InsuranceCompanyOut])
def list_insurance_companies(request: Request) -> List[InsuranceCompanyOut]:
    with get_db() as conn:
        resolve_actor(conn, request)
        cur = conn.cursor()
        cur.execute("SELECT id, name, slug FROM InsuranceCompany ORDER BY name")
        rows = cur.fetchall()
    return [InsuranceCompanyOut(**dict(row)) for row in rows]


# Applications

@app.get("/api/applications", response_model=List[ApplicationOut])
def list_applications(request: Request, status: Optional[str] = None) -> List[ApplicationOut]:
    status_filter = None
    if status:
        status_filter = parse_status(status)
        if status_filter is None:
            raise HTTPException(status_code=400, detail=f"Invalid status: {status}")
    with get_db() as conn:
        actor = resolve_actor(conn, request)
        where_clause, params = build_access_filter(actor, agent_column="agent_id", owner_column="user_id")
        if status_filter is not None:
            where_clause = f"{where_clause} AND status = ?" if where_clause else "WHERE status = ?"
            params.append(status_filter.value)
        cur = conn.cursor()
        cur.execute(f"SELECT * FROM Application {where_clause} ORDER BY created_at DESC", params)
        rows = cur.fetchall()
    return [to_application_out(row) for row in rows]


@app.get("/api/applications/{application_id}", response_model=ApplicationDetailOut)
def get_application_detail(application_id: str, request: Request) -> ApplicationDetailOut:
    with get_db() as conn:
        actor = resolve_actor(conn, request)
        application = fetch_application(conn, application_id)
        ensure_can_view_application(actor, application)
        cur = conn.cursor()
        cur.execute("SELECT * FROM Applicant WHERE application_id = ? ORDER BY created_at", (application_id,))
        applicants = [dict(row) for row in cur.fetchall()]
        cur.execute("SELECT * FROM Coverage WHERE application_id = ? ORDER BY created_at", (application_id,))
        coverages = [row_to_dict(row, json_fields=("metadata",)) for row in cur.fetchall()]
        cur.execute("SELECT * FROM Beneficiary WHERE application_id = ? ORDER BY created_at", (application_id,))
        beneficiaries = [dict(row) for row in cur.fetchall()]
        cur.execute(
            "SELECT * FROM ApplicationSubmissionResult WHERE application_id = ? ORDER BY created_at DESC",
            (application_id,),
        )
        submissions = [row_to_dict(row, json_fields=("response",)) for row in cur.fetchall()]

    data = row_to_dict(application, json_fields=("enrollment_data", "api_response", "api_error"))
    return ApplicationDetailOut(
        **data,
        applicants=applicants,
        coverages=coverages,
        beneficiaries=beneficiaries,
        submissions=submissions,
    )


@app.get("/api/applications/{application_id}/allowed-transitions", response_model=AllowedTransitionsOut)
def get_allowed_transitions(application_id: str, request: Request) -> AllowedTransitionsOut:
    with get_db() as conn:
        actor = resolve_actor(conn, request)
        application = fetch_application(conn, application_id)
    current = application_status(application)
    targets = allowed_transitions_for(actor, current, application["agent_id"])
    can_submit = (
        current == ApplicationStatus.APPROVED
        and actor.role in ENROLLMENT_SUBMIT_ROLES
        and can_access(actor, application["agent_id"])
    )
    return AllowedTransitionsOut(
        application_id=application_id,
        current_status=current.value,
        allowed=[status.value for status in targets if status != ApplicationStatus.ACTIVE],
        can_submit_enrollment=can_submit,
    )


@app.post("/api/applications/{application_id}/change-status", response_model=StatusChangeOut)
def change_application_status(
    application_id: str, payload: StatusChangeIn, request: Request
) -> StatusChangeOut:
    new_status = parse_status(payload.new_status)
    if new_status is None:
        raise HTTPException(status_code=400, detail=f"Invalid status: {payload.new_status}")
    reason = (payload.reason or "").strip() or None

    with get_db() as conn:
        actor = resolve_actor(conn, request)
        application = fetch_application(conn, application_id)
        current = application_status(application)
        if current == new_status:
            raise HTTPException(status_code=400, detail=f"Application is already {current.value}")
        if not can_change_status(actor, application["agent_id"]):
            raise HTTPException(
                status_code=403,
                detail="You do not have permission to change the status of this application",
            )
        if not can_transition(current, new_status):
            raise HTTPException(
                status_code=400,
                detail=f"Cannot change status from {current.value} to {new_status.value}",
            )
        if new_status == ApplicationStatus.ACTIVE:
            raise HTTPException(
                status_code=400,
                detail="Applications become active by submitting the enrollment to the carrier",
            )
        if new_status == ApplicationStatus.CANCELLED and not reason:
            raise HTTPException(status_code=400, detail="A reason is required to cancel an application")

        updated = apply_status_change(conn, application, actor, new_status, reason)

    return StatusChangeOut(previous_status=current.value, application=to_application_out(updated))


@app.post("/api/applications/{application_id}/cancel", response_model=StatusChangeOut)
def cancel_application(
    application_id: str, payload: CancelApplicationIn, request: Request
) -> StatusChangeOut:
    reason = (payload.reason or "").strip()
    if not reason:
        raise HTTPException(status_code=400, detail="A cancellation reason is required")

    with get_db() as conn:
        actor = resolve_actor(conn, request)
        if not actor.is_staff:
            raise HTTPException(status_code=403, detail="Only staff can cancel applications")
        application = fetch_application(conn, application_id)
        if not can_access(actor, application["agent_id"]):
            raise HTTPException(status_code=403, detail="You do not have access to this application")
        current = application_status(application)
        blocked = cancellation_block_reason(current)
        if blocked:
            raise HTTPException(status_code=400, detail=blocked)
        if not can_transition(current, ApplicationStatus.CANCELLED):
            raise HTTPException(
                status_code=400,
                detail=f"Cannot cancel an application in state {current.value}",
            )
        updated = apply_status_change(conn, application, actor, ApplicationStatus.CANCELLED, reason)

    logger.info("Application cancelled", application_id=application_id, actor_id=actor.user_id)
    return StatusChangeOut(previous_status=current.value, application=to_application_out(updated))


@app.post("/api/applications/{application_id}/submit-enrollment", response_model=SubmitEnrollmentOut)
def submit_application_enrollment(
    application_id: str, payload: SubmitEnrollmentIn, request: Request
) -> SubmitEnrollmentOut:
    with get_db() as conn:
        actor = resolve_actor(conn, request)
        if actor.role not in ENROLLMENT_SUBMIT_ROLES:
            raise HTTPException(status_code=403, detail="You do not have permission to submit enrollments")
        application = fetch_application(conn, application_id)
        if not can_access(actor, application["agent_id"]):
            raise HTTPException(status_code=403, detail="You do not have access to this application")
        current = application_status(application)
        if current != ApplicationStatus.APPROVED:
            raise HTTPException(
                status_code=400,
                detail=f"Only approved applications can be submitted (current status: {current.value})",
            )

        cur = conn.cursor()
        carrier_slug = carriers.DEFAULT_CARRIER_SLUG
        if application["company_id"]:
            cur.execute("SELECT slug FROM InsuranceCompany WHERE id = ?", (application["company_id"],))
            company = cur.fetchone()
            if company and company["slug"]:
                carrier_slug = company["slug"]
        cur.execute("SELECT * FROM Coverage WHERE application_id = ?", (application_id,))
        stored_coverages = cur.fetchall()

    submitter = carriers.get_enrollment_submitter(carrier_slug)
    if submitter is None:
        raise HTTPException(status_code=400, detail=f"Carrier {carrier_slug} is not supported")

    enrollment = dict(load_json(application["enrollment_data"], {}) or {})
    payment = payload.payment_information or enrollment.get("paymentInformation")
    if not payment:
        raise HTTPException(status_code=400, detail="Payment information is required")
    enrollment["paymentInformation"] = payment

    if carriers.supports_rate_cart(carrier_slug) and enrollment.get("coverages"):
        reprice_coverages(enrollment, stored_coverages, application["effective_date"])

    try:
        result = submitter(enrollment)
    except carriers.CarrierAPIError as exc:
        status_code = exc.status_code if exc.status_code and 400 <= exc.status_code < 500 else 502
        with get_db() as conn:
            cur = conn.cursor()
            cur.execute(
                "UPDATE Application SET api_error = ?, updated_at = ? WHERE id = ?",
                (
                    dump_json({"message": exc.message, "status_code": exc.status_code, "payload": exc.payload}),
                    now_iso(),
                    application_id,
                ),
            )
            record_submission_result(
                conn,
                application_id,
                carrier=carrier_slug,
                success=False,
                submitted_by=actor.user_id,
                status_code=exc.status_code,
                response=exc.payload,
                error_message=exc.message,
            )
            conn.commit()
        logger.error(
            "Enrollment submission failed",
            application_id=application_id,
            carrier=carrier_slug,
            status_code=exc.status_code,
            error=exc.message,
        )
        raise HTTPException(status_code=status_code, detail=f"Failed to submit enrollment: {exc.message}")

    policy_number = carriers.extract_policy_number(result)
    with get_db() as conn:
        record_submission_result(
            conn,
            application_id,
            carrier=carrier_slug,
            success=True,
            submitted_by=actor.user_id,
            status_code=200,
            policy_number=policy_number,
            response=result,
        )
        conn.commit()
        updated = apply_status_change(
            conn,
            application,
            actor,
            ApplicationStatus.ACTIVE,
            "Enrollment submitted to carrier",
            extra_fields={"api_response": dump_json(result), "api_error": None},
        )

    return SubmitEnrollmentOut(
        application=to_application_out(updated),
        policy_number=policy_number,
        carrier_response=result,
    )


# Notifications

def ensure_can_notify_for_client(actor: Actor, client_id: str) -> None:
    if actor.role == Role.CLIENT and actor.user_id != client_id:
        raise HTTPException(status_code=403, detail="Clients can only notify about their own activity")


@app.post("/api/notifications/new-application")
def notify_new_application(payload: NewApplicationNotificationIn, request: Request) -> Dict[str, Any]:
    if not payload.application_id or not payload.client_id:
        raise HTTPException(status_code=400, detail="application_id and client_id are required")
    with get_db() as conn:
        actor = resolve_actor(conn, request)
    ensure_can_notify_for_client(actor, payload.client_id)
    outcome = notify_client_event(
        NotificationEvent.NEW_APPLICATION,
        payload.client_id,
        application_id=payload.application_id,
    )
    if not outcome.ok:
        logger.warning("Some notifications were not delivered", failed=list(outcome.failed))
    return {"success": True, "notified": len(outcome.sent)}


@app.post("/api/notifications/document")
def notify_document_upload(payload: DocumentNotificationIn, request: Request) -> Dict[str, Any]:
    if not payload.document_id or not payload.client_id:
        raise HTTPException(status_code=400, detail="document_id and client_id are required")
    with get_db() as conn:
        actor = resolve_actor(conn, request)
    ensure_can_notify_for_client(actor, payload.client_id)
    outcome = notify_client_event(
        NotificationEvent.DOCUMENT_UPLOAD,
        payload.client_id,
        document_id=payload.document_id,
        document_name=payload.document_name,
    )
    if not outcome.ok:
        logger.warning("Some notifications were not delivered", failed=list(outcome.failed))
    return {"success": True, "notified": len(outcome.sent)}


@app.post("/api/notifications/ticket")
def notify_ticket(payload: TicketNotificationIn, request: Request) -> Dict[str, Any]:
    if not payload.ticket_id or not payload.client_id or not payload.type:
        raise HTTPException(status_code=400, detail="ticket_id, client_id, and type are required")
    if payload.type not in {"new", "reply"}:
        raise HTTPException(status_code=400, detail='type must be "new" or "reply"')
    with get_db() as conn:
        actor = resolve_actor(conn, request)
    ensure_can_notify_for_client(actor, payload.client_id)
    event = NotificationEvent.TICKET_NEW if payload.type == "new" else NotificationEvent.TICKET_REPLY
    outcome = notify_client_event(
        event,
        payload.client_id,
        ticket_id=payload.ticket_id,
        ticket_number=payload.ticket_number,
    )
    if not outcome.ok:
        logger.warning("Some notifications were not delivered", failed=list(outcome.failed))
    return {"success": True, "notified": len(outcome.sent)}


@app.get("/api/notifications", response_model=List[NotificationOut])
def list_notifications(request: Request, unread_only: bool = False, limit: int = 50) -> List[NotificationOut]:
    limit = max(1, min(limit, 200))
    with get_db() as conn:
        actor = resolve_actor(conn, request)
        cur = conn.cursor()
        query = "SELECT * FROM Notification WHERE user_id = ?"
        if unread_only:
            query += " AND is_read = 0"
        cur.execute(f"{query} ORDER BY created_at DESC LIMIT ?", (actor.user_id, limit))
        rows = cur.fetchall()
    return [to_notification_out(row) for row in rows]


@app.get("/api/notifications/unread-count")
def get_unread_notification_count(request: Request) -> Dict[str, int]:
    with get_db() as conn:
        actor = resolve_actor(conn, request)
        cur = conn.cursor()
        cur.execute(
            "SELECT COUNT(*) AS cnt FROM Notification WHERE user_id = ? AND is_read = 0",
            (actor.user_id,),
        )
        count = cur.fetchone()["cnt"]
    return {"count": count}


@app.post("/api/notifications/read-all")
def mark_all_notifications_read(request: Request) -> Dict[str, Any]:
    with get_db() as conn:
        actor = resolve_actor(conn, request)
        cur = conn.cursor()
        cur.execute(
            "UPDATE Notification SET is_read = 1, read_at = ? WHERE user_id = ? AND is_read = 0",
            (now_iso(), actor.user_id),
        )
        updated = cur.rowcount
        conn.commit()
    return {"success": True, "updated": updated}


@app.post("/api/notifications/{notification_id}/read", response_model=NotificationOut)
def mark_notification_read(notification_id: str, request: Request) -> NotificationOut:
    with get_db() as conn:
        actor = resolve_actor(conn, request)
        cur = conn.cursor()
        cur.execute(
            "SELECT * FROM Notification WHERE id = ? AND user_id = ?",
            (notification_id, actor.user_id),
        )
        row = cur.fetchone()
        if not row:
            raise HTTPException(status_code=404, detail="Notification not found")
        if not row["is_read"]:
            cur.execute(
                "UPDATE Notification SET is_read = 1, read_at = ? WHERE id = ?",
                (now_iso(), notification_id),
            )
            conn.commit()
        cur.execute("SELECT * FROM Notification WHERE id = ?", (notification_id,))
        row = cur.fetchone()
    return to_notification_out(row)


# Document requests

@app.post("/api/document-requests", response_model=DocumentRequestOut)
def create_document_request(payload: DocumentRequestIn, request: Request) -> DocumentRequestOut:
    document_type = payload.document_type.strip().lower()
    if document_type not in DOCUMENT_TYPES:
        allowed = ", ".join(sorted(DOCUMENT_TYPES))
        raise HTTPException(status_code=400, detail=f"document_type must be one of: {allowed}")
    priority = (payload.priority or "medium").strip().lower()
    if priority not in DOCUMENT_PRIORITIES:
        allowed = ", ".join(sorted(DOCUMENT_PRIORITIES))
        raise HTTPException(status_code=400, detail=f"priority must be one of: {allowed}")

    with get_db() as conn:
        actor = resolve_actor(conn, request)
        require_staff(actor)
        client = fetch_user(conn, payload.client_id)
        if parse_role(client["role"]) != Role.CLIENT:
            raise HTTPException(status_code=400, detail="Document requests can only target clients")
        if not can_access(actor, client["agent_id"]):
            raise HTTPException(status_code=403, detail="You do not have access to this client")

        request_id = str(uuid.uuid4())
        now = now_iso()
        cur = conn.cursor()
        cur.execute(
            """
            INSERT INTO DocumentRequest (
                id, client_id, application_id, requested_by, document_type, priority, status,
                due_date, notes, created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, 'pending', ?, ?, ?, ?)
            """,
            (
                request_id,
                payload.client_id,
                payload.application_id,
                actor.user_id,
                document_type,
                priority,
                payload.due_date,
                (payload.notes or "").strip() or None,
                now,
                now,
            ),
        )
        log_activity(
            conn,
            actor.user_id,
            "document_request_created",
            "document_request",
            request_id,
            new_values={"client_id": payload.client_id, "document_type": document_type, "priority": priority},
        )
        conn.commit()
        row = fetch_document_request(conn, request_id)
    return DocumentRequestOut(**dict(row))


@app.post("/api/document-requests/{request_id}/fulfill", response_model=DocumentRequestOut)
def fulfill_document_request(
    request_id: str, payload: DocumentRequestFulfillIn, request: Request
) -> DocumentRequestOut:
    with get_db() as conn:
        actor = resolve_actor(conn, request)
        doc_request = fetch_document_request(conn, request_id)
        if actor.role == Role.CLIENT:
            if doc_request["client_id"] != actor.user_id:
                raise HTTPException(status_code=403, detail="You can only fulfill your own document requests")
        elif actor.is_staff:
            client = fetch_user(conn, doc_request["client_id"])
            if not can_access(actor, client["agent_id"]):
                raise HTTPException(status_code=403, detail="You do not have access to this client")
        else:
            raise HTTPException(status_code=403, detail="Insufficient permissions")

        if doc_request["status"] != "pending":
            raise HTTPException(
                status_code=400,
                detail=f"Document request is already {doc_request['status']}",
            )

        cur = conn.cursor()
        if payload.document_id:
            cur.execute("SELECT * FROM Document WHERE id = ?", (payload.document_id,))
            document = cur.fetchone()
            if not document or document["client_id"] != doc_request["client_id"]:
                raise HTTPException(status_code=400, detail="Document does not belong to this client")
            if document["document_type"] and document["document_type"] != doc_request["document_type"]:
                logger.warning(
                    "Fulfilling document request with a different document type",
                    request_id=request_id,
                    requested_type=doc_request["document_type"],
                    document_type=document["document_type"],
                )

        now = now_iso()
        cur.execute(
            """
            UPDATE DocumentRequest
            SET status = 'fulfilled', document_id = ?, fulfilled_at = ?, fulfilled_by = ?, updated_at = ?
            WHERE id = ? AND status = 'pending'
            """,
            (payload.document_id, now, actor.user_id, now, request_id),
        )
        if cur.rowcount != 1:
            conn.rollback()
            raise HTTPException(status_code=409, detail="Document request was updated by another request")
        log_activity(
            conn,
            actor.user_id,
            "document_request_fulfilled",
            "document_request",
            request_id,
            old_values={"status": "pending"},
            new_values={"status": "fulfilled", "document_id": payload.document_id},
        )
        conn.commit()
        row = fetch_document_request(conn, request_id)
    return DocumentRequestOut(**dict(row))


@app.get("/api/document-requests", response_model=List[DocumentRequestOut])
def list_document_requests(request: Request, status: Optional[str] = None) -> List[DocumentRequestOut]:
    with get_db() as conn:
        actor = resolve_actor(conn, request)
        where_clause, params = build_access_filter(actor, agent_column="c.agent_id", owner_column="dr.client_id")
        if status:
            where_clause = f"{where_clause} AND dr.status = ?" if where_clause else "WHERE dr.status = ?"
            params.append(status.strip().lower())
        cur = conn.cursor()
        cur.execute(
            f"""
            SELECT dr.*
            FROM DocumentRequest dr
            JOIN User c ON c.id = dr.client_id
            {where_clause}
            ORDER BY dr.created_at DESC
            """,
            params,
        )
        rows = cur.fetchall()
    return [DocumentRequestOut(**dict(row)) for row in rows]


# Users

@app.post("/api/users", response_model=UserOut)
def create_user(payload: UserIn, request: Request) -> UserOut:
    email = normalize_user_email(payload.email)
    raw_password = require_valid_password(payload.password)
    target_role = parse_role(payload.role)
    if target_role is None:
        allowed = ", ".join(role.value for role in Role)
        raise HTTPException(status_code=400, detail=f"Role must be one of: {allowed}")

    with get_db() as conn:
        actor = resolve_actor(conn, request)
        if not can_create_role(actor.role, target_role):
            raise HTTPException(status_code=403, detail=f"You cannot create users with role {target_role.value}")

        scope: Optional[Scope] = None
        assigned_agent_id: Optional[str] = None
        client_agent_id: Optional[str] = None
        if target_role == Role.SUPPORT_STAFF:
            if actor.role == Role.AGENT:
                scope = support_staff_scope_for(actor.role)
                assigned_agent_id = actor.own_agent_id
            else:
                scope = parse_scope(payload.scope) if payload.scope else support_staff_scope_for(actor.role)
                if scope is None:
                    raise HTTPException(status_code=400, detail="Scope must be global or agent_specific")
                assigned_agent_id = payload.assigned_to_agent_id if scope == Scope.AGENT_SPECIFIC else None
            if scope == Scope.AGENT_SPECIFIC:
                if not assigned_agent_id:
                    raise HTTPException(
                        status_code=400,
                        detail="Agent-specific support staff must be assigned to an agent",
                    )
                fetch_agent(conn, assigned_agent_id)
        elif target_role == Role.CLIENT:
            client_agent_id = actor.own_agent_id if actor.role == Role.AGENT else payload.agent_id
            if client_agent_id:
                fetch_agent(conn, client_agent_id)

        user_id = str(uuid.uuid4())
        now = now_iso()
        password_salt, password_hash = create_password_credentials(raw_password)
        cur = conn.cursor()
        try:
            cur.execute(
                """
                INSERT INTO User (
                    id, email, first_name, last_name, phone, role, scope, assigned_to_agent_id,
                    agent_id, is_active, password_salt, password_hash, created_by, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, 1, ?, ?, ?, ?, ?)
                """,
                (
                    user_id,
                    email,
                    payload.first_name.strip(),
                    payload.last_name.strip(),
                    payload.phone.strip(),
                    target_role.value,
                    scope.value if scope else None,
                    assigned_agent_id,
                    client_agent_id,
                    password_salt,
                    password_hash,
                    actor.user_id,
                    now,
                    now,
                ),
            )
        except sqlite3.IntegrityError:
            raise HTTPException(status_code=400, detail="Email already exists")
        if target_role == Role.AGENT:
            insert_agent_profile(
                conn,
                user_id,
                first_name=payload.first_name.strip(),
                last_name=payload.last_name.strip(),
                email=email,
                phone=payload.phone.strip(),
                business_name=payload.business_name,
                agent_code=payload.agent_code,
            )
        log_activity(
            conn,
            actor.user_id,
            "user_created",
            "user",
            user_id,
            new_values={
                "email": email,
                "role": target_role.value,
                "scope": scope.value if scope else None,
                "assigned_to_agent_id": assigned_agent_id,
                "agent_id": client_agent_id,
            },
        )
        conn.commit()
        row = fetch_user(conn, user_id)
    logger.info("User created", user_id=user_id, role=target_role.value, created_by=actor.user_id)
    return to_user_out(row)


@app.post("/api/users/{user_id}/reassign", response_model=UserOut)
def reassign_client(user_id: str, payload: ReassignClientIn, request: Request) -> UserOut:
    with get_db() as conn:
        actor = resolve_actor(conn, request)
        require_admin(actor)
        client = fetch_user(conn, user_id)
        if parse_role(client["role"]) != Role.CLIENT:
            raise HTTPException(status_code=400, detail="Only clients can be reassigned to another agent")
        fetch_agent(conn, payload.agent_id)
        if client["agent_id"] == payload.agent_id:
            raise HTTPException(status_code=400, detail="Client is already assigned to this agent")

        now = now_iso()
        cur = conn.cursor()
        cur.execute(
            """
            UPDATE User
            SET agent_id = ?, reassigned_by = ?, reassigned_at = ?, updated_at = ?
            WHERE id = ?
            """,
            (payload.agent_id, actor.user_id, now, now, user_id),
        )
        log_activity(
            conn,
            actor.user_id,
            "client_reassigned",
            "user",
            user_id,
            old_values={"agent_id": client["agent_id"]},
            new_values={"agent_id": payload.agent_id},
        )
        conn.commit()
        row = fetch_user(conn, user_id)
    logger.info("Client reassigned", client_id=user_id, from_agent=client["agent_id"], to_agent=payload.agent_id)
    return to_user_out(row)


@app.post("/api/users/{user_id}/inactivate", response_model=InactivateUserOut)
def inactivate_user(user_id: str, payload: InactivateUserIn, request: Request) -> InactivateUserOut:
    reason = (payload.reason or "").strip() or None
    with get_db() as conn:
        actor = resolve_actor(conn, request)
        require_admin(actor)
        if user_id == actor.user_id:
            raise HTTPException(status_code=400, detail="You cannot inactivate your own account")
        target = fetch_user(conn, user_id)
        target_role = parse_role(target["role"])
        if actor.role == Role.ADMIN and target_role == Role.SUPER_ADMIN:
            raise HTTPException(status_code=403, detail="Admins cannot inactivate super admins")
        if not target["is_active"]:
            raise HTTPException(status_code=400, detail="User is already inactive")

        now = now_iso()
        cur = conn.cursor()
        inactivated = [user_id]
        if target_role == Role.AGENT:
            cur.execute("SELECT id FROM Agent WHERE user_id = ?", (user_id,))
            agent_ids = [row["id"] for row in cur.fetchall()]
            if agent_ids:
                placeholders = ", ".join("?" for _ in agent_ids)
                cur.execute(
                    f"""
                    SELECT id FROM User
                    WHERE role = ? AND scope = ? AND is_active = 1
                      AND assigned_to_agent_id IN ({placeholders})
                    """,
                    (Role.SUPPORT_STAFF.value, Scope.AGENT_SPECIFIC.value, *agent_ids),
                )
                inactivated += [row["id"] for row in cur.fetchall()]

        for inactive_id in inactivated:
            cur.execute(
                """
                UPDATE User
                SET is_active = 0, inactivated_by = ?, inactivated_at = ?, inactivation_reason = ?, updated_at = ?
                WHERE id = ?
                """,
                (actor.user_id, now, reason, now, inactive_id),
            )
            revoke_user_sessions(conn, inactive_id)
        log_activity(
            conn,
            actor.user_id,
            "user_inactivated",
            "user",
            user_id,
            metadata={"reason": reason, "cascaded_user_ids": inactivated[1:]},
            old_values={"is_active": True},
            new_values={"is_active": False},
        )
        conn.commit()
        row = fetch_user(conn, user_id)
    logger.info("User inactivated", user_id=user_id, cascaded=len(inactivated) - 1)
    return InactivateUserOut(user=to_user_out(row), cascaded_user_ids=inactivated[1:])


@app.post("/api/users/{user_id}/assign-role", response_model=UserOut)
def assign_user_role(user_id: str, payload: AssignRoleIn, request: Request) -> UserOut:
    new_role = parse_role(payload.role)
    if new_role is None:
        allowed = ", ".join(role.value for role in Role)
        raise HTTPException(status_code=400, detail=f"Role must be one of: {allowed}")

    with get_db() as conn:
        actor = resolve_actor(conn, request)
        require_admin(actor)
        if user_id == actor.user_id:
            raise HTTPException(status_code=400, detail="You cannot change your own role")
        target = fetch_user(conn, user_id)
        if not target["is_active"]:
            raise HTTPException(status_code=400, detail="Cannot change the role of an inactive user")
        current_role = parse_role(target["role"])
        if current_role == new_role:
            raise HTTPException(status_code=400, detail=f"User already has role {new_role.value}")
        # The actor must be allowed to create both the role being left and the one being granted.
        if current_role is not None and not can_create_role(actor.role, current_role):
            raise HTTPException(status_code=403, detail=f"You cannot change users with role {current_role.value}")
        if not can_create_role(actor.role, new_role):
            raise HTTPException(status_code=403, detail=f"You cannot assign role {new_role.value}")

        scope: Optional[Scope] = None
        assigned_agent_id: Optional[str] = None
        client_agent_id: Optional[str] = None
        if new_role == Role.SUPPORT_STAFF:
            scope = parse_scope(payload.scope) if payload.scope else support_staff_scope_for(actor.role)
            if scope is None:
                raise HTTPException(status_code=400, detail="Scope must be global or agent_specific")
            if scope == Scope.AGENT_SPECIFIC:
                assigned_agent_id = payload.assigned_to_agent_id
                if not assigned_agent_id:
                    raise HTTPException(
                        status_code=400,
                        detail="Agent-specific support staff must be assigned to an agent",
                    )
                fetch_agent(conn, assigned_agent_id)
        elif new_role == Role.CLIENT:
            client_agent_id = payload.agent_id
            if client_agent_id:
                fetch_agent(conn, client_agent_id)

        now = now_iso()
        cur = conn.cursor()
        cur.execute(
            """
            UPDATE User
            SET role = ?, scope = ?, assigned_to_agent_id = ?, agent_id = ?, updated_at = ?
            WHERE id = ?
            """,
            (
                new_role.value,
                scope.value if scope else None,
                assigned_agent_id,
                client_agent_id,
                now,
                user_id,
            ),
        )
        agent_id = None
        if new_role == Role.AGENT:
            cur.execute("SELECT id FROM Agent WHERE user_id = ?", (user_id,))
            existing_agent = cur.fetchone()
            if existing_agent:
                agent_id = existing_agent["id"]
            else:
                agent_id = insert_agent_profile(
                    conn,
                    user_id,
                    first_name=target["first_name"] or "",
                    last_name=target["last_name"] or "",
                    email=target["email"],
                    phone=target["phone"],
                )
        log_activity(
            conn,
            actor.user_id,
            "user_role_changed",
            "user",
            user_id,
            metadata={"agent_id": agent_id} if agent_id else None,
            old_values={
                "role": target["role"],
                "scope": target["scope"],
                "assigned_to_agent_id": target["assigned_to_agent_id"],
                "agent_id": target["agent_id"],
            },
            new_values={
                "role": new_role.value,
                "scope": scope.value if scope else None,
                "assigned_to_agent_id": assigned_agent_id,
                "agent_id": client_agent_id,
            },
        )
        conn.commit()
        row = fetch_user(conn, user_id)
    logger.info("User role changed", user_id=user_id, from_role=target["role"], to_role=new_role.value)
    return to_user_out(row)


# Licenses

def ensure_can_view_agent_records(actor: Actor, agent_id: Optional[str]) -> None:
    if actor.role not in ADMIN_ROLES | {Role.AGENT}:
        raise HTTPException(status_code=403, detail="Insufficient permissions")
    if not can_access(actor, agent_id):
        raise HTTPException(status_code=403, detail="You do not have access to this agent")


@app.get("/api/licenses", response_model=List[LicenseOut])
def list_licenses(
    request: Request,
    agent_id: Optional[str] = None,
    state: Optional[str] = None,
    status: Optional[str] = None,
) -> List[LicenseOut]:
    with get_db() as conn:
        actor = resolve_actor(conn, request)
        if actor.role not in ADMIN_ROLES | {Role.AGENT}:
            raise HTTPException(status_code=403, detail="Insufficient permissions")
        clauses: List[str] = []
        params: List[Any] = []
        if actor.role == Role.AGENT:
            clauses.append("agent_id = ?")
            params.append(actor.own_agent_id)
        elif agent_id:
            clauses.append("agent_id = ?")
            params.append(agent_id)
        if state:
            clauses.append("state = ?")
            params.append(state.strip().upper())
        if status:
            clauses.append("status = ?")
            params.append(status.strip())
        where_clause = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        cur = conn.cursor()
        cur.execute(f"SELECT * FROM License {where_clause} ORDER BY state", params)
        rows = cur.fetchall()
    return [to_license_out(row) for row in rows]


@app.get("/api/licenses/{license_id}", response_model=LicenseOut)
def get_license(license_id: str, request: Request) -> LicenseOut:
    with get_db() as conn:
        actor = resolve_actor(conn, request)
        row = fetch_license(conn, license_id)
        ensure_can_view_agent_records(actor, row["agent_id"])
    return to_license_out(row)


@app.post("/api/licenses", response_model=LicenseOut)
def create_license(payload: LicenseIn, request: Request) -> LicenseOut:
    license_number = payload.license_number.strip()
    if not payload.agent_id or not license_number:
        raise HTTPException(status_code=400, detail="agent_id, license_number and state are required")
    state = normalize_state_code(payload.state)
    with get_db() as conn:
        actor = resolve_actor(conn, request)
        require_admin(actor)
        fetch_agent(conn, payload.agent_id)
        cur = conn.cursor()
        cur.execute("SELECT id FROM License WHERE agent_id = ? AND state = ?", (payload.agent_id, state))
        if cur.fetchone():
            raise HTTPException(status_code=400, detail=f"This agent already has a license for {state}")
        license_id = str(uuid.uuid4())
        now = now_iso()
        cur.execute(
            """
            INSERT INTO License (id, agent_id, license_number, state, status, document_url, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (license_id, payload.agent_id, license_number, state, payload.status, payload.document_url, now, now),
        )
        log_activity(conn, actor.user_id, "license_created", "license", license_id, new_values={"state": state})
        conn.commit()
        row = fetch_license(conn, license_id)
    return to_license_out(row)


@app.patch("/api/licenses/{license_id}", response_model=LicenseOut)
def update_license(license_id: str, payload: LicenseUpdate, request: Request) -> LicenseOut:
    with get_db() as conn:
        actor = resolve_actor(conn, request)
        require_admin(actor)
        existing = fetch_license(conn, license_id)
        updates = payload.dict(exclude_unset=True)
        if "state" in updates:
            updates["state"] = normalize_state_code(updates["state"])
            cur = conn.cursor()
            cur.execute(
                "SELECT id FROM License WHERE agent_id = ? AND state = ? AND id != ?",
                (existing["agent_id"], updates["state"], license_id),
            )
            if cur.fetchone():
                raise HTTPException(
                    status_code=400,
                    detail=f"This agent already has a license for {updates['state']}",
                )
        if not updates:
            return to_license_out(existing)
        updates["updated_at"] = now_iso()
        assignments = ", ".join(f"{column} = ?" for column in updates)
        cur = conn.cursor()
        cur.execute(f"UPDATE License SET {assignments} WHERE id = ?", (*updates.values(), license_id))
        conn.commit()
        row = fetch_license(conn, license_id)
    return to_license_out(row)


@app.delete("/api/licenses/{license_id}")
def delete_license(license_id: str, request: Request) -> Dict[str, str]:
    with get_db() as conn:
        actor = resolve_actor(conn, request)
        require_admin(actor)
        fetch_license(conn, license_id)
        cur = conn.cursor()
        cur.execute("DELETE FROM License WHERE id = ?", (license_id,))
        log_activity(conn, actor.user_id, "license_deleted", "license", license_id)
        conn.commit()
    return {"status": "deleted"}


@app.post("/api/licenses/{license_id}/upload", response_model=LicenseOut)
def upload_license_document(
    license_id: str,
    request: Request,
    file: UploadFile = File(...),
) -> LicenseOut:
    with get_db() as conn:
        actor = resolve_actor(conn, request)
        require_admin(actor)
        fetch_license(conn, license_id)
    document_url = save_license_document(license_id, file)
    with get_db() as conn:
        cur = conn.cursor()
        cur.execute(
            "UPDATE License SET document_url = ?, updated_at = ? WHERE id = ?",
            (document_url, now_iso(), license_id),
        )
        conn.commit()
        row = fetch_license(conn, license_id)
    return to_license_out(row)


# Appointments

@app.get("/api/appointments", response_model=List[AppointmentOut])
def list_appointments(
    request: Request,
    agent_id: Optional[str] = None,
    company_id: Optional[str] = None,
    status: Optional[str] = None,
) -> List[AppointmentOut]:
    with get_db() as conn:
        actor = resolve_actor(conn, request)
        if actor.role not in ADMIN_ROLES | {Role.AGENT}:
            raise HTTPException(status_code=403, detail="Insufficient permissions")
        clauses: List[str] = []
        params: List[Any] = []
        if actor.role == Role.AGENT:
            clauses.append("agent_id = ?")
            params.append(actor.own_agent_id)
        elif agent_id:
            clauses.append("agent_id = ?")
            params.append(agent_id)
        if company_id:
            clauses.append("company_id = ?")
            params.append(company_id)
        if status:
            clauses.append("status = ?")
            params.append(status.strip())
        where_clause = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        cur = conn.cursor()
        cur.execute(f"SELECT * FROM Appointment {where_clause} ORDER BY created_at DESC", params)
        rows = cur.fetchall()
    return [to_appointment_out(row) for row in rows]


@app.get("/api/appointments/{appointment_id}", response_model=AppointmentOut)
def get_appointment(appointment_id: str, request: Request) -> AppointmentOut:
    with get_db() as conn:
        actor = resolve_actor(conn, request)
        row = fetch_appointment(conn, appointment_id)
        ensure_can_view_agent_records(actor, row["agent_id"])
    return to_appointment_out(row)


@app.post("/api/appointments", response_model=AppointmentOut)
def create_appointment(payload: AppointmentIn, request: Request) -> AppointmentOut:
    agent_number = payload.agent_number.strip()
    if not payload.agent_id or not payload.company_id or not agent_number:
        raise HTTPException(status_code=400, detail="agent_id, company_id and agent_number are required")
    status = (payload.status or "active").strip().lower()
    with get_db() as conn:
        actor = resolve_actor(conn, request)
        require_admin(actor)
        fetch_agent(conn, payload.agent_id)
        fetch_company(conn, payload.company_id)
        cur = conn.cursor()
        cur.execute(
            "SELECT id FROM Appointment WHERE agent_id = ? AND company_id = ?",
            (payload.agent_id, payload.company_id),
        )
        if cur.fetchone():
            raise HTTPException(status_code=400, detail="This agent already has an appointment with this carrier")
        appointment_id = str(uuid.uuid4())
        now = now_iso()
        cur.execute(
            """
            INSERT INTO Appointment (
                id, agent_id, company_id, agent_number, start_date, expiration_date, status,
                is_active, commission_percentage, additional_data, created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                appointment_id,
                payload.agent_id,
                payload.company_id,
                agent_number,
                payload.start_date,
                payload.expiration_date,
                status,
                1 if status == "active" else 0,
                payload.commission_percentage,
                dump_json(payload.additional_data),
                now,
                now,
            ),
        )
        log_activity(
            conn,
            actor.user_id,
            "appointment_created",
            "appointment",
            appointment_id,
            new_values={"agent_id": payload.agent_id, "company_id": payload.company_id, "status": status},
        )
        conn.commit()
        row = fetch_appointment(conn, appointment_id)
    return to_appointment_out(row)


@app.patch("/api/appointments/{appointment_id}", response_model=AppointmentOut)
def update_appointment(appointment_id: str, payload: AppointmentUpdate, request: Request) -> AppointmentOut:
    with get_db() as conn:
        actor = resolve_actor(conn, request)
        require_admin(actor)
        existing = fetch_appointment(conn, appointment_id)
        updates = payload.dict(exclude_unset=True)
        if not updates:
            return to_appointment_out(existing)
        if "status" in updates:
            updates["status"] = (updates["status"] or "").strip().lower()
            updates["is_active"] = 1 if updates["status"] == "active" else 0
        if "additional_data" in updates:
            updates["additional_data"] = dump_json(updates["additional_data"])
        updates["updated_at"] = now_iso()
        assignments = ", ".join(f"{column} = ?" for column in updates)
        cur = conn.cursor()
        cur.execute(f"UPDATE Appointment SET {assignments} WHERE id = ?", (*updates.values(), appointment_id))
        conn.commit()
        row = fetch_appointment(conn, appointment_id)
    return to_appointment_out(row)


@app.delete("/api/appointments/{appointment_id}")
def delete_appointment(appointment_id: str, request: Request) -> Dict[str, str]:
    with get_db() as conn:
        actor = resolve_actor(conn, request)
        require_admin(actor)
        fetch_appointment(conn, appointment_id)
        cur = conn.cursor()
        cur.execute("DELETE FROM Appointment WHERE id = ?", (appointment_id,))
        log_activity(conn, actor.user_id, "appointment_deleted", "appointment", appointment_id)
        conn.commit()
    return {"status": "deleted"}


# Agents

@app.get("/api/agents", response_model=List[AgentOut])
def list_agents(
    request: Request,
    status: Optional[str] = None,
    search: Optional[str] = None,
) -> List[AgentOut]:
    with get_db() as conn:
        actor = resolve_actor(conn, request)
        if actor.role not in ADMIN_ROLES | {Role.AGENT}:
            raise HTTPException(status_code=403, detail="Insufficient permissions")
        clauses: List[str] = []
        params: List[Any] = []
        if actor.role == Role.AGENT:
            clauses.append("id = ?")
            params.append(actor.own_agent_id)
        if status:
            clauses.append("status = ?")
            params.append(status.strip().lower())
        if search:
            term = f"%{search.strip().lower()}%"
            clauses.append(
                "(LOWER(first_name) LIKE ? OR LOWER(last_name) LIKE ? OR LOWER(email) LIKE ?"
                " OR LOWER(business_name) LIKE ? OR unique_link_code LIKE ?)"
            )
            params.extend([term] * 5)
        where_clause = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        cur = conn.cursor()
        cur.execute(f"SELECT * FROM Agent {where_clause} ORDER BY created_at DESC", params)
        rows = cur.fetchall()
    return [to_agent_out(row) for row in rows]


@app.post("/api/agents", response_model=AgentOut)
def create_agent(payload: AgentIn, request: Request) -> AgentOut:
    email = normalize_user_email(payload.email)
    raw_password = require_valid_password(payload.password)
    first_name = payload.first_name.strip()
    last_name = payload.last_name.strip()
    if not first_name or not last_name:
        raise HTTPException(status_code=400, detail="first_name and last_name are required")

    with get_db() as conn:
        actor = resolve_actor(conn, request)
        require_admin(actor)
        link_code = normalize_link_code(conn, payload.unique_link_code)
        user_id = str(uuid.uuid4())
        now = now_iso()
        password_salt, password_hash = create_password_credentials(raw_password)
        cur = conn.cursor()
        try:
            cur.execute(
                """
                INSERT INTO User (
                    id, email, first_name, last_name, phone, role, is_active,
                    password_salt, password_hash, created_by, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, 1, ?, ?, ?, ?, ?)
                """,
                (
                    user_id,
                    email,
                    first_name,
                    last_name,
                    payload.phone.strip(),
                    Role.AGENT.value,
                    password_salt,
                    password_hash,
                    actor.user_id,
                    now,
                    now,
                ),
            )
        except sqlite3.IntegrityError:
            raise HTTPException(status_code=400, detail="Email already exists")
        agent_id = insert_agent_profile(
            conn,
            user_id,
            first_name=first_name,
            last_name=last_name,
            email=email,
            phone=payload.phone.strip(),
            business_name=payload.business_name,
            agent_code=payload.agent_code,
            unique_link_code=link_code,
            npn=payload.npn,
        )
        log_activity(
            conn,
            actor.user_id,
            "agent_created",
            "agent",
            agent_id,
            new_values={"user_id": user_id, "email": email, "unique_link_code": link_code},
        )
        conn.commit()
        row = fetch_agent(conn, agent_id)
    logger.info("Agent created", agent_id=agent_id, user_id=user_id, created_by=actor.user_id)
    return to_agent_out(row)


@app.get("/api/agents/{agent_id}", response_model=AgentDetailOut)
def get_agent_detail(agent_id: str, request: Request) -> AgentDetailOut:
    with get_db() as conn:
        actor = resolve_actor(conn, request)
        agent = fetch_agent(conn, agent_id)
        ensure_can_view_agent_records(actor, agent_id)
        cur = conn.cursor()
        cur.execute("SELECT * FROM License WHERE agent_id = ? ORDER BY state", (agent_id,))
        licenses = [to_license_out(row) for row in cur.fetchall()]
        cur.execute("SELECT * FROM Appointment WHERE agent_id = ? ORDER BY created_at DESC", (agent_id,))
        appointments = [to_appointment_out(row) for row in cur.fetchall()]
        cur.execute(
            "SELECT * FROM User WHERE role = ? AND agent_id = ? ORDER BY created_at DESC",
            (Role.CLIENT.value, agent_id),
        )
        clients = [to_user_out(row) for row in cur.fetchall()]
        cur.execute("SELECT * FROM Application WHERE agent_id = ? ORDER BY created_at DESC", (agent_id,))
        applications = [to_application_out(row) for row in cur.fetchall()]

    return AgentDetailOut(
        agent=to_agent_out(agent),
        licenses=licenses,
        appointments=appointments,
        clients=clients,
        applications=applications,
        stats={
            "total_clients": len(clients),
            "total_applications": len(applications),
            "total_appointments": len(appointments),
            "total_licenses": len(licenses),
        },
    )


@app.patch("/api/agents/{agent_id}", response_model=AgentOut)
def update_agent(agent_id: str, payload: AgentUpdate, request: Request) -> AgentOut:
    with get_db() as conn:
        actor = resolve_actor(conn, request)
        existing = fetch_agent(conn, agent_id)
        ensure_can_view_agent_records(actor, agent_id)
        updates = payload.dict(exclude_unset=True)
        if not actor.is_admin:
            restricted = sorted(set(updates) - AGENT_SELF_EDITABLE_FIELDS)
            if restricted:
                raise HTTPException(
                    status_code=403,
                    detail=f"Only admins can change: {', '.join(restricted)}",
                )
        for field in ("first_name", "last_name"):
            if field in updates:
                updates[field] = (updates[field] or "").strip()
                if not updates[field]:
                    raise HTTPException(status_code=400, detail=f"{field} cannot be empty")
        if "phone" in updates:
            updates["phone"] = (updates["phone"] or "").strip() or None
        if "unique_link_code" in updates:
            updates["unique_link_code"] = normalize_link_code(conn, updates["unique_link_code"], agent_id)
        if "status" in updates:
            updates["status"] = (updates["status"] or "").strip().lower()
            if updates["status"] not in AGENT_STATUSES:
                raise HTTPException(status_code=400, detail="status must be active or inactive")
        if not updates:
            return to_agent_out(existing)

        updates["updated_at"] = now_iso()
        assignments = ", ".join(f"{column} = ?" for column in updates)
        cur = conn.cursor()
        cur.execute(f"UPDATE Agent SET {assignments} WHERE id = ?", (*updates.values(), agent_id))
        user_fields = {key: updates[key] for key in AGENT_SELF_EDITABLE_FIELDS if key in updates}
        if user_fields and existing["user_id"]:
            user_fields["updated_at"] = updates["updated_at"]
            user_assignments = ", ".join(f"{column} = ?" for column in user_fields)
            cur.execute(
                f"UPDATE User SET {user_assignments} WHERE id = ?",
                (*user_fields.values(), existing["user_id"]),
            )
        log_activity(
            conn,
            actor.user_id,
            "agent_updated",
            "agent",
            agent_id,
            old_values={key: existing[key] for key in updates if key != "updated_at"},
            new_values={key: value for key, value in updates.items() if key != "updated_at"},
        )
        conn.commit()
        row = fetch_agent(conn, agent_id)
    return to_agent_out(row)


app.mount("/uploads", StaticFiles(directory=str(UPLOADS_DIR)), name="uploads")
