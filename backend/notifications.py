"""Staff notifications for client-side events.

Notifications are advisory: a failed insert for one recipient is logged and
reported in the returned ``NotificationOutcome``, it never aborts the others or
the request that triggered the event.
"""

from __future__ import annotations

import sqlite3
import uuid
from concurrent.futures import ThreadPoolExecutor
from enum import Enum
from typing import Any, Dict, List, Optional

import structlog
from pydantic import BaseModel, Field

import db
from policies import Role, Scope

logger = structlog.get_logger(__name__)

FANOUT_MAX_WORKERS = 8


class NotificationEvent(str, Enum):
    NEW_APPLICATION = "new_application"
    DOCUMENT_UPLOAD = "document_upload"
    TICKET_NEW = "ticket_new"
    TICKET_REPLY = "ticket_reply"


class NotificationRecipients(BaseModel):
    agent_id: Optional[str] = None
    agent_user_id: Optional[str] = None
    super_admin_ids: List[str] = Field(default_factory=list)
    admin_ids: List[str] = Field(default_factory=list)
    support_staff_ids: List[str] = Field(default_factory=list)

    def user_ids(self) -> List[str]:
        ordered = [self.agent_user_id] if self.agent_user_id else []
        ordered += self.super_admin_ids + self.admin_ids + self.support_staff_ids
        seen = set()
        unique: List[str] = []
        for user_id in ordered:
            if user_id and user_id not in seen:
                seen.add(user_id)
                unique.append(user_id)
        return unique


class NotificationContent(BaseModel):
    type: str
    title: str
    message: str
    link_url: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class NotificationOutcome(BaseModel):
    event: NotificationEvent
    client_id: str
    sent: List[str] = Field(default_factory=list)
    failed: Dict[str, str] = Field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.failed


def resolve_notification_recipients(conn: sqlite3.Connection, client_id: str) -> NotificationRecipients:
    cur = conn.cursor()
    cur.execute("SELECT agent_id FROM User WHERE id = ?", (client_id,))
    client = cur.fetchone()
    if not client:
        logger.warning("Notification client not found", client_id=client_id)
        return NotificationRecipients()

    agent_id = client["agent_id"]
    agent_user_id = None
    if agent_id:
        cur.execute("SELECT user_id FROM Agent WHERE id = ?", (agent_id,))
        agent = cur.fetchone()
        agent_user_id = agent["user_id"] if agent else None

    recipients = NotificationRecipients(agent_id=agent_id, agent_user_id=agent_user_id)
    cur.execute(
        """
        SELECT id, role, scope, assigned_to_agent_id
        FROM User
        WHERE role IN (?, ?, ?) AND COALESCE(is_active, 1) = 1
        ORDER BY created_at, id
        """,
        (Role.SUPER_ADMIN.value, Role.ADMIN.value, Role.SUPPORT_STAFF.value),
    )
    for row in cur.fetchall():
        if row["role"] == Role.SUPER_ADMIN.value:
            recipients.super_admin_ids.append(row["id"])
        elif row["role"] == Role.ADMIN.value:
            recipients.admin_ids.append(row["id"])
        elif row["scope"] == Scope.GLOBAL.value:
            recipients.support_staff_ids.append(row["id"])
        elif (
            row["scope"] == Scope.AGENT_SPECIFIC.value
            and agent_id
            and row["assigned_to_agent_id"] == agent_id
        ):
            recipients.support_staff_ids.append(row["id"])
    return recipients


def client_display_name(conn: sqlite3.Connection, client_id: str) -> str:
    cur = conn.cursor()
    cur.execute("SELECT first_name, last_name, email FROM User WHERE id = ?", (client_id,))
    row = cur.fetchone()
    if not row:
        return "A client"
    name = f"{row['first_name'] or ''} {row['last_name'] or ''}".strip()
    return name or row["email"] or "A client"


def build_notification_content(
    event: NotificationEvent, client_name: str, context: Dict[str, Any]
) -> NotificationContent:
    if event == NotificationEvent.NEW_APPLICATION:
        application_id = context["application_id"]
        return NotificationContent(
            type="application",
            title="New application created",
            message=f"{client_name} created a new application",
            link_url=f"/admin/requests/{application_id}",
            metadata={"application_id": application_id},
        )
    if event == NotificationEvent.DOCUMENT_UPLOAD:
        document_name = context.get("document_name")
        suffix = f": {document_name}" if document_name else ""
        return NotificationContent(
            type="document",
            title="Document submitted",
            message=f"{client_name} submitted a document{suffix}",
            link_url="/admin/documents",
            metadata={"document_id": context["document_id"]},
        )

    ticket_id = context["ticket_id"]
    ticket_number = context.get("ticket_number")
    number = f" #{ticket_number}" if ticket_number else ""
    if event == NotificationEvent.TICKET_NEW:
        title = "New support ticket"
        message = f"{client_name} opened a new ticket{number}"
    else:
        title = "Reply on support ticket"
        message = f"{client_name} replied on ticket{number}"
    return NotificationContent(
        type="support",
        title=title,
        message=message,
        link_url=f"/admin/support/{ticket_id}",
        metadata={"ticket_id": ticket_id},
    )


def create_notification(
    conn: sqlite3.Connection,
    user_id: str,
    *,
    type: str,
    title: str,
    message: str,
    link_url: Optional[str] = None,
    metadata: Optional[Dict[str, Any]] = None,
) -> str:
    notification_id = str(uuid.uuid4())
    cur = conn.cursor()
    cur.execute(
        """
        INSERT INTO Notification (id, user_id, type, title, message, link_url, metadata, is_read, created_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, 0, ?)
        """,
        (notification_id, user_id, type, title, message, link_url, db.dump_json(metadata), db.now_iso()),
    )
    conn.commit()
    return notification_id


def _insert_for_recipient(user_id: str, content: NotificationContent) -> str:
    conn = db.get_db()
    try:
        return create_notification(
            conn,
            user_id,
            type=content.type,
            title=content.title,
            message=content.message,
            link_url=content.link_url,
            metadata=content.metadata,
        )
    finally:
        conn.close()


def notify_client_event(event: NotificationEvent, client_id: str, **context: Any) -> NotificationOutcome:
    """Write one notification per staff member who follows ``client_id``."""
    outcome = NotificationOutcome(event=event, client_id=client_id)
    try:
        with db.get_db() as conn:
            recipients = resolve_notification_recipients(conn, client_id)
            content = build_notification_content(event, client_display_name(conn, client_id), context)
    except Exception as exc:
        logger.exception("Notification recipients lookup failed", notify_event=event.value, client_id=client_id)
        outcome.failed["*"] = str(exc)
        return outcome

    user_ids = recipients.user_ids()
    if not user_ids:
        logger.info("No notification recipients", notify_event=event.value, client_id=client_id)
        return outcome

    with ThreadPoolExecutor(max_workers=min(FANOUT_MAX_WORKERS, len(user_ids))) as pool:
        futures = {user_id: pool.submit(_insert_for_recipient, user_id, content) for user_id in user_ids}
    for user_id, future in futures.items():
        exc = future.exception()
        if exc is None:
            outcome.sent.append(user_id)
            continue
        outcome.failed[user_id] = str(exc)
        logger.warning(
            "Notification insert failed",
            notify_event=event.value,
            client_id=client_id,
            user_id=user_id,
            error=str(exc),
        )

    logger.info(
        "Notifications fanned out",
        notify_event=event.value,
        client_id=client_id,
        sent=len(outcome.sent),
        failed=len(outcome.failed),
    )
    return outcome
