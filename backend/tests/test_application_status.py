import json
import tempfile
import unittest
from pathlib import Path
import sys
from unittest.mock import patch

from fastapi import HTTPException

BACKEND_DIR = Path(__file__).resolve().parents[1]
if str(BACKEND_DIR) not in sys.path:
    sys.path.insert(0, str(BACKEND_DIR))

import db  # noqa: E402
import main  # noqa: E402
from policies import Actor, Role, Scope  # noqa: E402

SCOPED_STAFF = Actor(
    user_id="staff-1",
    role=Role.SUPPORT_STAFF,
    scope=Scope.AGENT_SPECIFIC,
    assigned_agent_id="AG1",
)
ADMIN = Actor(user_id="admin-1", role=Role.ADMIN)
OTHER_AGENT = Actor(user_id="agent-2", role=Role.AGENT, own_agent_id="AG2")
CLIENT = Actor(user_id="client-1", role=Role.CLIENT)


class ApplicationRouteTestCase(unittest.TestCase):
    @classmethod
    def setUpClass(cls) -> None:
        cls.original_db_path = db.DB_PATH
        cls.tempdir = tempfile.TemporaryDirectory()
        cls.test_db_path = Path(cls.tempdir.name) / "test.db"

    @classmethod
    def tearDownClass(cls) -> None:
        db.DB_PATH = cls.original_db_path
        cls.tempdir.cleanup()

    def setUp(self) -> None:
        if self.test_db_path.exists():
            self.test_db_path.unlink()
        db.DB_PATH = self.test_db_path
        db.init_db()

    def _insert_application(self, app_id: str, status: str, agent_id: str = "AG1", user_id: str = "client-1") -> None:
        now = db.now_iso()
        with db.get_db() as conn:
            conn.execute(
                """
                INSERT INTO Application (id, user_id, agent_id, status, enrollment_data, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (app_id, user_id, agent_id, status, json.dumps({}), now, now),
            )
            conn.commit()

    def _status(self, app_id: str) -> str:
        with db.get_db() as conn:
            return conn.execute("SELECT status FROM Application WHERE id = ?", (app_id,)).fetchone()["status"]

    def _audit_rows(self, app_id: str):
        with db.get_db() as conn:
            return conn.execute(
                "SELECT * FROM AdminActivityLog WHERE entity_id = ? ORDER BY created_at",
                (app_id,),
            ).fetchall()

    def _change(self, actor: Actor, app_id: str, new_status: str, reason=None):
        with patch.object(main, "resolve_actor", return_value=actor):
            return main.change_application_status(
                app_id,
                main.StatusChangeIn(new_status=new_status, reason=reason),
                request=object(),
            )

    def _cancel(self, actor: Actor, app_id: str, reason="Client request"):
        with patch.object(main, "resolve_actor", return_value=actor):
            return main.cancel_application(app_id, main.CancelApplicationIn(reason=reason), request=object())


class ApplicationStatusTests(ApplicationRouteTestCase):
    def test_scoped_staff_moves_submitted_to_pending_approval(self) -> None:
        self._insert_application("A1", "submitted")

        result = self._change(SCOPED_STAFF, "A1", "pending_approval")

        self.assertEqual(result.previous_status, "submitted")
        self.assertEqual(result.application.status, "pending_approval")
        self.assertEqual(result.application.status_changed_by, "staff-1")
        rows = self._audit_rows("A1")
        self.assertEqual(len(rows), 1)
        self.assertEqual(rows[0]["action"], "application_state_changed")
        self.assertEqual(rows[0]["entity_type"], "application")
        self.assertEqual(json.loads(rows[0]["old_values"]), {"status": "submitted"})
        self.assertEqual(json.loads(rows[0]["new_values"]), {"status": "pending_approval"})

    def test_submitted_to_active_rejected(self) -> None:
        self._insert_application("A1", "submitted")

        with self.assertRaises(HTTPException) as ctx:
            self._change(SCOPED_STAFF, "A1", "active")

        self.assertEqual(ctx.exception.status_code, 400)
        self.assertEqual(self._status("A1"), "submitted")
        self.assertEqual(self._audit_rows("A1"), [])

    def test_approved_to_active_requires_enrollment_submission(self) -> None:
        self._insert_application("A1", "approved")

        with self.assertRaises(HTTPException) as ctx:
            self._change(ADMIN, "A1", "active")

        self.assertEqual(ctx.exception.status_code, 400)
        self.assertIn("submitting the enrollment", ctx.exception.detail)

    def test_same_status_rejected(self) -> None:
        self._insert_application("A1", "submitted")
        with self.assertRaises(HTTPException) as ctx:
            self._change(ADMIN, "A1", "submitted")
        self.assertEqual(ctx.exception.status_code, 400)

    def test_invalid_status_value(self) -> None:
        self._insert_application("A1", "submitted")
        with self.assertRaises(HTTPException) as ctx:
            self._change(ADMIN, "A1", "archived")
        self.assertEqual(ctx.exception.status_code, 400)

    def test_missing_application(self) -> None:
        with self.assertRaises(HTTPException) as ctx:
            self._change(ADMIN, "missing", "submitted")
        self.assertEqual(ctx.exception.status_code, 404)

    def test_other_agent_and_client_forbidden(self) -> None:
        self._insert_application("A1", "submitted")
        for actor in (OTHER_AGENT, CLIENT):
            with self.assertRaises(HTTPException) as ctx:
                self._change(actor, "A1", "pending_approval")
            self.assertEqual(ctx.exception.status_code, 403)
        self.assertEqual(self._status("A1"), "submitted")

    def test_cancel_via_change_status_needs_reason(self) -> None:
        self._insert_application("A1", "draft")
        with self.assertRaises(HTTPException) as ctx:
            self._change(ADMIN, "A1", "cancelled", reason="  ")
        self.assertEqual(ctx.exception.status_code, 400)

        result = self._change(ADMIN, "A1", "cancelled", reason="Duplicate")
        self.assertEqual(result.application.status_change_reason, "Duplicate")

    def test_stale_read_loses_with_conflict(self) -> None:
        self._insert_application("A1", "submitted")
        with db.get_db() as conn:
            stale = main.fetch_application(conn, "A1")
            conn.execute("UPDATE Application SET status = 'rejected' WHERE id = 'A1'")
            conn.commit()
            with self.assertRaises(HTTPException) as ctx:
                main.apply_status_change(conn, stale, ADMIN, main.ApplicationStatus.PENDING_APPROVAL, None)

        self.assertEqual(ctx.exception.status_code, 409)
        self.assertEqual(self._status("A1"), "rejected")
        self.assertEqual(self._audit_rows("A1"), [])

    def test_allowed_transitions_hide_active(self) -> None:
        self._insert_application("A1", "approved")
        with patch.object(main, "resolve_actor", return_value=ADMIN):
            result = main.get_allowed_transitions("A1", request=object())
        self.assertEqual(result.allowed, ["cancelled"])
        self.assertTrue(result.can_submit_enrollment)

        with patch.object(main, "resolve_actor", return_value=CLIENT):
            result = main.get_allowed_transitions("A1", request=object())
        self.assertEqual(result.allowed, [])
        self.assertFalse(result.can_submit_enrollment)


class CancelApplicationTests(ApplicationRouteTestCase):
    def test_cancellable_states(self) -> None:
        for index, status in enumerate(("draft", "submitted", "pending_approval", "approved")):
            app_id = f"C{index}"
            self._insert_application(app_id, status)
            result = self._cancel(SCOPED_STAFF, app_id)
            self.assertEqual(result.application.status, "cancelled")
            self.assertEqual(result.application.status_change_reason, "Client request")

    def test_blocked_states_name_the_state(self) -> None:
        for status in ("active", "rejected"):
            self._insert_application(status, status)
            with self.assertRaises(HTTPException) as ctx:
                self._cancel(ADMIN, status)
            self.assertEqual(ctx.exception.status_code, 400)
            self.assertIn(status, ctx.exception.detail)
            self.assertEqual(self._status(status), status)

    def test_already_cancelled(self) -> None:
        self._insert_application("A1", "cancelled")
        with self.assertRaises(HTTPException) as ctx:
            self._cancel(ADMIN, "A1")
        self.assertEqual(ctx.exception.detail, "Application is already cancelled")

    def test_reason_required(self) -> None:
        self._insert_application("A1", "draft")
        with self.assertRaises(HTTPException) as ctx:
            self._cancel(ADMIN, "A1", reason="")
        self.assertEqual(ctx.exception.status_code, 400)

    def test_client_and_foreign_agent_forbidden(self) -> None:
        self._insert_application("A1", "draft")
        for actor in (CLIENT, OTHER_AGENT):
            with self.assertRaises(HTTPException) as ctx:
                self._cancel(actor, "A1")
            self.assertEqual(ctx.exception.status_code, 403)


class ApplicationListTests(ApplicationRouteTestCase):
    def test_list_is_scoped(self) -> None:
        self._insert_application("A1", "submitted", agent_id="AG1")
        self._insert_application("A2", "draft", agent_id="AG2", user_id="client-2")

        with patch.object(main, "resolve_actor", return_value=SCOPED_STAFF):
            rows = main.list_applications(request=object())
        self.assertEqual([row.id for row in rows], ["A1"])

        with patch.object(main, "resolve_actor", return_value=ADMIN):
            rows = main.list_applications(request=object(), status="draft")
        self.assertEqual([row.id for row in rows], ["A2"])

        with patch.object(main, "resolve_actor", return_value=CLIENT):
            rows = main.list_applications(request=object())
        self.assertEqual([row.id for row in rows], ["A1"])

    def test_detail_access(self) -> None:
        self._insert_application("A1", "submitted")
        with patch.object(main, "resolve_actor", return_value=CLIENT):
            detail = main.get_application_detail("A1", request=object())
        self.assertEqual(detail.id, "A1")
        self.assertEqual(detail.applicants, [])

        with patch.object(main, "resolve_actor", return_value=OTHER_AGENT):
            with self.assertRaises(HTTPException) as ctx:
                main.get_application_detail("A1", request=object())
        self.assertEqual(ctx.exception.status_code, 403)


if __name__ == "__main__":
    unittest.main()
