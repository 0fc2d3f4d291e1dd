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
from policies import Actor, Role  # noqa: E402

SUPER_ADMIN = Actor(user_id="super-1", role=Role.SUPER_ADMIN)
ADMIN = Actor(user_id="admin-1", role=Role.ADMIN)
AGENT = Actor(user_id="agent-user-1", role=Role.AGENT, own_agent_id="AG1")


class UserAdminTests(unittest.TestCase):
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
        now = db.now_iso()
        with db.get_db() as conn:
            conn.executemany(
                """
                INSERT INTO User (id, email, role, scope, assigned_to_agent_id, agent_id, is_active, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, 1, ?, ?)
                """,
                [
                    ("super-1", "super@example.com", "super_admin", None, None, None, now, now),
                    ("admin-1", "admin@example.com", "admin", None, None, None, now, now),
                    ("agent-user-1", "agent1@example.com", "agent", None, None, None, now, now),
                    ("agent-user-2", "agent2@example.com", "agent", None, None, None, now, now),
                    ("client-1", "client@example.com", "client", None, None, "AG1", now, now),
                    ("scoped-1", "scoped@example.com", "support_staff", "agent_specific", "AG1", None, now, now),
                    ("global-1", "global@example.com", "support_staff", "global", None, None, now, now),
                ],
            )
            conn.executemany(
                "INSERT INTO Agent (id, user_id, created_at) VALUES (?, ?, ?)",
                [("AG1", "agent-user-1", now), ("AG2", "agent-user-2", now)],
            )
            conn.commit()

    def _user(self, user_id: str):
        with db.get_db() as conn:
            return conn.execute("SELECT * FROM User WHERE id = ?", (user_id,)).fetchone()

    def _create(self, actor: Actor, **fields):
        payload = {
            "email": fields.pop("email", "new@example.com"),
            "first_name": "New",
            "last_name": "Person",
            "password": "s3cure-pass",
        }
        payload.update(fields)
        with patch.object(main, "resolve_actor", return_value=actor):
            return main.create_user(main.UserIn(**payload), request=object())

    def test_agent_created_support_staff_is_scoped_to_agent(self) -> None:
        created = self._create(AGENT, role="support_staff", scope="global")
        self.assertEqual(created.scope, "agent_specific")
        self.assertEqual(created.assigned_to_agent_id, "AG1")

    def test_admin_created_support_staff_defaults_to_global(self) -> None:
        created = self._create(ADMIN, role="support_staff")
        self.assertEqual(created.scope, "global")
        self.assertIsNone(created.assigned_to_agent_id)

    def test_agent_specific_requires_assigned_agent(self) -> None:
        with self.assertRaises(HTTPException) as ctx:
            self._create(ADMIN, role="support_staff", scope="agent_specific")
        self.assertEqual(ctx.exception.status_code, 400)

        created = self._create(ADMIN, role="support_staff", scope="agent_specific", assigned_to_agent_id="AG2")
        self.assertEqual(created.assigned_to_agent_id, "AG2")

    def test_role_hierarchy_enforced(self) -> None:
        for actor, role in ((ADMIN, "super_admin"), (AGENT, "agent"), (AGENT, "admin")):
            with self.assertRaises(HTTPException) as ctx:
                self._create(actor, role=role)
            self.assertEqual(ctx.exception.status_code, 403)

    def test_new_agent_gets_agent_row_and_password(self) -> None:
        created = self._create(SUPER_ADMIN, role="agent", business_name="Sun Insurance")
        with db.get_db() as conn:
            agent = conn.execute("SELECT * FROM Agent WHERE user_id = ?", (created.id,)).fetchone()
        self.assertEqual(agent["business_name"], "Sun Insurance")
        row = self._user(created.id)
        self.assertTrue(main.verify_password("s3cure-pass", row["password_salt"], row["password_hash"]))
        self.assertEqual(row["created_by"], "super-1")

    def test_agent_created_client_belongs_to_agent(self) -> None:
        created = self._create(AGENT, role="client", agent_id="AG2")
        self.assertEqual(created.agent_id, "AG1")

    def test_duplicate_email_and_short_password(self) -> None:
        with self.assertRaises(HTTPException) as ctx:
            self._create(ADMIN, role="client", email="client@example.com")
        self.assertEqual(ctx.exception.detail, "Email already exists")
        with self.assertRaises(HTTPException) as ctx:
            self._create(ADMIN, role="client", password="short")
        self.assertEqual(ctx.exception.status_code, 400)

    def test_reassign_client(self) -> None:
        with patch.object(main, "resolve_actor", return_value=ADMIN):
            updated = main.reassign_client("client-1", main.ReassignClientIn(agent_id="AG2"), request=object())
            self.assertEqual(updated.agent_id, "AG2")
            with self.assertRaises(HTTPException) as ctx:
                main.reassign_client("client-1", main.ReassignClientIn(agent_id="AG2"), request=object())
            self.assertEqual(ctx.exception.status_code, 400)
            with self.assertRaises(HTTPException) as ctx:
                main.reassign_client("scoped-1", main.ReassignClientIn(agent_id="AG2"), request=object())
            self.assertEqual(ctx.exception.status_code, 400)
            with self.assertRaises(HTTPException) as ctx:
                main.reassign_client("client-1", main.ReassignClientIn(agent_id="AG9"), request=object())
            self.assertEqual(ctx.exception.status_code, 404)

        with db.get_db() as conn:
            log = conn.execute("SELECT * FROM AdminActivityLog WHERE action = 'client_reassigned'").fetchone()
        self.assertEqual(json.loads(log["old_values"]), {"agent_id": "AG1"})

        with patch.object(main, "resolve_actor", return_value=AGENT):
            with self.assertRaises(HTTPException) as ctx:
                main.reassign_client("client-1", main.ReassignClientIn(agent_id="AG1"), request=object())
        self.assertEqual(ctx.exception.status_code, 403)

    def test_inactivating_agent_cascades_to_scoped_staff(self) -> None:
        with patch.object(main, "resolve_actor", return_value=ADMIN):
            result = main.inactivate_user("agent-user-1", main.InactivateUserIn(reason="Left"), request=object())

        self.assertFalse(result.user.is_active)
        self.assertEqual(result.cascaded_user_ids, ["scoped-1"])
        self.assertEqual(self._user("scoped-1")["is_active"], 0)
        self.assertEqual(self._user("global-1")["is_active"], 1)
        self.assertEqual(self._user("agent-user-1")["inactivation_reason"], "Left")

    def test_inactivate_guards(self) -> None:
        with patch.object(main, "resolve_actor", return_value=ADMIN):
            with self.assertRaises(HTTPException) as ctx:
                main.inactivate_user("admin-1", main.InactivateUserIn(), request=object())
            self.assertEqual(ctx.exception.status_code, 400)
            with self.assertRaises(HTTPException) as ctx:
                main.inactivate_user("super-1", main.InactivateUserIn(), request=object())
            self.assertEqual(ctx.exception.status_code, 403)
            main.inactivate_user("client-1", main.InactivateUserIn(), request=object())
            with self.assertRaises(HTTPException) as ctx:
                main.inactivate_user("client-1", main.InactivateUserIn(), request=object())
            self.assertEqual(ctx.exception.detail, "User is already inactive")


if __name__ == "__main__":
    unittest.main()
