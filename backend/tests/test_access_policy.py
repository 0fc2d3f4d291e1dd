import unittest
from pathlib import Path
import sys

BACKEND_DIR = Path(__file__).resolve().parents[1]
if str(BACKEND_DIR) not in sys.path:
    sys.path.insert(0, str(BACKEND_DIR))

import policies  # noqa: E402
from policies import Actor, Role, Scope  # noqa: E402


def make_actor(role, **kwargs) -> Actor:
    return Actor(user_id=kwargs.pop("user_id", "user-1"), role=role, **kwargs)


class AccessPolicyTests(unittest.TestCase):
    def test_admin_roles_see_everything(self) -> None:
        for role in (Role.SUPER_ADMIN, Role.ADMIN):
            actor = make_actor(role)
            self.assertTrue(policies.can_access(actor, "AG1"))
            self.assertTrue(policies.can_access(actor, None))

    def test_null_owner_denied_for_non_admin_roles(self) -> None:
        actors = [
            make_actor(Role.AGENT, own_agent_id="AG1"),
            make_actor(Role.SUPPORT_STAFF, scope=Scope.AGENT_SPECIFIC, assigned_agent_id="AG1"),
            make_actor(Role.CLIENT),
            make_actor(None),
        ]
        for actor in actors:
            self.assertFalse(policies.can_access(actor, None), actor.role)

    def test_agent_only_sees_own_book(self) -> None:
        actor = make_actor(Role.AGENT, own_agent_id="AG1")
        self.assertTrue(policies.can_access(actor, "AG1"))
        for owner in ("AG2", "ag1", "", "AG1 "):
            self.assertFalse(policies.can_access(actor, owner), owner)

    def test_agent_without_agent_row_is_denied(self) -> None:
        actor = make_actor(Role.AGENT, own_agent_id=None)
        self.assertFalse(policies.can_access(actor, "AG1"))

    def test_support_staff_scope(self) -> None:
        global_staff = make_actor(Role.SUPPORT_STAFF, scope=Scope.GLOBAL)
        scoped_staff = make_actor(Role.SUPPORT_STAFF, scope=Scope.AGENT_SPECIFIC, assigned_agent_id="AG1")
        unassigned = make_actor(Role.SUPPORT_STAFF, scope=Scope.AGENT_SPECIFIC, assigned_agent_id=None)
        no_scope = make_actor(Role.SUPPORT_STAFF, scope=None)

        self.assertTrue(policies.can_access(global_staff, "AG9"))
        self.assertTrue(policies.can_access(scoped_staff, "AG1"))
        self.assertFalse(policies.can_access(scoped_staff, "AG2"))
        self.assertFalse(policies.can_access(unassigned, "AG1"))
        self.assertFalse(policies.can_access(no_scope, "AG1"))

    def test_client_is_never_granted_by_agent_ownership(self) -> None:
        self.assertFalse(policies.can_access(make_actor(Role.CLIENT), "AG1"))

    def test_unknown_role_strings_parse_to_none(self) -> None:
        self.assertIsNone(policies.parse_role("owner"))
        self.assertIsNone(policies.parse_role(None))
        self.assertEqual(policies.parse_role(" Agent "), Role.AGENT)
        self.assertIsNone(policies.parse_scope("regional"))


class AccessFilterTests(unittest.TestCase):
    def test_admin_has_no_filter(self) -> None:
        self.assertEqual(policies.build_access_filter(make_actor(Role.ADMIN)), ("", []))

    def test_agent_filters_by_agent_column(self) -> None:
        where_clause, params = policies.build_access_filter(
            make_actor(Role.AGENT, own_agent_id="AG1"),
            agent_column="c.agent_id",
        )
        self.assertEqual(where_clause, "WHERE c.agent_id = ?")
        self.assertEqual(params, ["AG1"])

    def test_client_filters_by_owner(self) -> None:
        where_clause, params = policies.build_access_filter(make_actor(Role.CLIENT, user_id="client-1"))
        self.assertEqual(where_clause, "WHERE user_id = ?")
        self.assertEqual(params, ["client-1"])

    def test_unscoped_roles_match_nothing(self) -> None:
        for actor in (
            make_actor(Role.AGENT, own_agent_id=None),
            make_actor(Role.SUPPORT_STAFF, scope=Scope.AGENT_SPECIFIC),
            make_actor(None),
        ):
            where_clause, params = policies.build_access_filter(actor)
            self.assertEqual(where_clause, "WHERE 1 = 0")
            self.assertEqual(params, [])


class RoleCreationTests(unittest.TestCase):
    def test_hierarchy(self) -> None:
        self.assertTrue(policies.can_create_role(Role.SUPER_ADMIN, Role.SUPER_ADMIN))
        self.assertTrue(policies.can_create_role(Role.ADMIN, Role.AGENT))
        self.assertFalse(policies.can_create_role(Role.ADMIN, Role.SUPER_ADMIN))
        self.assertTrue(policies.can_create_role(Role.AGENT, Role.SUPPORT_STAFF))
        self.assertFalse(policies.can_create_role(Role.AGENT, Role.AGENT))
        self.assertFalse(policies.can_create_role(Role.SUPPORT_STAFF, Role.CLIENT))
        self.assertFalse(policies.can_create_role(None, Role.CLIENT))

    def test_support_staff_scope_follows_creator(self) -> None:
        self.assertEqual(policies.support_staff_scope_for(Role.AGENT), Scope.AGENT_SPECIFIC)
        self.assertEqual(policies.support_staff_scope_for(Role.ADMIN), Scope.GLOBAL)
        self.assertEqual(policies.support_staff_scope_for(Role.SUPER_ADMIN), Scope.GLOBAL)


if __name__ == "__main__":
    unittest.main()
