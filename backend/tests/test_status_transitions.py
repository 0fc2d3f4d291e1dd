import unittest
from pathlib import Path
import sys

BACKEND_DIR = Path(__file__).resolve().parents[1]
if str(BACKEND_DIR) not in sys.path:
    sys.path.insert(0, str(BACKEND_DIR))

import policies  # noqa: E402
from policies import Actor, ApplicationStatus as S, Role, Scope  # noqa: E402

ALLOWED = {
    (S.DRAFT, S.SUBMITTED),
    (S.DRAFT, S.CANCELLED),
    (S.SUBMITTED, S.PENDING_APPROVAL),
    (S.SUBMITTED, S.REJECTED),
    (S.SUBMITTED, S.CANCELLED),
    (S.PENDING_APPROVAL, S.APPROVED),
    (S.PENDING_APPROVAL, S.REJECTED),
    (S.PENDING_APPROVAL, S.CANCELLED),
    (S.APPROVED, S.ACTIVE),
    (S.APPROVED, S.CANCELLED),
}


class StatusGraphTests(unittest.TestCase):
    def test_every_pair_matches_the_graph(self) -> None:
        for current in S:
            for target in S:
                expected = (current, target) in ALLOWED
                self.assertEqual(
                    policies.can_transition(current, target),
                    expected,
                    f"{current.value} -> {target.value}",
                )

    def test_self_transitions_rejected(self) -> None:
        for status in S:
            self.assertFalse(policies.can_transition(status, status))

    def test_terminal_states(self) -> None:
        self.assertEqual({s for s in S if policies.is_terminal(s)}, {S.ACTIVE, S.REJECTED, S.CANCELLED})
        self.assertEqual(policies.allowed_transitions(S.ACTIVE), [])

    def test_allowed_transitions_is_a_copy(self) -> None:
        targets = policies.allowed_transitions(S.DRAFT)
        targets.append(S.ACTIVE)
        self.assertNotIn(S.ACTIVE, policies.allowed_transitions(S.DRAFT))

    def test_cancellation_block_reason(self) -> None:
        self.assertEqual(policies.cancellation_block_reason(S.CANCELLED), "Application is already cancelled")
        self.assertIn("active", policies.cancellation_block_reason(S.ACTIVE))
        self.assertIn("rejected", policies.cancellation_block_reason(S.REJECTED))
        for status in (S.DRAFT, S.SUBMITTED, S.PENDING_APPROVAL, S.APPROVED):
            self.assertIsNone(policies.cancellation_block_reason(status))


class StatusRoleGateTests(unittest.TestCase):
    def test_clients_cannot_change_status(self) -> None:
        client = Actor(user_id="c1", role=Role.CLIENT)
        self.assertFalse(policies.can_change_status(client, "AG1"))
        self.assertEqual(policies.allowed_transitions_for(client, S.SUBMITTED, "AG1"), [])

    def test_scoped_staff_limited_to_assigned_agent(self) -> None:
        staff = Actor(user_id="s1", role=Role.SUPPORT_STAFF, scope=Scope.AGENT_SPECIFIC, assigned_agent_id="AG1")
        self.assertTrue(policies.can_change_status(staff, "AG1"))
        self.assertFalse(policies.can_change_status(staff, "AG2"))
        self.assertEqual(
            policies.allowed_transitions_for(staff, S.SUBMITTED, "AG1"),
            [S.PENDING_APPROVAL, S.REJECTED, S.CANCELLED],
        )


if __name__ == "__main__":
    unittest.main()
