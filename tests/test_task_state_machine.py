from __future__ import annotations

import unittest
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

from app.models import TaskStatus
from app.services.task_errors import InvalidTransition
from app.services.task_state_machine import TaskAction, effective_status, ensure_transition_allowed, is_allowed


class TaskStateMachineTests(unittest.TestCase):
    def test_claim_sources(self) -> None:
        self.assertTrue(is_allowed(TaskAction.CLAIM, TaskStatus.AVAILABLE))
        self.assertTrue(is_allowed(TaskAction.CLAIM, TaskStatus.PENDING))
        self.assertFalse(is_allowed(TaskAction.CLAIM, TaskStatus.CLAIMED))

    def test_terminal_states_accept_nothing(self) -> None:
        for status in (TaskStatus.COMPLETED, TaskStatus.CANCELLED):
            for action in TaskAction:
                self.assertFalse(is_allowed(action, status), (action, status))

    def test_rejection_carries_status_and_action(self) -> None:
        with self.assertRaises(InvalidTransition) as ctx:
            ensure_transition_allowed(TaskAction.START, TaskStatus.AVAILABLE)

        self.assertEqual(ctx.exception.details, {'status': 'AVAILABLE', 'action': 'START'})
        self.assertEqual(str(ctx.exception), 'Cannot start a task that is available')

    def test_effective_status(self) -> None:
        now = datetime(2024, 3, 5, 12, 0, tzinfo=timezone.utc)
        past_due = SimpleNamespace(status=TaskStatus.CLAIMED, due_at=now - timedelta(minutes=1))
        on_time = SimpleNamespace(status=TaskStatus.CLAIMED, due_at=now)
        finished = SimpleNamespace(status=TaskStatus.COMPLETED, due_at=now - timedelta(days=1))
        undated = SimpleNamespace(status=TaskStatus.AVAILABLE, due_at=None)

        self.assertEqual(effective_status(past_due, now), TaskStatus.OVERDUE)
        self.assertEqual(effective_status(on_time, now), TaskStatus.CLAIMED)
        self.assertEqual(effective_status(finished, now), TaskStatus.COMPLETED)
        self.assertEqual(effective_status(undated, now), TaskStatus.AVAILABLE)


if __name__ == '__main__':
    unittest.main()
