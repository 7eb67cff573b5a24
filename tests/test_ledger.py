import unittest
from datetime import datetime, timezone, timedelta

from json4ai.core import ledger
from json4ai.core.models import User, Plan, UNLIMITED_CREDITS
from json4ai.core.results import GateFailure

NOW = datetime(2025, 3, 15, 12, 0, tzinfo=timezone.utc)


def make_user(**kwargs):
    defaults = dict(id='user_1', email='user@example.com', last_free_reset=NOW, last_monthly_reset=NOW)
    defaults.update(kwargs)
    return User(**defaults)


class TestDailyReset(unittest.TestCase):
    def test_due_only_on_a_later_calendar_day(self):
        user = make_user(last_free_reset=datetime(2025, 3, 14, 23, 59, tzinfo=timezone.utc))
        self.assertTrue(ledger.daily_reset_due(user, datetime(2025, 3, 15, 0, 0, 1, tzinfo=timezone.utc)))
        user.last_free_reset = datetime(2025, 3, 15, 0, 0, 1, tzinfo=timezone.utc)
        self.assertFalse(ledger.daily_reset_due(user, datetime(2025, 3, 15, 23, 59, tzinfo=timezone.utc)))

    def test_free_plan_gets_refilled(self):
        user = make_user(credits=0, daily_prompts_used=3, last_free_reset=NOW - timedelta(days=1))
        self.assertTrue(ledger.reset_daily_if_due(user, NOW))
        self.assertEqual(user.credits, 3)
        self.assertEqual(user.daily_prompts_used, 0)
        self.assertEqual(user.last_free_reset, NOW)

    def test_idempotent_within_a_day(self):
        user = make_user(credits=0, last_free_reset=NOW - timedelta(days=1))
        ledger.reset_daily_if_due(user, NOW)
        user.credits = 1
        self.assertFalse(ledger.reset_daily_if_due(user, NOW + timedelta(hours=5)))
        self.assertEqual(user.credits, 1)

    def test_paid_plan_only_resets_counter(self):
        user = make_user(plan=Plan.STARTER, credits=7, daily_prompts_used=4, last_free_reset=NOW - timedelta(days=2))
        self.assertTrue(ledger.reset_daily_if_due(user, NOW))
        self.assertEqual(user.credits, 7)
        self.assertEqual(user.daily_prompts_used, 0)

    def test_clock_skew_does_not_move_marker_back(self):
        user = make_user(last_free_reset=NOW)
        self.assertFalse(ledger.reset_daily_if_due(user, NOW - timedelta(days=1)))
        self.assertEqual(user.last_free_reset, NOW)


class TestMonthlyReset(unittest.TestCase):
    def test_due_only_in_a_later_month(self):
        user = make_user(last_monthly_reset=datetime(2025, 2, 28, 23, 0, tzinfo=timezone.utc))
        self.assertTrue(ledger.monthly_reset_due(user, datetime(2025, 3, 1, 0, 1, tzinfo=timezone.utc)))
        user.last_monthly_reset = datetime(2025, 3, 1, tzinfo=timezone.utc)
        self.assertFalse(ledger.monthly_reset_due(user, datetime(2025, 3, 31, 23, 59, tzinfo=timezone.utc)))

    def test_year_boundary(self):
        user = make_user(last_monthly_reset=datetime(2024, 12, 31, tzinfo=timezone.utc))
        self.assertTrue(ledger.monthly_reset_due(user, datetime(2025, 1, 1, tzinfo=timezone.utc)))

    def test_starter_gets_refilled(self):
        user = make_user(plan=Plan.STARTER, credits=2, monthly_prompts_used=28,
                         last_monthly_reset=datetime(2025, 2, 10, tzinfo=timezone.utc))
        self.assertTrue(ledger.reset_monthly_if_due(user, NOW))
        self.assertEqual(user.credits, 30)
        self.assertEqual(user.monthly_prompts_used, 0)

    def test_free_plan_only_resets_counter(self):
        user = make_user(credits=1, monthly_prompts_used=40, last_monthly_reset=datetime(2025, 2, 10, tzinfo=timezone.utc))
        self.assertTrue(ledger.reset_monthly_if_due(user, NOW))
        self.assertEqual(user.credits, 1)
        self.assertEqual(user.monthly_prompts_used, 0)


class TestConsume(unittest.TestCase):
    def test_consume_decrements_and_counts(self):
        user = make_user(credits=3)
        result = ledger.consume(user, NOW)
        self.assertTrue(result.ok)
        self.assertEqual(result.credits_remaining, 2)
        self.assertEqual(user.credits, 2)
        self.assertEqual((user.daily_prompts_used, user.monthly_prompts_used, user.total_prompts_used), (1, 1, 1))
        self.assertEqual(user.last_activity, NOW)

    def test_consume_with_no_credits(self):
        user = make_user(credits=0)
        result = ledger.consume(user, NOW)
        self.assertFalse(result.ok)
        self.assertEqual(result.failure, GateFailure.NO_CREDITS_REMAINING)
        self.assertEqual(user.credits, 0)
        self.assertEqual(user.total_prompts_used, 0)

    def test_premium_never_decrements(self):
        user = make_user(plan=Plan.PREMIUM, credits=UNLIMITED_CREDITS)
        for _ in range(50):
            self.assertTrue(ledger.consume(user, NOW).ok)
        self.assertEqual(user.credits, UNLIMITED_CREDITS)
        self.assertEqual(user.total_prompts_used, 50)

    def test_can_consume(self):
        self.assertTrue(ledger.can_consume(make_user(credits=1)))
        self.assertFalse(ledger.can_consume(make_user(credits=0)))
        self.assertTrue(ledger.can_consume(make_user(plan=Plan.PREMIUM, credits=0)))

    def test_can_consume_when_reset_is_due(self):
        user = make_user(credits=0, last_free_reset=NOW - timedelta(days=1))
        self.assertFalse(ledger.can_consume(user))
        self.assertTrue(ledger.can_consume(user, NOW))
        starter = make_user(plan=Plan.STARTER, credits=0, last_monthly_reset=datetime(2025, 2, 1, tzinfo=timezone.utc))
        self.assertTrue(ledger.can_consume(starter, NOW))


class TestNextResetTime(unittest.TestCase):
    def test_next_reset_per_plan(self):
        self.assertEqual(ledger.next_reset_time(make_user(), NOW), datetime(2025, 3, 16, tzinfo=timezone.utc))
        self.assertEqual(ledger.next_reset_time(make_user(plan=Plan.STARTER), NOW),
                         datetime(2025, 4, 1, tzinfo=timezone.utc))
        self.assertIsNone(ledger.next_reset_time(make_user(plan=Plan.PREMIUM), NOW))


if __name__ == '__main__':
    unittest.main()
