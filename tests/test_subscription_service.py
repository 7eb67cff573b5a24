import unittest
from datetime import datetime, timezone, timedelta
from unittest.mock import MagicMock

from json4ai.core.error_handler import ValidationError
from json4ai.core.models import User, Plan, SubscriptionStatus, ExternalRef, PaymentProvider, UNLIMITED_CREDITS
from json4ai.core.usage_gate import UsageGate
from json4ai.services.subscription_service import SubscriptionService, display_credits
from json4ai.utils.helpers import utcnow
from tests.mocks.user_store import InMemoryUserStore

NOW = datetime(2025, 3, 15, 12, 0, tzinfo=timezone.utc)


class TestSubscriptionService(unittest.TestCase):
    def setUp(self):
        self.store = InMemoryUserStore()
        self.prompt_store = MagicMock()
        self.history_db = MagicMock()
        self.service = SubscriptionService(self.store, gate=UsageGate(self.store, max_retries=3),
                                           prompt_store=self.prompt_store, history_db=self.history_db)

    def add_user(self, **kwargs):
        defaults = dict(id='user_1', email='user@example.com', last_free_reset=NOW, last_monthly_reset=NOW,
                        created_at=NOW - timedelta(days=10))
        defaults.update(kwargs)
        return self.store.add(User(**defaults))

    def test_register_user(self):
        user = self.service.register_user(' New@Example.com ', 'Ada', 'Lovelace', now=NOW)

        stored = self.store.find_by_id(user.id)
        self.assertEqual(stored.email, 'new@example.com')
        self.assertEqual(stored.plan, Plan.FREE)
        self.assertEqual(stored.credits, 3)
        self.assertEqual(stored.daily_prompts_used, 0)
        self.assertEqual(stored.last_free_reset, NOW)
        self.assertEqual(stored.last_monthly_reset, NOW)

    def test_register_duplicate_email(self):
        self.add_user()
        with self.assertRaises(ValidationError) as ctx:
            self.service.register_user('user@example.com', now=NOW)
        self.assertEqual(ctx.exception.error_code, 'EMAIL_TAKEN')

    def test_register_invalid_email(self):
        with self.assertRaises(ValidationError) as ctx:
            self.service.register_user('not-an-email', now=NOW)
        self.assertEqual(ctx.exception.error_code, 'INVALID_EMAIL')

    def test_get_user_subscription(self):
        self.add_user(plan=Plan.PREMIUM, credits=UNLIMITED_CREDITS, subscription_status=SubscriptionStatus.ACTIVE,
                      external_subscription_ref=ExternalRef(provider=PaymentProvider.PAYPAL, external_id='I-1'))
        subscription = self.service.get_user_subscription('user_1')

        self.assertEqual(subscription['plan'], 'premium')
        self.assertEqual(subscription['credits'], 'Unlimited')
        self.assertEqual(subscription['provider'], 'paypal')
        self.assertEqual(subscription['externalSubscriptionId'], 'I-1')
        self.assertTrue(subscription['hasActiveSubscription'])
        self.assertIn('Unlimited JSON prompts', subscription['planFeatures'])

    def test_missing_user(self):
        with self.assertRaises(ValidationError) as ctx:
            self.service.get_user_subscription('ghost')
        self.assertEqual(ctx.exception.error_code, 'USER_NOT_FOUND')

    def test_analytics(self):
        self.add_user(plan=Plan.STARTER, credits=20, plan_start_date=NOW - timedelta(days=4),
                      monthly_prompts_used=10, total_prompts_used=15)
        analytics = self.service.get_subscription_analytics('user_1', now=NOW)

        self.assertEqual(analytics['daysSincePlanStart'], 4)
        self.assertEqual(analytics['creditsRemaining'], 20)
        self.assertEqual(analytics['totalPromptsUsed'], 15)
        self.assertEqual(analytics['nextResetTime'], datetime(2025, 4, 1, tzinfo=timezone.utc))

    def test_usage_summary(self):
        now = utcnow()
        self.add_user(credits=0, daily_prompts_used=3, last_free_reset=now, last_monthly_reset=now)
        usage = self.service.get_usage('user_1')

        self.assertEqual(usage['dailyLimit'], 3)
        self.assertEqual(usage['remainingCredits'], 0)
        self.assertFalse(usage['canGenerate'])
        self.assertIn('Daily limit reached', usage['reason'])
        self.assertEqual(self.store.writes, 0)

    def test_generate_prompt(self):
        self.add_user()
        response = self.service.generate_prompt('user_1', '  Write a haiku  ', now=NOW)

        self.assertEqual(response['http_status'], 200)
        self.assertEqual(response['creditsRemaining'], 2)
        self.assertEqual(response['prompt']['user_query'], 'Write a haiku')
        self.assertEqual(response['expiresAt'], NOW + timedelta(hours=24))
        record = self.prompt_store.save.call_args[0][0]
        self.assertEqual(record.user_id, 'user_1')
        self.assertEqual(record.id, response['promptId'])
        self.assertEqual(self.store.find_by_id('user_1').credits, 2)

    def test_generate_prompt_without_input(self):
        self.add_user()
        response = self.service.generate_prompt('user_1', '   ', now=NOW)
        self.assertEqual(response['http_status'], 400)
        self.assertEqual(self.store.find_by_id('user_1').credits, 3)

    def test_generate_prompt_out_of_credits(self):
        self.add_user(credits=0, daily_prompts_used=3)
        response = self.service.generate_prompt('user_1', 'Write a haiku', now=NOW)

        self.assertEqual(response['http_status'], 402)
        self.assertEqual(response['dailyLimit'], 3)
        self.assertEqual(response['remainingCredits'], 0)
        self.prompt_store.save.assert_not_called()

    def test_generate_prompt_expired_plan(self):
        self.add_user(plan=Plan.STARTER, credits=10, plan_end_date=NOW - timedelta(days=1))
        response = self.service.generate_prompt('user_1', 'Write a haiku', now=NOW)
        self.assertEqual(response['http_status'], 402)
        self.assertEqual(response['currentPlan'], 'starter')
        self.assertIn('expired', response['message'])

    def test_admin_upgrade(self):
        self.add_user(daily_prompts_used=2)
        result = self.service.upgrade_user_plan('user_1', 'premium', now=NOW)

        self.assertEqual(result, {'success': True, 'plan': 'premium', 'credits': 'Unlimited'})
        stored = self.store.find_by_id('user_1')
        self.assertEqual(stored.plan, Plan.PREMIUM)
        self.assertEqual(stored.plan_end_date, NOW + timedelta(days=30))
        self.assertEqual(stored.daily_prompts_used, 0)
        history = self.history_db.add_subscription_history.call_args[0][0]
        self.assertEqual(history.event_type, 'admin.plan_upgrade')

    def test_admin_upgrade_blocked_by_recurring(self):
        self.add_user(plan=Plan.STARTER, credits=30, subscription_status=SubscriptionStatus.ACTIVE,
                      external_subscription_ref=ExternalRef(provider=PaymentProvider.STRIPE, external_id='sub_1'))
        with self.assertRaises(ValidationError) as ctx:
            self.service.upgrade_user_plan('user_1', 'premium', now=NOW)
        self.assertEqual(ctx.exception.error_code, 'ACTIVE_SUBSCRIPTION')
        self.assertEqual(self.store.find_by_id('user_1').plan, Plan.STARTER)

    def test_display_credits(self):
        self.assertEqual(display_credits(User(email='a@b.com', plan=Plan.PREMIUM, credits=UNLIMITED_CREDITS)),
                         'Unlimited')
        self.assertEqual(display_credits(User(email='a@b.com', credits=2)), 2)

class TestAdminViews(unittest.TestCase):
    def setUp(self):
        self.store = InMemoryUserStore()
        self.service = SubscriptionService(self.store, gate=UsageGate(self.store, max_retries=3))
        stripe_sub = ExternalRef(provider=PaymentProvider.STRIPE, external_id='sub_1')
        paypal_sub = ExternalRef(provider=PaymentProvider.PAYPAL, external_id='I-SUB2')
        users = [
            User(id='u1', email='ada@example.com', first_name='Ada', last_name='Lovelace',
                 created_at=NOW - timedelta(days=40), processed_event_ids=['evt_9']),
            User(id='u2', email='grace@example.com', first_name='Grace', last_name='Hopper', plan=Plan.STARTER,
                 credits=20, subscription_status=SubscriptionStatus.ACTIVE, external_subscription_ref=stripe_sub,
                 plan_start_date=NOW - timedelta(days=5), created_at=NOW - timedelta(days=30)),
            User(id='u3', email='alan@example.com', first_name='Alan', last_name='Turing', plan=Plan.PREMIUM,
                 credits=UNLIMITED_CREDITS, subscription_status=SubscriptionStatus.ACTIVE,
                 external_subscription_ref=paypal_sub, plan_start_date=NOW - timedelta(days=60),
                 created_at=NOW - timedelta(days=90)),
            User(id='u4', email='edsger@example.com', first_name='Edsger', last_name='Dijkstra',
                 subscription_status=SubscriptionStatus.CANCELED, updated_at=NOW - timedelta(days=2),
                 created_at=NOW - timedelta(days=20)),
            User(id='u5', email='barbara@example.com', first_name='Barbara', last_name='Liskov', plan=Plan.STARTER,
                 credits=5, plan_start_date=NOW - timedelta(days=10), plan_end_date=NOW + timedelta(days=20),
                 created_at=NOW - timedelta(days=10))
        ]
        for user in users:
            self.store.add(user)

    def test_list_users_newest_first(self):
        result = self.service.list_users()
        self.assertEqual([u['id'] for u in result['users']], ['u5', 'u4', 'u2', 'u1', 'u3'])
        self.assertEqual(result['pagination'], {'currentPage': 1, 'totalPages': 1, 'totalUsers': 5,
                                                'hasNext': False, 'hasPrev': False})

    def test_list_users_hides_internal_fields(self):
        ada = next(u for u in self.service.list_users()['users'] if u['id'] == 'u1')
        self.assertEqual(ada['firstName'], 'Ada')
        self.assertNotIn('processed_event_ids', ada)
        self.assertNotIn('version', ada)
        premium = next(u for u in self.service.list_users()['users'] if u['id'] == 'u3')
        self.assertEqual(premium['credits'], 'Unlimited')
        self.assertEqual(premium['provider'], 'paypal')

    def test_list_users_filters(self):
        starters = self.service.list_users(plan='starter')
        self.assertEqual(sorted(u['id'] for u in starters['users']), ['u2', 'u5'])

        active = self.service.list_users(subscription_status='active', sort_by='email', sort_order='asc')
        self.assertEqual([u['id'] for u in active['users']], ['u3', 'u2'])

        found = self.service.list_users(search='HOPPER')
        self.assertEqual([u['id'] for u in found['users']], ['u2'])

    def test_list_users_pagination(self):
        result = self.service.list_users(page=2, limit=2)
        self.assertEqual([u['id'] for u in result['users']], ['u2', 'u1'])
        self.assertEqual(result['pagination']['totalPages'], 3)
        self.assertTrue(result['pagination']['hasNext'])
        self.assertTrue(result['pagination']['hasPrev'])

    def test_list_users_rejects_bad_arguments(self):
        with self.assertRaises(ValidationError):
            self.service.list_users(sort_by='password')
        with self.assertRaises(ValidationError):
            self.service.list_users(subscription_status='suspended')

    def test_subscription_summary(self):
        summary = self.service.get_subscription_summary(now=NOW)

        self.assertEqual(summary['totalUsers'], 5)
        self.assertEqual(summary['planDistribution'], {'free': 2, 'starter': 2, 'premium': 1})
        self.assertEqual(summary['statusDistribution']['active'], 2)
        self.assertEqual(summary['statusDistribution']['canceled'], 1)
        by_plan = {row['plan']: row for row in summary['subscribersByPlan']}
        self.assertEqual(by_plan['starter']['subscribers'], 1)
        self.assertEqual(by_plan['premium']['subscribers'], 1)
        self.assertNotIn('free', by_plan)
        # u2 and u5 started paid plans in the window; u3 started before it
        self.assertEqual(summary['recentPaidStarts'], 2)
        self.assertEqual(summary['recentChurn'], 1)

    def test_subscription_summary_without_users(self):
        service = SubscriptionService(InMemoryUserStore(), gate=MagicMock())
        summary = service.get_subscription_summary(now=NOW)
        self.assertEqual(summary['totalUsers'], 0)
        self.assertEqual(summary['subscribersByPlan'], [])


if __name__ == '__main__':
    unittest.main()
