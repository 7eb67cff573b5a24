import os
import unittest
from unittest.mock import patch

from json4ai.config.environment import Environment, _int_env
from json4ai.core.error_handler import (
    AppError, DatabaseError, ValidationError, handle_error, log_error, retry_on_error
)


class TestErrorHandler(unittest.TestCase):
    def test_app_errors_pass_through(self):
        @handle_error
        def fail():
            raise ValidationError("bad input", error_code="INVALID")

        with self.assertRaises(ValidationError) as ctx:
            fail()
        self.assertEqual(ctx.exception.error_code, 'INVALID')

    def test_unexpected_errors_are_wrapped(self):
        @handle_error
        def fail():
            raise KeyError('plan')

        with self.assertRaises(AppError) as ctx:
            fail()
        self.assertEqual(ctx.exception.error_code, 'UNEXPECTED_ERROR')
        self.assertIsInstance(ctx.exception.__cause__, KeyError)

    def test_retry_on_error(self):
        calls = []

        @retry_on_error(max_retries=3, delay=0, exceptions=(DatabaseError,))
        def flaky():
            calls.append(1)
            if len(calls) < 3:
                raise DatabaseError("timeout")
            return 'ok'

        self.assertEqual(flaky(), 'ok')
        self.assertEqual(len(calls), 3)

    def test_retry_gives_up(self):
        @retry_on_error(max_retries=2, delay=0, exceptions=(DatabaseError,))
        def broken():
            raise DatabaseError("timeout")

        with self.assertRaises(DatabaseError):
            broken()

    def test_log_error(self):
        result = log_error(DatabaseError("down", error_code="READ_FAILED"), context="reconcile")
        self.assertFalse(result['success'])
        self.assertEqual(result['error_code'], 'READ_FAILED')
        self.assertIn('reconcile', result['message'])


class TestEnvironment(unittest.TestCase):
    @patch.dict(os.environ, {'SOME_LIMIT': 'abc'})
    def test_int_env_falls_back_on_garbage(self):
        self.assertEqual(_int_env('SOME_LIMIT', 7), 7)

    @patch.dict(os.environ, {'SOME_LIMIT': '12'})
    def test_int_env(self):
        self.assertEqual(_int_env('SOME_LIMIT', 7), 12)

    def test_config_getters_return_copies(self):
        config = Environment.get_stripe_config()
        config['secret_key'] = 'changed'
        self.assertNotEqual(Environment.STRIPE_CONFIG['secret_key'], 'changed')

    @patch.dict('json4ai.config.environment.Environment.FIREBASE_CONFIG', {'credentials': None, 'credentialsPath': None})
    def test_validate_config_requires_firebase(self):
        self.assertFalse(Environment.validate_config())

    @patch.dict('json4ai.config.environment.Environment.STRIPE_CONFIG',
                {'secret_key': 'sk_test', 'webhook_secret': None})
    @patch.dict('json4ai.config.environment.Environment.FIREBASE_CONFIG', {'credentials': '{}'})
    def test_validate_config_requires_stripe_webhook_secret(self):
        self.assertFalse(Environment.validate_config())


if __name__ == '__main__':
    unittest.main()
