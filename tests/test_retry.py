#!/usr/bin/env python3
"""
Unit tests for retry utilities.
"""

import os
import sys
import unittest
from unittest.mock import Mock, patch

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from phonebook_sync.retry import MaxRetriesExceeded, create_retry_callback, retry_call


class TestRetryCall(unittest.TestCase):

    def test_success_first_try(self):
        func = Mock(return_value='ok')
        sleep = Mock()

        self.assertEqual(retry_call(func, args=(1,), kwargs={'x': 2}, sleep=sleep), 'ok')
        func.assert_called_once_with(1, x=2)
        sleep.assert_not_called()

    def test_success_after_failures(self):
        func = Mock(side_effect=[ConnectionError('down'), ConnectionError('down'), 'ok'])
        sleep = Mock()

        self.assertEqual(retry_call(func, max_attempts=3, delay=2, backoff=2, sleep=sleep), 'ok')
        self.assertEqual([c.args[0] for c in sleep.call_args_list], [2, 4])

    def test_exhausted_attempts(self):
        error = ConnectionError('down')
        func = Mock(side_effect=error)

        with self.assertRaises(MaxRetriesExceeded) as ctx:
            retry_call(func, max_attempts=2, sleep=Mock())

        self.assertEqual(ctx.exception.attempts, 2)
        self.assertIs(ctx.exception.last_exception, error)
        self.assertEqual(func.call_count, 2)

    def test_non_retryable_exception_propagates(self):
        func = Mock(side_effect=ValueError('bad input'))
        with self.assertRaises(ValueError):
            retry_call(func, exceptions=(ConnectionError,), sleep=Mock())
        func.assert_called_once()

    def test_at_least_one_attempt(self):
        func = Mock(side_effect=ConnectionError('down'))
        with self.assertRaises(MaxRetriesExceeded):
            retry_call(func, max_attempts=0, sleep=Mock())
        func.assert_called_once()

    def test_callback_failure_does_not_stop_retries(self):
        func = Mock(side_effect=[ConnectionError('down'), 'ok'])
        on_retry = Mock(side_effect=RuntimeError('callback broke'))

        self.assertEqual(retry_call(func, on_retry=on_retry, sleep=Mock()), 'ok')
        on_retry.assert_called_once()

    @patch('phonebook_sync.retry.time.sleep')
    def test_default_sleep(self, mock_sleep):
        func = Mock(side_effect=[ConnectionError('down'), 'ok'])
        retry_call(func, delay=0.5)
        mock_sleep.assert_called_once_with(0.5)

    def test_retry_callback_logs_warning(self):
        callback = create_retry_callback("LDAP bind")
        with self.assertLogs('phonebook_sync.retry', level='WARNING') as logs:
            callback(1, ConnectionError('down'))
        self.assertIn('LDAP bind failed on attempt 1', logs.output[0])


if __name__ == '__main__':
    unittest.main()
