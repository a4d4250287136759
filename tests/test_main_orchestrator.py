#!/usr/bin/env python3
"""
Unit tests for the main sync orchestrator.

Runs full passes against a temporary store with the LDAP client mocked, and
checks the exit code mapping for each failure class.
"""

import os
import sys
import shutil
import tempfile
import unittest
from unittest.mock import MagicMock, patch

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from phonebook_sync.ldap_client import LDAPConnectionError, LDAPQueryError
from phonebook_sync.logging_setup import list_sync_logs
from phonebook_sync.main import (
    EXIT_CONFIG,
    EXIT_DIRECTORY,
    EXIT_OK,
    EXIT_STORE,
    EXIT_UNEXPECTED,
    SyncOrchestrator,
)
from phonebook_sync.store import PhonebookStore


def directory_entries():
    return [
        {
            'dn': 'CN=Jane Doe,OU=Staff,DC=test,DC=com',
            'distinguishedName': 'CN=Jane Doe,OU=Staff,DC=test,DC=com',
            'objectGUID': b'\x10\x20\x30\x40',
            'sAMAccountName': 'jdoe',
            'displayName': 'Jane Doe',
            'mail': 'jane.doe@test.com',
            'title': 'Engineer',
        },
        {
            'dn': 'CN=John Roe,OU=Staff,DC=test,DC=com',
            'distinguishedName': 'CN=John Roe,OU=Staff,DC=test,DC=com',
            'objectGUID': b'\x50\x60\x70\x80',
            'sAMAccountName': 'jroe',
            'displayName': 'John Roe',
        },
    ]


@patch('phonebook_sync.main.setup_logging')
class TestSyncOrchestrator(unittest.TestCase):
    """Test cases for SyncOrchestrator class."""

    def setUp(self):
        self.temp_dir = tempfile.mkdtemp(prefix='phonebook_main_test_')
        self.db_path = os.path.join(self.temp_dir, 'db', 'phonebook.sqlite3')
        self.sync_logs_dir = os.path.join(self.temp_dir, 'sync-logs')
        self.test_config = {
            'test_mode': False,
            'ldap': {
                'server_url': 'ldaps://test.example.com',
                'bind_dn': 'CN=service,DC=test,DC=com',
                'bind_password': 'test_password',
                'base_dn': 'OU=Staff,DC=test,DC=com',
            },
            'storage': {'path': self.db_path, 'synchronous': 'NORMAL'},
            'logging': {
                'level': 'INFO',
                'log_dir': os.path.join(self.temp_dir, 'logs'),
                'retention_days': 7,
                'sync_logs_dir': self.sync_logs_dir,
                'sync_log_retention': 5,
            },
            'error_handling': {'max_retries': 1, 'retry_wait_seconds': 0},
        }

    def tearDown(self):
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def mock_directory(self, mock_ldap_client, entries=None):
        client = MagicMock()
        client.connect.return_value = True
        client.search_entries.return_value = entries if entries is not None else directory_entries()
        client.__enter__.return_value = client
        mock_ldap_client.return_value = client
        return client

    @patch('phonebook_sync.main.LDAPClient')
    def test_successful_sync(self, mock_ldap_client, mock_setup_logging):
        client = self.mock_directory(mock_ldap_client)

        orchestrator = SyncOrchestrator(config=self.test_config)
        self.assertEqual(orchestrator.run(), EXIT_OK)

        client.search_entries.assert_called_once()
        self.assertEqual(client.search_entries.call_args.args[0], 'OU=Staff,DC=test,DC=com')
        client.disconnect.assert_called_once()
        self.assertEqual(orchestrator.sync_stats['upserts'], 2)
        self.assertIsNone(orchestrator.store.connection)

        with PhonebookStore(self.db_path) as store:
            self.assertEqual(len(store.users_by_dn), 2)
            last_sync = store.get_last_sync()
        self.assertEqual(last_sync['upserts'], 2)
        self.assertEqual(last_sync['ldapCount'], 2)
        self.assertEqual(last_sync['baseDN'], 'OU=Staff,DC=test,DC=com')

        logs = list_sync_logs(self.sync_logs_dir)
        self.assertEqual(logs, [orchestrator.run_log_path])
        with open(logs[0], encoding='utf-8') as f:
            content = f.read()
        self.assertIn('Phase 1', content)
        self.assertNotIn('test_password', content)

    @patch('phonebook_sync.main.LDAPClient')
    def test_error_handling_passed_to_client(self, mock_ldap_client, mock_setup_logging):
        self.mock_directory(mock_ldap_client)

        SyncOrchestrator(config=self.test_config).run()

        client_config = mock_ldap_client.call_args.args[0]
        self.assertEqual(client_config['error_handling'], {'max_retries': 1, 'retry_wait_seconds': 0})

    @patch('phonebook_sync.main.LDAPClient')
    def test_second_run_deletes_missing_users(self, mock_ldap_client, mock_setup_logging):
        self.mock_directory(mock_ldap_client)
        self.assertEqual(SyncOrchestrator(config=self.test_config).run(), EXIT_OK)

        self.mock_directory(mock_ldap_client, entries=directory_entries()[:1])
        orchestrator = SyncOrchestrator(config=self.test_config)
        self.assertEqual(orchestrator.run(), EXIT_OK)

        self.assertEqual(orchestrator.sync_stats['deletes'], 1)
        with PhonebookStore(self.db_path) as store:
            self.assertEqual(list(store.users_by_dn.keys()), ['CN=Jane Doe,OU=Staff,DC=test,DC=com'])

    def test_missing_config_file(self, mock_setup_logging):
        orchestrator = SyncOrchestrator(config_path=os.path.join(self.temp_dir, 'missing.yaml'))
        self.assertEqual(orchestrator.run(), EXIT_CONFIG)

    @patch('phonebook_sync.main.LDAPClient')
    def test_test_mode_without_directory_skips(self, mock_ldap_client, mock_setup_logging):
        self.test_config['test_mode'] = True
        self.test_config['ldap'] = {}

        orchestrator = SyncOrchestrator(config=self.test_config)
        self.assertEqual(orchestrator.run(), EXIT_OK)

        mock_ldap_client.assert_not_called()
        self.assertFalse(os.path.exists(self.db_path))

    @patch('phonebook_sync.main.LDAPClient')
    def test_connection_failure(self, mock_ldap_client, mock_setup_logging):
        client = self.mock_directory(mock_ldap_client)
        client.connect.side_effect = LDAPConnectionError("Failed to connect to LDAP after 1 attempts")

        orchestrator = SyncOrchestrator(config=self.test_config)
        self.assertEqual(orchestrator.run(), EXIT_DIRECTORY)

        client.disconnect.assert_called_once()
        with PhonebookStore(self.db_path) as store:
            self.assertIsNone(store.get_last_sync())

    @patch('phonebook_sync.main.LDAPClient')
    def test_query_failure(self, mock_ldap_client, mock_setup_logging):
        client = self.mock_directory(mock_ldap_client)
        client.search_entries.side_effect = LDAPQueryError("sizeLimitExceeded")

        self.assertEqual(SyncOrchestrator(config=self.test_config).run(), EXIT_DIRECTORY)

    @patch('phonebook_sync.main.LDAPClient')
    def test_store_format_mismatch(self, mock_ldap_client, mock_setup_logging):
        self.mock_directory(mock_ldap_client)
        os.makedirs(os.path.dirname(self.db_path))
        with open(self.db_path, 'wb') as f:
            f.write(b'this is not a sqlite database, just some bytes' * 100)

        with self.assertLogs('phonebook_sync.main', level='ERROR') as logs:
            exit_code = SyncOrchestrator(config=self.test_config).run()

        self.assertEqual(exit_code, EXIT_STORE)
        self.assertIn('format mismatch', logs.output[0])
        self.assertIn('full resync', logs.output[0])
        mock_ldap_client.assert_not_called()

    @patch('phonebook_sync.main.LDAPClient')
    def test_unexpected_error(self, mock_ldap_client, mock_setup_logging):
        client = self.mock_directory(mock_ldap_client)
        client.search_entries.side_effect = RuntimeError("boom")

        orchestrator = SyncOrchestrator(config=self.test_config)
        self.assertEqual(orchestrator.run(), EXIT_UNEXPECTED)

        # The run log is closed and kept even when the pass fails
        with open(orchestrator.run_log_path, encoding='utf-8') as f:
            self.assertIn('boom', f.read())

    @patch('phonebook_sync.main.LDAPClient')
    def test_health_check(self, mock_ldap_client, mock_setup_logging):
        self.mock_directory(mock_ldap_client)
        SyncOrchestrator(config=self.test_config).run()

        health = SyncOrchestrator(config=self.test_config).health_check()

        self.assertEqual(health['status'], 'healthy')
        self.assertEqual(health['checks']['store']['status'], 'pass')
        self.assertEqual(health['checks']['store']['last_sync']['upserts'], 2)
        self.assertGreaterEqual(health['checks']['store']['last_sync_age_seconds'], 0)
        self.assertEqual(health['checks']['ldap']['status'], 'pass')
        mock_ldap_client.return_value.verify_base_dn.assert_called_once_with()

    @patch('phonebook_sync.main.LDAPClient')
    def test_health_check_reads_base_dn(self, mock_ldap_client, mock_setup_logging):
        client = self.mock_directory(mock_ldap_client)
        client.verify_base_dn.side_effect = LDAPQueryError('Base DN OU=Staff,DC=test,DC=com not readable')

        health = SyncOrchestrator(config=self.test_config).health_check()

        client.verify_base_dn.assert_called_once_with()
        client.search_entries.assert_not_called()
        self.assertEqual(health['status'], 'unhealthy')
        self.assertEqual(health['checks']['ldap']['status'], 'fail')
        self.assertIn('not readable', health['checks']['ldap']['message'])

    @patch('phonebook_sync.main.LDAPClient')
    def test_health_check_reports_index_problems(self, mock_ldap_client, mock_setup_logging):
        self.mock_directory(mock_ldap_client)
        SyncOrchestrator(config=self.test_config).run()
        with PhonebookStore(self.db_path) as store:
            store.token_index.put('ghost', ['CN=Nobody'])

        health = SyncOrchestrator(config=self.test_config).health_check()

        self.assertEqual(health['status'], 'unhealthy')
        self.assertIn('stale posting: ghost -> CN=Nobody', health['checks']['store']['problems'])

    def test_last_sync_status_before_first_run(self, mock_setup_logging):
        self.assertIsNone(SyncOrchestrator(config=self.test_config).last_sync_status())


if __name__ == '__main__':
    unittest.main()
