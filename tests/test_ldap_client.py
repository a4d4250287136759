#!/usr/bin/env python3
"""
Unit tests for the LDAP client.

ldap3's Server and Connection are mocked; these tests cover binding with
retries, paged snapshot retrieval and raw entry conversion.
"""

import os
import sys
import ssl
import unittest
from unittest.mock import Mock, patch

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from ldap3 import BASE
from ldap3.core.exceptions import LDAPSocketOpenError
from phonebook_sync.ldap_client import (
    LDAPClient,
    LDAPConnectionError,
    LDAPQueryError,
    PAGED_RESULTS_OID,
)


def response_item(dn, **raw_attributes):
    return {'type': 'searchResEntry', 'dn': dn, 'raw_attributes': raw_attributes, 'attributes': {}}


def paged_result(cookie):
    return {'result': 0, 'controls': {PAGED_RESULTS_OID: {'value': {'size': 0, 'cookie': cookie}}}}


class TestLDAPClientConfiguration(unittest.TestCase):

    def setUp(self):
        self.config = {
            'server_url': 'ldaps://ldap.example.com:636',
            'bind_dn': 'CN=Service,DC=example,DC=com',
            'bind_password': 'secret',
            'base_dn': 'DC=example,DC=com',
        }

    def test_defaults(self):
        client = LDAPClient(self.config)
        self.assertTrue(client.use_ssl)
        self.assertFalse(client.start_tls)
        self.assertEqual(client.connection_timeout, 15)
        self.assertEqual(client.receive_timeout, 60)
        self.assertEqual(client.page_size, 1000)
        self.assertFalse(client.connected)

    def test_explicit_use_ssl_overrides_scheme(self):
        self.config['use_ssl'] = False
        self.assertFalse(LDAPClient(self.config).use_ssl)

    def test_tls_config(self):
        self.config['verify_ssl'] = False
        with patch('phonebook_sync.ldap_client.Tls') as mock_tls:
            LDAPClient(self.config)._create_tls_config()
        mock_tls.assert_called_once_with(validate=ssl.CERT_NONE)

    def test_no_tls_for_plain_ldap(self):
        self.config['server_url'] = 'ldap://ldap.example.com'
        self.assertIsNone(LDAPClient(self.config)._create_tls_config())


@patch('phonebook_sync.ldap_client.Tls')
@patch('phonebook_sync.ldap_client.Server')
@patch('phonebook_sync.ldap_client.Connection')
class TestLDAPClientConnect(unittest.TestCase):

    def setUp(self):
        self.config = {
            'server_url': 'ldap://ldap.example.com',
            'bind_dn': 'CN=Service,DC=example,DC=com',
            'bind_password': 'secret',
            'connection_timeout': 5,
            'receive_timeout': 30,
            'error_handling': {'max_retries': 3, 'retry_wait_seconds': 1},
        }

    def test_connect_success(self, mock_connection_class, mock_server_class, mock_tls):
        connection = Mock()
        connection.open.return_value = True
        connection.bind.return_value = True
        mock_connection_class.return_value = connection

        client = LDAPClient(self.config)
        self.assertTrue(client.connect())

        self.assertTrue(client.connected)
        mock_server_class.assert_called_once()
        self.assertEqual(mock_server_class.call_args.kwargs['connect_timeout'], 5)
        self.assertEqual(mock_connection_class.call_args.kwargs['receive_timeout'], 30)

    @patch('phonebook_sync.retry.time.sleep')
    def test_connect_retries_then_fails(self, mock_sleep, mock_connection_class, mock_server_class, mock_tls):
        connection = Mock()
        connection.open.side_effect = LDAPSocketOpenError('unreachable')
        mock_connection_class.return_value = connection

        client = LDAPClient(self.config)
        with self.assertRaises(LDAPConnectionError) as ctx:
            client.connect()

        self.assertIn('3 attempts', str(ctx.exception))
        self.assertEqual(connection.open.call_count, 3)
        self.assertEqual(mock_sleep.call_count, 2)
        self.assertFalse(client.connected)
        self.assertIsNone(client.connection)

    @patch('phonebook_sync.retry.time.sleep')
    def test_bind_rejected(self, mock_sleep, mock_connection_class, mock_server_class, mock_tls):
        connection = Mock()
        connection.open.return_value = True
        connection.bind.return_value = False
        connection.result = {'description': 'invalidCredentials'}
        mock_connection_class.return_value = connection

        client = LDAPClient(self.config)
        with self.assertRaises(LDAPConnectionError):
            client.connect(max_retries=1)
        mock_sleep.assert_not_called()

    def test_disconnect(self, mock_connection_class, mock_server_class, mock_tls):
        connection = Mock()
        connection.open.return_value = True
        connection.bind.return_value = True
        mock_connection_class.return_value = connection

        with LDAPClient(self.config) as client:
            client.connect()
        connection.unbind.assert_called_once()
        self.assertFalse(client.connected)


class TestLDAPClientSearch(unittest.TestCase):

    def setUp(self):
        self.client = LDAPClient({
            'server_url': 'ldap://ldap.example.com',
            'bind_dn': 'CN=Service,DC=example,DC=com',
            'bind_password': 'secret',
            'page_size': 2,
        })
        self.client.connection = Mock()
        self.client._connected = True
        self.attributes = ['distinguishedName', 'objectGUID', 'displayName', 'memberOf', 'mail']

    def test_requires_connection(self):
        self.client._connected = False
        with self.assertRaises(LDAPQueryError):
            self.client.search_entries('DC=example,DC=com', '(objectClass=user)', self.attributes)

    def test_follows_pages_and_converts_entries(self):
        pages = [
            ([response_item('CN=A,DC=example,DC=com',
                            distinguishedName=[b'CN=A,DC=example,DC=com'],
                            objectGUID=[b'\x01\x02\xff'],
                            displayname=[b'J\xc3\xbcrgen'],
                            memberOf=[b'CN=Staff,OU=Groups']),
              {'type': 'searchResRef', 'uri': ['ldap://elsewhere']}],
             paged_result(b'next')),
            ([response_item('CN=B,DC=example,DC=com',
                            distinguishedName=[b'CN=B,DC=example,DC=com'],
                            mail=[b'b@example.com', b'b2@example.com'])],
             paged_result(b'')),
        ]
        state = {'page': 0}
        connection = self.client.connection

        def search(**kwargs):
            response, result = pages[state['page']]
            state['page'] += 1
            connection.response = response
            connection.result = result
            return True

        connection.search.side_effect = search

        entries = self.client.search_entries('DC=example,DC=com', '(objectClass=user)', self.attributes)

        self.assertEqual(len(entries), 2)
        self.assertEqual(entries[0], {
            'dn': 'CN=A,DC=example,DC=com',
            'distinguishedName': 'CN=A,DC=example,DC=com',
            'objectGUID': b'\x01\x02\xff',
            'displayName': 'Jürgen',
            'memberOf': ['CN=Staff,OU=Groups'],
        })
        self.assertEqual(entries[1]['mail'], ['b@example.com', 'b2@example.com'])
        self.assertNotIn('memberOf', entries[1])

        first_call, second_call = connection.search.call_args_list
        self.assertIsNone(first_call.kwargs['paged_cookie'])
        self.assertEqual(second_call.kwargs['paged_cookie'], b'next')
        self.assertEqual(second_call.kwargs['paged_size'], 2)

    def test_failed_page_fails_snapshot(self):
        connection = self.client.connection
        connection.search.return_value = False
        connection.result = {'description': 'timeLimitExceeded'}

        with self.assertRaises(LDAPQueryError):
            self.client.search_entries('DC=example,DC=com', '(objectClass=user)', self.attributes)

    def test_transport_error_is_wrapped(self):
        self.client.connection.search.side_effect = LDAPSocketOpenError('reset')
        with self.assertRaises(LDAPQueryError):
            self.client.search_entries('DC=example,DC=com', '(objectClass=user)', self.attributes)

    def test_verify_base_dn(self):
        self.client.base_dn = 'OU=Staff,DC=example,DC=com'
        self.client.connection.search.return_value = True

        self.assertTrue(self.client.verify_base_dn())

        kwargs = self.client.connection.search.call_args.kwargs
        self.assertEqual(kwargs['search_base'], 'OU=Staff,DC=example,DC=com')
        self.assertEqual(kwargs['search_scope'], BASE)
        self.assertEqual(kwargs['size_limit'], 1)

    def test_verify_missing_base_dn(self):
        self.client.base_dn = 'OU=Gone,DC=example,DC=com'
        self.client.connection.search.return_value = False
        self.client.connection.result = {'description': 'noSuchObject'}

        with self.assertRaises(LDAPQueryError) as ctx:
            self.client.verify_base_dn()
        self.assertIn('OU=Gone,DC=example,DC=com', str(ctx.exception))

    def test_verify_binds_once_when_disconnected(self):
        self.client.base_dn = 'OU=Staff,DC=example,DC=com'
        self.client._connected = False
        with patch.object(self.client, 'connect',
                          side_effect=LDAPConnectionError('Failed to connect to LDAP after 1 attempts')) as mock_connect:
            with self.assertRaises(LDAPConnectionError):
                self.client.verify_base_dn()
        mock_connect.assert_called_once_with(max_retries=1)


if __name__ == '__main__':
    unittest.main()
