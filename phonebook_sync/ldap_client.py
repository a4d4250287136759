"""
LDAP client for connecting to and querying LDAP directories.

This module provides functionality to bind to LDAP servers and retrieve the
full set of person entries as raw attribute dictionaries.
"""

import logging
import ssl
from typing import Dict, List, Any, Optional
from ldap3 import Server, Connection, BASE, SUBTREE, ALL, Tls
from ldap3.core.exceptions import LDAPException, LDAPSocketOpenError, LDAPBindError

from phonebook_sync.retry import retry_call, create_retry_callback, MaxRetriesExceeded

logger = logging.getLogger(__name__)

PAGED_RESULTS_OID = '1.2.840.113556.1.4.319'

# Attributes returned as bytes instead of decoded text
BINARY_ATTRIBUTES = frozenset(['objectguid', 'objectsid'])

# Attributes that are always returned as lists
MULTI_VALUED_ATTRIBUTES = frozenset(['memberof'])


class LDAPConnectionError(Exception):
    """Raised when LDAP connection fails."""
    pass


class LDAPQueryError(Exception):
    """Raised when LDAP query fails."""
    pass


class LDAPClient:
    """
    LDAP client for binding to a directory and fetching entry snapshots.

    Entries are returned as plain dictionaries of raw attribute values so the
    sync engine can normalize them without depending on ldap3 types.
    """

    def __init__(self, config: Dict[str, Any]):
        """
        Initialize LDAP client with configuration.

        Args:
            config: LDAP configuration dictionary
        """
        self.config = config
        self.server_url = config['server_url']
        self.bind_dn = config['bind_dn']
        self.bind_password = config['bind_password']
        self.base_dn = config.get('base_dn', '')

        # SSL/TLS configuration
        use_ssl = config.get('use_ssl')
        self.use_ssl = use_ssl if use_ssl is not None else self.server_url.lower().startswith('ldaps://')
        self.start_tls = config.get('start_tls', False)
        self.verify_ssl = config.get('verify_ssl', True)
        self.ca_cert_file = config.get('ca_cert_file')
        self.cert_file = config.get('cert_file')
        self.key_file = config.get('key_file')

        # Connection settings
        self.connection_timeout = config.get('connection_timeout', 15)
        self.receive_timeout = config.get('receive_timeout', 60)
        self.page_size = config.get('page_size', 1000)

        # Retry settings from error_handling config
        error_config = config.get('error_handling', {})
        self.max_retries = error_config.get('max_retries', 3)
        self.retry_wait = error_config.get('retry_wait_seconds', 5)

        self.server = None
        self.connection = None
        self._connected = False

    @property
    def connected(self) -> bool:
        return self._connected

    def connect(self, max_retries: Optional[int] = None, retry_wait: Optional[int] = None) -> bool:
        """
        Establish connection to LDAP server with retry logic.

        Args:
            max_retries: Maximum number of connection attempts (uses config default if None)
            retry_wait: Seconds to wait between retries (uses config default if None)

        Returns:
            True if connection successful

        Raises:
            LDAPConnectionError: If connection fails after all retries
        """
        max_retries = max_retries or self.max_retries
        retry_wait = retry_wait or self.retry_wait

        try:
            tls_config = self._create_tls_config()
            self.server = Server(
                self.server_url,
                use_ssl=self.use_ssl,
                tls=tls_config,
                get_info=ALL,
                connect_timeout=self.connection_timeout
            )
            logger.debug(f"Created LDAP server object for {self.server_url} (SSL: {self.use_ssl}, StartTLS: {self.start_tls})")
        except LDAPConnectionError:
            raise
        except Exception as e:
            raise LDAPConnectionError(f"Failed to create LDAP server: {e}")

        try:
            retry_call(
                self._open_and_bind,
                max_attempts=max_retries,
                delay=retry_wait,
                exceptions=(LDAPSocketOpenError, LDAPBindError, LDAPException),
                on_retry=create_retry_callback("LDAP bind")
            )
        except MaxRetriesExceeded as e:
            raise LDAPConnectionError(f"Failed to connect to LDAP after {e.attempts} attempts: {e.last_exception}")
        except LDAPConnectionError:
            raise
        except Exception as e:
            raise LDAPConnectionError(f"Unexpected error during LDAP connection: {e}")

        self._connected = True
        logger.info(f"Successfully connected and bound to LDAP server {self.server_url}")
        return True

    def _open_and_bind(self):
        """Single connection attempt; cleans up its connection on failure."""
        self.connection = Connection(
            self.server,
            user=self.bind_dn,
            password=self.bind_password,
            auto_bind=False,
            receive_timeout=self.receive_timeout
        )
        try:
            if not self.connection.open():
                raise LDAPSocketOpenError(f"Failed to open connection: {self.connection.result}")

            if self.start_tls and not self.use_ssl:
                if not self.connection.start_tls():
                    raise LDAPConnectionError(f"Failed to start TLS: {self.connection.result}")
                logger.debug("StartTLS negotiation successful")

            if not self.connection.bind():
                raise LDAPBindError(f"Bind failed: {self.connection.result}")
        except Exception:
            self._discard_connection()
            raise

    def _discard_connection(self):
        if self.connection is None:
            return
        try:
            self.connection.unbind()
        except Exception as e:
            logger.debug(f"Ignoring error while discarding LDAP connection: {e}")
        self.connection = None

    def _create_tls_config(self) -> Optional[Tls]:
        """
        Create TLS configuration for LDAP connection.

        Returns:
            Tls configuration object or None if not needed
        """
        if not (self.use_ssl or self.start_tls):
            return None

        tls_config = {}

        if not self.verify_ssl:
            tls_config['validate'] = ssl.CERT_NONE
            logger.warning("SSL certificate verification disabled")
        else:
            tls_config['validate'] = ssl.CERT_REQUIRED

        if self.ca_cert_file:
            tls_config['ca_certs_file'] = self.ca_cert_file
            logger.debug(f"Using CA certificate file: {self.ca_cert_file}")

        # Client certificate for mutual TLS
        if self.cert_file and self.key_file:
            tls_config['local_certificate_file'] = self.cert_file
            tls_config['local_private_key_file'] = self.key_file
            logger.debug("Client certificate configured for mutual TLS")

        try:
            return Tls(**tls_config)
        except Exception as e:
            raise LDAPConnectionError(f"Failed to create TLS configuration: {e}")

    def disconnect(self):
        """Close LDAP connection."""
        if self.connection and self._connected:
            try:
                self.connection.unbind()
                logger.debug("LDAP connection closed")
            except Exception as e:
                logger.warning(f"Error closing LDAP connection: {e}")
            finally:
                self._connected = False
                self.connection = None

    def search_entries(self, search_base: str, search_filter: str,
                       attributes: List[str]) -> List[Dict[str, Any]]:
        """
        Fetch every entry matching a filter, following paged results.

        Args:
            search_base: Base DN for the subtree search
            search_filter: LDAP filter string
            attributes: Attributes to request

        Returns:
            Entries in server order, each mapping attribute name to a raw value

        Raises:
            LDAPQueryError: If any page of the search fails
        """
        if not self._connected:
            raise LDAPQueryError("Not connected to LDAP server")

        logger.debug(f"Searching with filter: {search_filter} in base: {search_base}")

        entries = []
        page_count = 0
        cookie = None

        try:
            while True:
                success = self.connection.search(
                    search_base=search_base,
                    search_filter=search_filter,
                    search_scope=SUBTREE,
                    attributes=attributes,
                    paged_size=self.page_size,
                    paged_cookie=cookie
                )
                if not success:
                    raise LDAPQueryError(f"Search failed on page {page_count + 1}: {self.connection.result}")

                page_count += 1
                page_entries = [
                    self._to_raw_entry(item, attributes)
                    for item in self.connection.response or []
                    if item.get('type') == 'searchResEntry'
                ]
                entries.extend(page_entries)
                logger.debug(f"Page {page_count}: Retrieved {len(page_entries)} entries")

                cookie = self._paged_cookie()
                if not cookie:
                    break
        except LDAPQueryError:
            raise
        except LDAPException as e:
            raise LDAPQueryError(f"Paginated search failed: {e}")
        except Exception as e:
            raise LDAPQueryError(f"Unexpected error during paginated search: {e}")

        logger.info(f"Retrieved {len(entries)} entries across {page_count} pages")
        return entries

    def _paged_cookie(self) -> Optional[bytes]:
        controls = (self.connection.result or {}).get('controls') or {}
        control = controls.get(PAGED_RESULTS_OID) or {}
        return (control.get('value') or {}).get('cookie')

    def _to_raw_entry(self, item: Dict[str, Any], attributes: List[str]) -> Dict[str, Any]:
        """Convert an ldap3 response item into a raw attribute dictionary."""
        raw_attributes = {name.lower(): values for name, values in (item.get('raw_attributes') or {}).items()}

        entry = {'dn': item.get('dn')}
        for name in attributes:
            key = name.lower()
            values = raw_attributes.get(key)
            if not values:
                continue
            if key not in BINARY_ATTRIBUTES:
                values = [self._decode(value) for value in values]
            if key in MULTI_VALUED_ATTRIBUTES or len(values) > 1:
                entry[name] = list(values)
            else:
                entry[name] = values[0]
        return entry

    @staticmethod
    def _decode(value: Any) -> Any:
        if isinstance(value, bytes):
            return value.decode('utf-8', errors='replace')
        return value

    def verify_base_dn(self) -> bool:
        """
        Bind once and read the sync base entry.

        Makes a single bind attempt and a BASE-scope read, without fetching
        the snapshot.

        Returns:
            True when the base entry is readable

        Raises:
            LDAPConnectionError: If the bind fails
            LDAPQueryError: If the base DN is missing or unreadable
        """
        if not self.base_dn:
            raise LDAPQueryError("No base DN configured")
        if not self._connected:
            self.connect(max_retries=1)

        try:
            found = self.connection.search(
                search_base=self.base_dn,
                search_filter='(objectClass=*)',
                search_scope=BASE,
                attributes=['distinguishedName'],
                size_limit=1
            )
        except LDAPException as e:
            raise LDAPQueryError(f"Failed to read base DN {self.base_dn}: {e}")

        if not found:
            raise LDAPQueryError(f"Base DN {self.base_dn} not readable: {self.connection.result}")

        logger.debug(f"Base DN {self.base_dn} is readable")
        return True

    def __enter__(self):
        """Context manager entry."""
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit."""
        self.disconnect()
