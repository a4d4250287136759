"""
Main orchestrator for Phonebook Sync.

This module wires configuration, logging, the directory client and the store
together around a single delta sync pass, and maps failures to exit codes.
"""

import sys
import json
import logging
import argparse
from datetime import datetime, timezone
from typing import Dict, Any, Optional

from phonebook_sync.config import load_config, has_ldap_config, ConfigurationError
from phonebook_sync.ldap_client import LDAPClient, LDAPConnectionError, LDAPQueryError
from phonebook_sync.logging_setup import setup_logging, cleanup_app_logs, SyncRunLog
from phonebook_sync.index import InvertedIndex
from phonebook_sync.store import PhonebookStore, StoreError, StoreFormatError
from phonebook_sync.sync import DeltaSync

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_CONFIG = 2
EXIT_DIRECTORY = 3
EXIT_UNEXPECTED = 4
EXIT_STORE = 5


def _age_seconds(last_sync: Optional[Dict[str, Any]]) -> Optional[int]:
    if not last_sync or not last_sync.get('at'):
        return None
    try:
        at = datetime.strptime(last_sync['at'], '%Y-%m-%dT%H:%M:%S.%fZ').replace(tzinfo=timezone.utc)
    except ValueError:
        return None
    return int((datetime.now(timezone.utc) - at).total_seconds())


class SyncOrchestrator:
    """
    Runs one sync pass end to end.

    Owns the directory connection and the store handle and releases both on
    every exit path.
    """

    def __init__(self, config_path: Optional[str] = None, config: Optional[Dict[str, Any]] = None):
        """
        Initialize sync orchestrator.

        Args:
            config_path: Path to configuration file
            config: Already loaded configuration (skips loading from disk)
        """
        self.config = config
        self.config_path = config_path
        self.ldap_client = None
        self.store = None
        self.sync = None
        self.run_log_path = None
        self.sync_stats = {}

    def run(self) -> int:
        """
        Run the complete synchronization process.

        Returns:
            Exit code (0 for success, non-zero for failure)
        """
        try:
            self._load_configuration()
            self._setup_logging()

            if self.config.get('test_mode') and not has_ldap_config(self.config):
                logger.info("Test mode enabled and LDAP configuration missing; skipping LDAP sync")
                return EXIT_OK

            logger.info("Starting Phonebook Sync")
            self._open_store()
            self._run_sync()
            logger.info("Sync completed successfully")
            return EXIT_OK

        except ConfigurationError as e:
            logger.error(f"Configuration error: {e}")
            return EXIT_CONFIG
        except (LDAPConnectionError, LDAPQueryError) as e:
            logger.error(f"LDAP error: {e}")
            return EXIT_DIRECTORY
        except StoreFormatError as e:
            logger.error(f"Sync failed - database format mismatch: {e}. Hint: {e.hint}")
            return EXIT_STORE
        except StoreError as e:
            logger.error(f"Store error: {e}")
            return EXIT_STORE
        except Exception as e:
            logger.error(f"Unexpected error: {e}", exc_info=True)
            return EXIT_UNEXPECTED
        finally:
            self._cleanup()

    def _load_configuration(self):
        """Load and validate configuration."""
        if self.config is not None:
            return
        try:
            self.config = load_config(self.config_path)
            logger.debug("Configuration loaded successfully")
        except ConfigurationError:
            raise
        except Exception as e:
            raise ConfigurationError(f"Failed to load configuration: {e}")

    def _setup_logging(self):
        logging_config = self.config.get('logging', {})
        setup_logging(logging_config)
        cleanup_app_logs(logging_config.get('log_dir', 'logs'), logging_config.get('retention_days', 7))

    def _open_store(self):
        storage_config = self.config['storage']
        self.store = PhonebookStore(storage_config['path'], storage_config.get('synchronous', 'NORMAL'))
        self.store.open()

    def _run_sync(self):
        ldap_config = dict(self.config['ldap'])
        ldap_config['error_handling'] = self.config.get('error_handling', {})
        self.ldap_client = LDAPClient(ldap_config)

        logging_config = self.config.get('logging', {})
        with SyncRunLog(logging_config['sync_logs_dir'],
                        level=logging_config.get('level', 'INFO'),
                        retention=logging_config.get('sync_log_retention', 30)) as run_log:
            self.run_log_path = run_log.path
            self.sync = DeltaSync(self.store, self.ldap_client, ldap_config['base_dn'], log=run_log.logger)
            self.sync_stats = self.sync.run()

    def health_check(self) -> Dict[str, Any]:
        """
        Perform a health check of the sync system.

        Returns:
            Dictionary containing health status and details
        """
        health_status = {
            'status': 'healthy',
            'timestamp': datetime.now(timezone.utc).isoformat(),
            'checks': {}
        }

        try:
            self._load_configuration()
            health_status['checks']['configuration'] = {
                'status': 'pass',
                'message': 'Configuration loaded successfully'
            }
        except Exception as e:
            health_status['checks']['configuration'] = {
                'status': 'fail',
                'message': f'Configuration error: {e}'
            }
            health_status['status'] = 'unhealthy'
            return health_status

        try:
            storage_config = self.config['storage']
            with PhonebookStore(storage_config['path']) as store:
                problems = InvertedIndex(store.token_index, store.user_tokens_by_dn).check_consistency()
                last_sync = store.get_last_sync()
            if problems:
                health_status['checks']['store'] = {
                    'status': 'fail',
                    'message': f'{len(problems)} index inconsistencies',
                    'problems': problems[:20]
                }
                health_status['status'] = 'unhealthy'
            else:
                health_status['checks']['store'] = {
                    'status': 'pass',
                    'message': 'Store readable and index consistent',
                    'last_sync': last_sync,
                    'last_sync_age_seconds': _age_seconds(last_sync)
                }
        except StoreError as e:
            health_status['checks']['store'] = {
                'status': 'fail',
                'message': f'Store error: {e}'
            }
            health_status['status'] = 'unhealthy'

        if has_ldap_config(self.config):
            try:
                ldap_config = dict(self.config['ldap'])
                with LDAPClient(ldap_config) as test_client:
                    test_client.verify_base_dn()
                health_status['checks']['ldap'] = {
                    'status': 'pass',
                    'message': 'LDAP bind and base DN read successful'
                }
            except Exception as e:
                health_status['checks']['ldap'] = {
                    'status': 'fail',
                    'message': f'LDAP connection failed: {e}'
                }
                health_status['status'] = 'unhealthy'
        else:
            health_status['checks']['ldap'] = {
                'status': 'skip',
                'message': 'LDAP not configured (test mode)'
            }

        return health_status

    def last_sync_status(self) -> Optional[Dict[str, Any]]:
        """Return the last successful run metadata, or None if never recorded."""
        self._load_configuration()
        storage_config = self.config['storage']
        with PhonebookStore(storage_config['path']) as store:
            return store.get_last_sync()

    def _cleanup(self):
        """Clean up resources."""
        if self.ldap_client:
            self.ldap_client.disconnect()
        if self.store:
            self.store.close()


def main():
    """Main entry point for the application."""
    parser = argparse.ArgumentParser(description='Phonebook directory sync')
    parser.add_argument('--config', '-c', help='Path to configuration file')
    parser.add_argument('--health-check', action='store_true',
                        help='Perform health check instead of sync')
    parser.add_argument('--status', action='store_true',
                        help='Print the last successful sync metadata')

    args = parser.parse_args()

    orchestrator = SyncOrchestrator(config_path=args.config)

    if args.health_check:
        health_status = orchestrator.health_check()
        print(json.dumps(health_status, indent=2))
        sys.exit(0 if health_status['status'] == 'healthy' else 1)

    elif args.status:
        try:
            print(json.dumps(orchestrator.last_sync_status(), indent=2))
        except (ConfigurationError, StoreError) as e:
            print(f"Error reading sync status: {e}")
            sys.exit(1)
        sys.exit(0)

    else:
        sys.exit(orchestrator.run())


if __name__ == "__main__":
    main()
