"""
Delta synchronization between the directory and the phonebook store.

A pass loads the dns known to the store, takes one full snapshot of the
directory, upserts every entry (leaving manual records untouched) while
maintaining the search index incrementally, then deletes the known dns the
snapshot no longer contains. Records are processed one at a time, in fetch
order: index entries are read-modify-write and must not be updated
concurrently.

Each write is durable on its own. A pass that fails part way leaves the
records it already wrote, and no run metadata; re-running the pass is safe.
"""

import enum
import logging
import time
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from phonebook_sync.index import InvertedIndex
from phonebook_sync.normalize import entry_dn, format_timestamp, normalize_entry, record_content
from phonebook_sync.store import PhonebookStore
from phonebook_sync.tokenizer import record_tokens

logger = logging.getLogger(__name__)

# Enabled person/user objects that are not computer accounts
USER_FILTER = (
    "(&"
    "(objectCategory=person)"
    "(objectClass=user)"
    "(!(objectClass=computer))"
    "(!(userAccountControl:1.2.840.113556.1.4.803:=2))"
    ")"
)

USER_ATTRIBUTES = [
    "distinguishedName",
    "objectGUID",
    "sAMAccountName",
    "userPrincipalName",
    "mail",
    "displayName",
    "givenName",
    "sn",
    "title",
    "department",
    "company",
    "physicalDeliveryOfficeName",
    "l",
    "st",
    "co",
    "telephoneNumber",
    "mobile",
    "ipPhone",
    "streetAddress",
    "postalCode",
    "memberOf",
    "manager",
    "lastLogon",
    "lastLogonTimestamp",
    "pwdLastSet",
    "whenChanged",
    "whenCreated",
    "userAccountControl",
]

DELETE_PROGRESS_EVERY = 25
SLOW_ENTRY_SECONDS = 0.2


class SyncError(Exception):
    """Base exception for sync errors."""
    pass


class InvalidTransition(SyncError):
    """Raised when the pass attempts a state change the table does not allow."""
    pass


class SyncState(enum.Enum):
    PENDING = 'pending'
    LOADING_KNOWN = 'loading_known'
    BINDING = 'binding'
    FETCHING = 'fetching'
    PROCESSING = 'processing'
    DELETING = 'deleting'
    FINALIZED = 'finalized'
    FAILED = 'failed'


TRANSITIONS = {
    SyncState.PENDING: {SyncState.LOADING_KNOWN},
    SyncState.LOADING_KNOWN: {SyncState.BINDING, SyncState.FAILED},
    SyncState.BINDING: {SyncState.FETCHING, SyncState.FAILED},
    SyncState.FETCHING: {SyncState.PROCESSING, SyncState.FAILED},
    SyncState.PROCESSING: {SyncState.DELETING, SyncState.FAILED},
    SyncState.DELETING: {SyncState.FINALIZED, SyncState.FAILED},
    SyncState.FINALIZED: set(),
    SyncState.FAILED: set(),
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class DeltaSync:
    """
    One delta sync pass from a directory into a PhonebookStore.

    The directory collaborator needs ``connect()`` and
    ``search_entries(search_base, search_filter, attributes)``; releasing the
    connection is left to the caller that created it.
    """

    def __init__(self, store: PhonebookStore, directory, base_dn: str,
                 log: Optional[logging.Logger] = None,
                 clock: Optional[Callable[[], datetime]] = None):
        """
        Initialize a sync pass.

        Args:
            store: Open phonebook store
            directory: Directory client providing connect() and search_entries()
            base_dn: Search base for the snapshot
            log: Logger for progress events (the run log's logger in production)
            clock: Returns the current aware datetime; replaceable in tests
        """
        self.store = store
        self.directory = directory
        self.base_dn = base_dn
        self.log = log or logger
        self.clock = clock or _utcnow
        self.index = InvertedIndex(store.token_index, store.user_tokens_by_dn)

        self.state = SyncState.PENDING
        self.history = [SyncState.PENDING]
        self.failed_from = None
        self.error = None

        self.known_dns = set()
        self.seen_dns = set()
        self.deleted_dns = []
        self.stats = {
            'ldap_count': 0,
            'upserts': 0,
            'changed': 0,
            'unchanged': 0,
            'deletes': 0,
            'skipped_no_dn': 0,
            'skipped_manual': 0,
            'skipped_manual_deletes': 0,
            'empty_known_keys': 0,
            'search_ms': 0,
            'processing_ms': 0,
            'delete_ms': 0,
            'total_ms': 0,
        }

    def _transition(self, new_state: SyncState) -> None:
        if new_state not in TRANSITIONS[self.state]:
            raise InvalidTransition(f"Cannot move from {self.state.value} to {new_state.value}")
        self.state = new_state
        self.history.append(new_state)

    def run(self) -> Dict[str, Any]:
        """
        Run the pass to completion.

        Returns:
            Statistics for the pass

        Raises:
            Whatever phase error stopped the pass, after moving to FAILED
        """
        if self.state is not SyncState.PENDING:
            raise SyncError("A DeltaSync instance can only run once")

        start = time.monotonic()
        try:
            self._transition(SyncState.LOADING_KNOWN)
            self._load_known()

            self._transition(SyncState.BINDING)
            self._bind()

            self._transition(SyncState.FETCHING)
            entries = self._fetch()

            self._transition(SyncState.PROCESSING)
            self._process(entries)

            self._transition(SyncState.DELETING)
            self._delete_unseen()

            self.stats['total_ms'] = int((time.monotonic() - start) * 1000)
            self._finalize()
            self._transition(SyncState.FINALIZED)
        except Exception as e:
            self.failed_from = self.state
            self.error = e
            if SyncState.FAILED in TRANSITIONS[self.state]:
                self._transition(SyncState.FAILED)
            self.log.error(f"Sync failed during {self.failed_from.value}: {type(e).__name__}: {e}")
            raise

        return self.stats

    def _load_known(self) -> None:
        self.log.info("Phase 1: Loading known DNs from store")
        for key in self.store.all_dns.keys():
            if not key:
                self.stats['empty_known_keys'] += 1
                continue
            self.known_dns.add(key)
        self.log.info(f"Known DNs loaded: count={len(self.known_dns)} "
                      f"empty_keys_ignored={self.stats['empty_known_keys']}")

    def _bind(self) -> None:
        self.log.info("Phase 2: Binding to LDAP")
        self.directory.connect()

    def _fetch(self) -> List[Dict[str, Any]]:
        self.log.info(f"Phase 2: Searching LDAP base_dn={self.base_dn}")
        start = time.monotonic()
        entries = self.directory.search_entries(self.base_dn, USER_FILTER, USER_ATTRIBUTES)
        self.stats['search_ms'] = int((time.monotonic() - start) * 1000)
        self.stats['ldap_count'] = len(entries)
        self.log.info(f"Phase 2: LDAP search completed: count={len(entries)} "
                      f"search_ms={self.stats['search_ms']}")
        return entries

    def _process(self, entries: List[Dict[str, Any]]) -> None:
        total = len(entries)
        self.log.info(f"Phase 3: Processing LDAP entries: total={total}")
        start = time.monotonic()
        last_milestone = -1

        for position, entry in enumerate(entries):
            milestone = (position * 100 // total) // 10 * 10
            if milestone > last_milestone or position == total - 1:
                last_milestone = milestone
                self.log.info(f"Phase 3: Processing entries: progress={milestone}% "
                              f"index={position + 1} total={total} upserts={self.stats['upserts']}")

            entry_start = time.monotonic()
            self._process_entry(entry)
            entry_seconds = time.monotonic() - entry_start
            if entry_seconds > SLOW_ENTRY_SECONDS:
                self.log.warning(f"Slow entry processing detected: index={position} "
                                 f"ms={entry_seconds * 1000:.0f}")

        self.stats['processing_ms'] = int((time.monotonic() - start) * 1000)
        self.log.info(f"Phase 3: Entry processing completed: upserts={self.stats['upserts']} "
                      f"changed={self.stats['changed']} "
                      f"skipped_no_dn={self.stats['skipped_no_dn']} "
                      f"skipped_manual={self.stats['skipped_manual']} "
                      f"processing_ms={self.stats['processing_ms']}")

    def _process_entry(self, entry: Dict[str, Any]) -> None:
        dn = entry_dn(entry)
        if not dn:
            self.stats['skipped_no_dn'] += 1
            self.log.debug("Skipping entry without a distinguished name")
            return

        self.seen_dns.add(dn)

        existing = self.store.users_by_dn.get(dn)
        if existing and existing.get('isManual'):
            self.stats['skipped_manual'] += 1
            self.log.debug(f"Skipping entry colliding with manual record: dn={dn}")
            return

        record = normalize_entry(entry, format_timestamp(self.clock()))
        if existing and record_content(existing) == record_content(record):
            record['syncedAt'] = existing.get('syncedAt', record['syncedAt'])
            self.stats['unchanged'] += 1
        else:
            self.stats['changed'] += 1

        self._upsert(dn, record, existing)
        self.index.update_for_record(dn, record_tokens(record))
        self.stats['upserts'] += 1

    def _upsert(self, dn: str, record: Dict[str, Any], existing: Optional[Dict[str, Any]]) -> None:
        self.store.users_by_dn.put(dn, record)

        previous_guid = existing.get('guid') if existing else None
        if previous_guid and previous_guid != record['guid']:
            stale = self.store.users_by_guid.get(previous_guid)
            if stale is not None and stale.get('dn') == dn:
                self.store.users_by_guid.remove(previous_guid)

        if record['guid']:
            self.store.users_by_guid.put(record['guid'], record)
        self.store.all_dns.put(dn, 1)

    def _delete_unseen(self) -> None:
        unseen = sorted(self.known_dns - self.seen_dns)
        self.log.info(f"Phase 4: Delta delete: known={len(self.known_dns)} "
                      f"seen={len(self.seen_dns)} candidates={len(unseen)}")
        start = time.monotonic()

        for dn in unseen:
            if self._delete_record(dn):
                self.stats['deletes'] += 1
                self.deleted_dns.append(dn)
                if self.stats['deletes'] % DELETE_PROGRESS_EVERY == 0:
                    self.log.info(f"Phase 4: Delta delete: deleted={self.stats['deletes']}")

        self.stats['delete_ms'] = int((time.monotonic() - start) * 1000)
        self.log.info(f"Phase 4: Delta delete completed: deletes={self.stats['deletes']} "
                      f"skipped_manual={self.stats['skipped_manual_deletes']} "
                      f"delete_ms={self.stats['delete_ms']}")

    def _delete_record(self, dn: str) -> bool:
        """Remove a synced record and everything derived from it; manual records are kept."""
        record = self.store.users_by_dn.get(dn)
        if record and record.get('isManual'):
            self.stats['skipped_manual_deletes'] += 1
            self.log.debug(f"Not deleting manual record: dn={dn}")
            return False

        guid = record.get('guid') if record else None
        if guid:
            by_guid = self.store.users_by_guid.get(guid)
            if by_guid is None or by_guid.get('dn') == dn:
                self.store.users_by_guid.remove(guid)
        self.index.remove_record(dn)
        self.store.users_by_dn.remove(dn)
        self.store.all_dns.remove(dn)
        return True

    def _finalize(self) -> None:
        metadata = {
            'at': format_timestamp(self.clock()),
            'baseDN': self.base_dn,
            'upserts': self.stats['upserts'],
            'deletes': self.stats['deletes'],
            'ldapCount': self.stats['ldap_count'],
        }
        self.store.put_last_sync(metadata)
        self.log.info(
            f"Sync complete - summary: ldap_results={self.stats['ldap_count']} "
            f"upserts={self.stats['upserts']} changed={self.stats['changed']} "
            f"deletes={self.stats['deletes']} skipped_no_dn={self.stats['skipped_no_dn']} "
            f"skipped_manual={self.stats['skipped_manual']} total_ms={self.stats['total_ms']}"
        )
