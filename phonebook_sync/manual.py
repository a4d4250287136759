"""
Manually managed contacts.

Manual contacts live in the same primary collection as synced records but
carry ``isManual=True`` and a ``MANUAL:<id>`` dn. The sync engine never
overwrites or deletes them. They are not part of the known-dn set and are
not added to the search index.
"""

import uuid
import logging
from datetime import datetime, timezone
from typing import Dict, Any, Optional

from phonebook_sync.normalize import format_timestamp
from phonebook_sync.store import PhonebookStore

logger = logging.getLogger(__name__)

MANUAL_DN_PREFIX = 'MANUAL:'

TEXT_FIELDS = ('displayName', 'firstName', 'lastName', 'email', 'title',
               'department', 'company', 'office')
LOCATION_FIELDS = ('city', 'state', 'country', 'street', 'postalCode')
PHONE_FIELDS = ('business', 'mobile', 'ipPhone')


class ManualContactNotFound(Exception):
    """Raised when no manual contact exists for an id."""
    pass


def build_manual_dn(contact_id: str) -> str:
    return f"{MANUAL_DN_PREFIX}{contact_id}"


def manual_id_from_dn(dn: Optional[str]) -> Optional[str]:
    if not dn or not dn.startswith(MANUAL_DN_PREFIX):
        return None
    return dn[len(MANUAL_DN_PREFIX):]


def _now() -> str:
    return format_timestamp(datetime.now(timezone.utc))


def create_manual_contact(store: PhonebookStore, fields: Dict[str, Any],
                          contact_id: Optional[str] = None) -> Dict[str, Any]:
    """
    Create a manual contact.

    Args:
        store: Open phonebook store
        fields: Contact fields; ``city``..``postalCode`` and a ``phones`` mapping are accepted
        contact_id: Id to use instead of a random UUID

    Returns:
        The stored record

    Raises:
        ValueError: If neither displayName nor email is given
    """
    if not fields.get('displayName') and not fields.get('email'):
        raise ValueError("displayName or email is required")

    contact_id = contact_id or str(uuid.uuid4())
    dn = build_manual_dn(contact_id)
    phones = fields.get('phones') or {}

    record = {
        'dn': dn,
        'guid': None,
        'accountName': None,
        'upn': None,
    }
    for name in TEXT_FIELDS:
        record[name] = fields.get(name) or None
    record.update({
        'location': {name: fields.get(name) or None for name in LOCATION_FIELDS},
        'phones': {name: phones.get(name) or None for name in PHONE_FIELDS},
        'groups': {'dns': [], 'names': []},
        'managerDN': None,
        'lastLogon': None,
        'lastLogonTimestamp': None,
        'passwordLastSet': None,
        'whenChanged': None,
        'whenCreated': None,
        'uac': None,
        'uacDescription': None,
        'isManual': True,
        'syncedAt': _now(),
    })

    store.users_by_dn.put(dn, record)
    logger.info(f"Created manual contact {dn}")
    return record


def get_manual_contact(store: PhonebookStore, contact_id: str) -> Dict[str, Any]:
    record = store.users_by_dn.get(build_manual_dn(contact_id))
    if not record or not record.get('isManual'):
        raise ManualContactNotFound(f"Manual contact not found: {contact_id}")
    return record


def update_manual_contact(store: PhonebookStore, contact_id: str,
                          fields: Dict[str, Any]) -> Dict[str, Any]:
    """Apply the given fields to a manual contact; absent keys keep their value."""
    existing = get_manual_contact(store, contact_id)
    updated = dict(existing)

    for name in TEXT_FIELDS:
        if name in fields:
            updated[name] = fields[name]

    location = dict(existing.get('location') or {})
    for name in LOCATION_FIELDS:
        if name in fields:
            location[name] = fields[name]
        location.setdefault(name, None)
    updated['location'] = location

    phones = dict(existing.get('phones') or {})
    new_phones = fields.get('phones') or {}
    for name in PHONE_FIELDS:
        if name in new_phones:
            phones[name] = new_phones[name]
        phones.setdefault(name, None)
    updated['phones'] = phones

    updated['syncedAt'] = _now()
    store.users_by_dn.put(updated['dn'], updated)
    logger.info(f"Updated manual contact {updated['dn']}")
    return updated


def delete_manual_contact(store: PhonebookStore, contact_id: str) -> None:
    existing = get_manual_contact(store, contact_id)
    store.users_by_dn.remove(existing['dn'])
    logger.info(f"Deleted manual contact {existing['dn']}")
