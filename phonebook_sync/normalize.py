"""
Identity and normalization of raw directory entries.

Turns one raw entry (attribute name -> absent, scalar, list or bytes value)
into the contact record shape stored by the sync engine and read by the
serving layer. Anomalies in the data never raise here: they become nulls.
"""

import re
import json
import hashlib
import logging
from datetime import datetime, timedelta, timezone
from typing import Dict, Any, List, Optional, Tuple

logger = logging.getLogger(__name__)

UAC_DESCRIPTIONS = {
    1: "SCRIPT",
    2: "ACCOUNTDISABLE",
    8: "HOMEDIR_REQUIRED",
    16: "LOCKOUT",
    32: "PASSWD_NOTREQD",
    64: "PASSWD_CANT_CHANGE",
    128: "ENCRYPTED_TEXT_PWD_ALLOWED",
    256: "TEMP_DUPLICATE_ACCOUNT",
    512: "NORMAL_ACCOUNT",
    514: "Disabled Account",
    544: "Enabled, Password Not Required",
    546: "Disabled, Password Not Required",
    2048: "INTERDOMAIN_TRUST_ACCOUNT",
    4096: "WORKSTATION_TRUST_ACCOUNT",
    8192: "SERVER_TRUST_ACCOUNT",
    65536: "DONT_EXPIRE_PASSWORD",
    66048: "Enabled, Password Doesn't Expire",
    66050: "Disabled, Password Doesn't Expire",
    66082: "Disabled, Password Doesn't Expire & Not Required",
    131072: "MNS_LOGON_ACCOUNT",
    262144: "SMARTCARD_REQUIRED",
    262656: "Enabled, Smartcard Required",
    262658: "Disabled, Smartcard Required",
    262690: "Disabled, Smartcard Required, Password Not Required",
    328194: "Disabled, Smartcard Required, Password Doesn't Expire",
    328226: "Disabled, Smartcard Required, Password Doesn't Expire & Not Required",
    524288: "TRUSTED_FOR_DELEGATION",
    532480: "Domain controller",
    1048576: "NOT_DELEGATED",
    2097152: "USE_DES_KEY_ONLY",
    4194304: "DONT_REQ_PREAUTH",
    8388608: "PASSWORD_EXPIRED",
    16777216: "TRUSTED_TO_AUTH_FOR_DELEGATION",
    67108864: "PARTIAL_SECRETS_ACCOUNT",
}

# Seconds between 1601-01-01 and 1970-01-01
FILETIME_EPOCH_OFFSET = 11644473600
FILETIME_TICKS_PER_MS = 10000

_CANONICAL_GUID = re.compile(r'[0-9a-fA-F-]{36}')
_LEADING_CN = re.compile(r'^CN=([^,]+),', re.IGNORECASE)


def to_list(value: Any) -> List[Any]:
    """Coerce a raw attribute value to a list; absent becomes empty."""
    if value is None:
        return []
    if isinstance(value, (list, tuple)):
        return list(value)
    return [value]


def _as_text(value: Any) -> Any:
    if isinstance(value, bytes):
        return value.decode('utf-8', errors='replace')
    return value


def first_value(value: Any) -> Optional[Any]:
    """Return the first value of a possibly multi-valued attribute, or None."""
    if isinstance(value, (list, tuple)):
        value = value[0] if value else None
    value = _as_text(value)
    if value is None or value == '':
        return None
    return value


def string_list(value: Any) -> List[str]:
    """Coerce a multi-valued attribute to an ordered list of strings."""
    return [str(_as_text(item)) for item in to_list(value) if item is not None and item != '']


def normalize_guid(raw: Any) -> Optional[str]:
    """
    Normalize a directory-assigned unique identifier to lowercase hex.

    Canonical 36-character GUID strings are kept (lowercased); any other
    shape is SHA-1 hashed so the secondary key always has a stable form.
    """
    if isinstance(raw, (list, tuple)):
        raw = raw[0] if raw else None
    if raw is None or raw == '' or raw == b'':
        return None
    if isinstance(raw, (bytes, bytearray)):
        return hashlib.sha1(bytes(raw)).hexdigest()
    if isinstance(raw, str):
        if _CANONICAL_GUID.fullmatch(raw):
            return raw.lower()
        return hashlib.sha1(raw.encode('utf-8')).hexdigest()
    return hashlib.sha1(json.dumps(raw, sort_keys=True, default=str).encode('utf-8')).hexdigest()


def filetime_to_iso(value: Any) -> Optional[str]:
    """
    Convert a Windows FILETIME value to an ISO-8601 UTC string.

    FILETIME counts 100-nanosecond ticks since 1601-01-01. Zero, missing,
    negative or non-numeric values convert to None.
    """
    value = first_value(value)
    if value is None:
        return None
    try:
        ticks = int(value)
    except (TypeError, ValueError):
        try:
            ticks = int(float(value))
        except (TypeError, ValueError, OverflowError):
            return None
    if ticks <= 0:
        return None

    ms = ticks // FILETIME_TICKS_PER_MS - FILETIME_EPOCH_OFFSET * 1000
    try:
        moment = datetime(1970, 1, 1, tzinfo=timezone.utc) + timedelta(milliseconds=ms)
    except OverflowError:
        return None
    return format_timestamp(moment)


def format_timestamp(moment: datetime) -> str:
    """Format an aware datetime as ISO-8601 UTC with milliseconds and a Z suffix."""
    moment = moment.astimezone(timezone.utc)
    return moment.strftime('%Y-%m-%dT%H:%M:%S.') + f"{moment.microsecond // 1000:03d}Z"


def extract_cn(dn: Optional[str]) -> Optional[str]:
    """Return the leading CN value of a distinguished name, or the dn itself."""
    if not dn:
        return None
    match = _LEADING_CN.match(dn)
    return match.group(1) if match else dn


def describe_uac(raw: Any) -> Tuple[Optional[int], Optional[str]]:
    """Coerce a userAccountControl value and look up its label."""
    value = first_value(raw)
    if value is None:
        return None, None
    try:
        uac = int(value)
    except (TypeError, ValueError):
        logger.debug(f"Unparseable userAccountControl value: {value!r}")
        return None, None
    return uac, UAC_DESCRIPTIONS.get(uac)


def entry_dn(entry: Dict[str, Any]) -> Optional[str]:
    """Primary key of a raw entry: distinguishedName, falling back to dn."""
    return first_value(entry.get('distinguishedName')) or first_value(entry.get('dn'))


def normalize_entry(entry: Dict[str, Any], synced_at: str) -> Dict[str, Any]:
    """
    Build a contact record from a raw directory entry.

    Every field is present in the result, null when the directory had no
    value for it.

    Args:
        entry: Raw entry mapping attribute names to raw values
        synced_at: ISO timestamp stored as the record's sync time

    Returns:
        Normalized record dictionary
    """
    def text(name):
        value = first_value(entry.get(name))
        return str(value) if value is not None else None

    member_of = string_list(entry.get('memberOf'))
    uac, uac_description = describe_uac(entry.get('userAccountControl'))

    return {
        'dn': entry_dn(entry),
        'guid': normalize_guid(entry.get('objectGUID')),
        'accountName': text('sAMAccountName'),
        'upn': text('userPrincipalName'),
        'email': text('mail'),
        'displayName': text('displayName'),
        'firstName': text('givenName'),
        'lastName': text('sn'),
        'title': text('title'),
        'department': text('department'),
        'company': text('company'),
        'office': text('physicalDeliveryOfficeName'),
        'location': {
            'city': text('l'),
            'state': text('st'),
            'country': text('co'),
            'street': text('streetAddress'),
            'postalCode': text('postalCode'),
        },
        'phones': {
            'business': text('telephoneNumber'),
            'mobile': text('mobile'),
            'ipPhone': text('ipPhone'),
        },
        'groups': {
            'dns': member_of,
            'names': [extract_cn(dn) for dn in member_of],
        },
        'managerDN': text('manager'),
        'lastLogon': filetime_to_iso(entry.get('lastLogon')),
        'lastLogonTimestamp': filetime_to_iso(entry.get('lastLogonTimestamp')),
        'passwordLastSet': filetime_to_iso(entry.get('pwdLastSet')),
        'whenChanged': text('whenChanged'),
        'whenCreated': text('whenCreated'),
        'uac': uac,
        'uacDescription': uac_description,
        'isManual': False,
        'syncedAt': synced_at,
    }


def record_content(record: Dict[str, Any]) -> Dict[str, Any]:
    """Record body without its sync timestamp, for change detection."""
    return {key: value for key, value in record.items() if key != 'syncedAt'}
