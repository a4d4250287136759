"""
Search tokenizer for contact records.
"""

import re
from typing import Dict, Any, Iterable, List, Optional, Set

MIN_TOKEN_LENGTH = 2

_SEPARATORS = re.compile(r'[^a-z0-9@.+-]+')

# Record fields feeding the search index, in order; group names are appended
SEARCH_FIELDS = (
    ('accountName',),
    ('upn',),
    ('email',),
    ('displayName',),
    ('firstName',),
    ('lastName',),
    ('title',),
    ('department',),
    ('company',),
    ('office',),
    ('location', 'city'),
    ('location', 'country'),
    ('phones', 'business'),
    ('phones', 'mobile'),
    ('phones', 'ipPhone'),
)


def tokenize(values: Iterable[Optional[Any]]) -> Set[str]:
    """
    Turn attribute values into a set of lowercase search tokens.

    Values are split on runs of anything other than letters, digits and
    ``@ . + -``; fragments shorter than two characters are dropped.
    """
    tokens = set()
    for value in values:
        if value is None or value == '':
            continue
        for token in _SEPARATORS.split(str(value).lower()):
            if len(token) >= MIN_TOKEN_LENGTH:
                tokens.add(token)
    return tokens


def record_search_values(record: Dict[str, Any]) -> List[Optional[Any]]:
    """Collect the searchable attribute values of a record."""
    values = []
    for path in SEARCH_FIELDS:
        current = record
        for key in path:
            current = current.get(key) if isinstance(current, dict) else None
        values.append(current)
    groups = record.get('groups') or {}
    values.extend(groups.get('names') or [])
    return values


def record_tokens(record: Dict[str, Any]) -> Set[str]:
    """Tokens for a record's searchable fields."""
    return tokenize(record_search_values(record))
