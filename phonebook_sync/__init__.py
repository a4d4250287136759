"""
Phonebook Sync - Mirror directory contacts into a local searchable store.

This package pulls person entries from an LDAP/Active Directory server,
normalizes them into contact records, and keeps a local key-value store and
its inverted search index in step with the directory using delta syncs.
"""

__version__ = "1.0.0"
__author__ = "Phonebook Team"
