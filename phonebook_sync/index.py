"""
Incremental maintenance of the token -> dn inverted search index.

The index is kept in step with each record's stored token set by applying
only the difference between the previous and the new set. Entries are
read-modify-write, so callers must apply updates for records sharing a token
one at a time.
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Iterable, List, Set

from phonebook_sync.store import Collection
from phonebook_sync.tokenizer import tokenize

logger = logging.getLogger(__name__)

SLOW_UPDATE_SECONDS = 0.05


@dataclass
class IndexDelta:
    """Tokens added to and removed from the index for one record."""
    added: Set[str] = field(default_factory=set)
    removed: Set[str] = field(default_factory=set)

    @property
    def changed(self) -> bool:
        return bool(self.added or self.removed)


class InvertedIndex:
    """Token index over two store collections: postings and per-dn token sets."""

    def __init__(self, token_index: Collection, tokens_by_dn: Collection):
        self.token_index = token_index
        self.tokens_by_dn = tokens_by_dn

    def tokens_for(self, dn: str) -> Set[str]:
        return set(self.tokens_by_dn.get(dn) or [])

    def update_for_record(self, dn: str, new_tokens: Iterable[str]) -> IndexDelta:
        """
        Reconcile the index for one record against its previous token set.

        Args:
            dn: Record identifier
            new_tokens: The record's current tokens

        Returns:
            IndexDelta describing the postings touched
        """
        start = time.monotonic()
        new_set = set(new_tokens)
        previous = self.tokens_for(dn)

        delta = IndexDelta(added=new_set - previous, removed=previous - new_set)
        for token in sorted(delta.added):
            self._add_posting(token, dn)
        for token in sorted(delta.removed):
            self._remove_posting(token, dn)

        # Always rewritten so the stored set stays authoritative
        self.tokens_by_dn.put(dn, sorted(new_set))

        elapsed = time.monotonic() - start
        if elapsed > SLOW_UPDATE_SECONDS:
            logger.debug(f"Index update timing: dn={dn} ms={elapsed * 1000:.1f} "
                         f"added={len(delta.added)} removed={len(delta.removed)} total={len(new_set)}")
        return delta

    def remove_record(self, dn: str) -> int:
        """Drop every posting contributed by a record and its token set."""
        previous = self.tokens_for(dn)
        for token in sorted(previous):
            self._remove_posting(token, dn)
        self.tokens_by_dn.remove(dn)
        return len(previous)

    def lookup(self, query: str) -> Set[str]:
        """Return the dns whose tokens include every token of the query."""
        tokens = tokenize([query])
        if not tokens:
            return set()

        result = None
        for token in sorted(tokens):
            postings = set(self.token_index.get(token) or [])
            result = postings if result is None else result & postings
            if not result:
                return set()
        return result

    def check_consistency(self) -> List[str]:
        """
        Compare the whole index against the per-dn token sets.

        This is a full scan, meant for health checks and tests only.

        Returns:
            List of problem descriptions (empty when consistent)
        """
        problems = []
        expected = {}
        for dn, tokens in self.tokens_by_dn.items():
            for token in tokens or []:
                expected.setdefault(token, set()).add(dn)

        seen_tokens = set()
        for token, dns in self.token_index.items():
            seen_tokens.add(token)
            if not dns:
                problems.append(f"empty index entry: {token}")
                continue
            if len(dns) != len(set(dns)):
                problems.append(f"duplicate dn in index entry: {token}")
            for dn in set(dns) - expected.get(token, set()):
                problems.append(f"stale posting: {token} -> {dn}")
            for dn in expected.get(token, set()) - set(dns):
                problems.append(f"missing posting: {token} -> {dn}")

        for token in set(expected) - seen_tokens:
            for dn in sorted(expected[token]):
                problems.append(f"missing posting: {token} -> {dn}")
        return problems

    def _add_posting(self, token: str, dn: str) -> None:
        current = self.token_index.get(token) or []
        if dn not in current:
            current.append(dn)
            self.token_index.put(token, current)

    def _remove_posting(self, token: str, dn: str) -> None:
        current = self.token_index.get(token) or []
        remaining = [item for item in current if item != dn]
        if not remaining:
            self.token_index.remove(token)
        elif len(remaining) != len(current):
            self.token_index.put(token, remaining)
