"""
Verdict caches.

Two lifetimes are used by the processor and each gets its own store:
- per-cycle ("JIT"): any answer, including abstain, valid until the end of
  the current accumulation cycle
- persistent ("L2"): non-abstain answers of cacheable filters only, valid
  for the lifetime of the processor
"""

from typing import Dict, Hashable, Iterator, Optional

from .filters.base import Vote


class VerdictCache:
    """Key-value store of votes with an explicit clear lifecycle."""

    def __init__(self, name: str, verdicts_only: bool = False):
        self.name = name
        self.verdicts_only = verdicts_only
        self._entries: Dict[Hashable, Vote] = {}

    def __repr__(self) -> str:
        return f"<VerdictCache {self.name} entries={len(self._entries)}>"

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: Hashable) -> bool:
        return key in self._entries

    def __iter__(self) -> Iterator[Hashable]:
        return iter(self._entries)

    def get(self, key: Hashable) -> Optional[Vote]:
        return self._entries.get(key)

    def put(self, key: Hashable, vote: Vote) -> None:
        if self.verdicts_only and not vote.is_verdict:
            raise ValueError(f"{self.name} cache only accepts approve/deny votes, got {vote.value}")
        self._entries[key] = vote

    def clear(self) -> None:
        self._entries.clear()
