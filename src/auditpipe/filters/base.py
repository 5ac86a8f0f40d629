"""
Filter capabilities.

Filters vote on whether a type, a field, or a whole changeset should be
audited. Type and field filters cast a three-valued Vote; changeset filters
give a final accept/reject and may edit the changeset's records.

The capabilities are independent: one object may implement several of them
(see PauseAuditFilter). CacheableFilter is a marker declaring that the
filter's non-abstain answers stay valid across changesets indefinitely.
Marking a non-deterministic filter as cacheable cannot be detected by the
pipeline and will leak stale answers.
"""

from abc import ABC, abstractmethod
from enum import Enum
from typing import Iterable, Optional, Tuple, TypeVar

from ..models import Changeset, OperationType


class Vote(str, Enum):
    """Result of a single filter call."""

    APPROVE = "approve"
    DENY = "deny"
    ABSTAIN = "abstain"

    @classmethod
    def from_bool(cls, value: Optional[bool]) -> "Vote":
        if value is None:
            return cls.ABSTAIN
        return cls.APPROVE if value else cls.DENY

    def as_bool(self) -> Optional[bool]:
        if self is Vote.ABSTAIN:
            return None
        return self is Vote.APPROVE

    @property
    def is_verdict(self) -> bool:
        return self is not Vote.ABSTAIN


Voter = TypeVar("Voter")


def first_verdict(ballots: Iterable[Tuple[Voter, Vote]]) -> Tuple[Vote, Optional[Voter]]:
    """
    Fold (voter, vote) pairs in priority order: the first non-abstain vote wins.

    Ballots are consumed lazily, so voters after the deciding one are never
    asked when a generator is passed. Returns (ABSTAIN, None) when nobody
    reached a verdict.
    """
    for voter, vote in ballots:
        if vote.is_verdict:
            return vote, voter
    return Vote.ABSTAIN, None


class CacheableFilter:
    """Marker: non-abstain answers of this filter may be cached indefinitely."""


class TypeFilter(ABC):
    """
    Decides which entity types should (not) be audited.

    Answers must be deterministic within one accumulation cycle, which is why
    the entity object itself is never exposed here.
    """

    @abstractmethod
    def is_type_auditable(self, operation: OperationType, entity_type: str) -> Vote:
        pass


class FieldFilter(ABC):
    """
    Decides which fields of an entity should (not) be audited.

    Called at seal time only, for records whose type passed type filtering.
    """

    @abstractmethod
    def is_field_auditable(
        self, operation: OperationType, entity_type: str, field_name: str
    ) -> Vote:
        pass


class ChangesetFilter(ABC):
    """
    In-depth filtering of a whole changeset, called last before delivery.

    May mutate the changeset (mask values, drop records, fill in the author)
    before approving it. Returning False discards the changeset. Changeset
    filter answers are never cached.
    """

    @abstractmethod
    def on_audit(self, changeset: Changeset) -> bool:
        pass


def is_cacheable(filter_obj: object) -> bool:
    return isinstance(filter_obj, CacheableFilter)
