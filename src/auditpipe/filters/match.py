"""
Match filters: deterministic membership votes over a precompiled index.

Both filters are built from two primitives, the vote cast on a match and the
vote cast otherwise, giving four policies:

    include_on_match_exclude_otherwise   "only_include_*"  (exclusive allow-list)
    exclude_on_match_include_otherwise   "only_exclude_*"  (exclusive deny-list)
    include_on_match_abstain_otherwise   "include_*"       (soft allow-list)
    exclude_on_match_abstain_otherwise   "exclude_*"       (soft deny-list)

Indexes are built once at configuration time with build_index(); malformed
input raises ConfigValidationError there, never at decision time.
"""

from dataclasses import dataclass
from typing import FrozenSet, Iterable, Mapping, Optional, Sequence

from ..exceptions import ConfigValidationError
from ..models import OperationType
from .base import CacheableFilter, FieldFilter, TypeFilter, Vote

# Type name used for "any type" in field trees
WILDCARD_TYPE = ""


class MatchTypeFilter(TypeFilter, CacheableFilter):
    """Votes on entity types listed in the index."""

    def __init__(self, index: FrozenSet[str], on_match: Vote, on_non_match: Vote):
        self._index = index
        self._on_match = on_match
        self._on_non_match = on_non_match

    def __repr__(self) -> str:
        return (
            f"<MatchTypeFilter on_match={self._on_match.value} "
            f"on_non_match={self._on_non_match.value} types={len(self._index)}>"
        )

    def is_type_auditable(self, operation: OperationType, entity_type: str) -> Vote:
        return self._on_match if entity_type in self._index else self._on_non_match

    @classmethod
    def include_on_match_exclude_otherwise(cls, index: FrozenSet[str]) -> "MatchTypeFilter":
        """Audit only the listed types; lower-priority type filters never run."""
        return cls(index, Vote.APPROVE, Vote.DENY)

    @classmethod
    def exclude_on_match_include_otherwise(cls, index: FrozenSet[str]) -> "MatchTypeFilter":
        """Audit everything but the listed types; lower-priority type filters never run."""
        return cls(index, Vote.DENY, Vote.APPROVE)

    @classmethod
    def include_on_match_abstain_otherwise(cls, index: FrozenSet[str]) -> "MatchTypeFilter":
        """Always audit the listed types, defer on the rest."""
        return cls(index, Vote.APPROVE, Vote.ABSTAIN)

    @classmethod
    def exclude_on_match_abstain_otherwise(cls, index: FrozenSet[str]) -> "MatchTypeFilter":
        """Never audit the listed types, defer on the rest."""
        return cls(index, Vote.DENY, Vote.ABSTAIN)

    @staticmethod
    def build_index(types: Sequence[str]) -> FrozenSet[str]:
        """Convert a list of type names into a lookup index."""
        seen = set()
        for name in types:
            if not isinstance(name, str) or not name:
                raise ConfigValidationError("Type name must be a non-empty string", value=name)
            if name in seen:
                raise ConfigValidationError(f'Type "{name}" is defined more than once', value=name)
            seen.add(name)
        return frozenset(seen)


@dataclass(frozen=True)
class FieldIndex:
    """Lookup index for MatchFieldFilter.

    fields: field names matching on any type
    scoped: "type|field" keys
    types:  types whose every field matches
    """

    fields: FrozenSet[str] = frozenset()
    scoped: FrozenSet[str] = frozenset()
    types: FrozenSet[str] = frozenset()

    def __len__(self) -> int:
        return len(self.fields) + len(self.scoped) + len(self.types)

    def matches(self, entity_type: str, field_name: str) -> bool:
        # Most to least common
        return (
            field_name in self.fields
            or f"{entity_type}|{field_name}" in self.scoped
            or entity_type in self.types
        )


class MatchFieldFilter(FieldFilter, CacheableFilter):
    """Votes on fields listed in the index."""

    def __init__(self, index: FieldIndex, on_match: Vote, on_non_match: Vote):
        self._index = index
        self._on_match = on_match
        self._on_non_match = on_non_match

    def __repr__(self) -> str:
        return (
            f"<MatchFieldFilter on_match={self._on_match.value} "
            f"on_non_match={self._on_non_match.value} keys={len(self._index)}>"
        )

    def is_field_auditable(
        self, operation: OperationType, entity_type: str, field_name: str
    ) -> Vote:
        if self._index.matches(entity_type, field_name):
            return self._on_match
        return self._on_non_match

    @classmethod
    def include_on_match_exclude_otherwise(cls, index: FieldIndex) -> "MatchFieldFilter":
        return cls(index, Vote.APPROVE, Vote.DENY)

    @classmethod
    def exclude_on_match_include_otherwise(cls, index: FieldIndex) -> "MatchFieldFilter":
        return cls(index, Vote.DENY, Vote.APPROVE)

    @classmethod
    def include_on_match_abstain_otherwise(cls, index: FieldIndex) -> "MatchFieldFilter":
        return cls(index, Vote.APPROVE, Vote.ABSTAIN)

    @classmethod
    def exclude_on_match_abstain_otherwise(cls, index: FieldIndex) -> "MatchFieldFilter":
        return cls(index, Vote.DENY, Vote.ABSTAIN)

    @staticmethod
    def build_index(tree: Mapping[str, Optional[Iterable[str]]]) -> FieldIndex:
        """
        Convert a {type: [fields]} tree into a lookup index.

        An empty type name is the wildcard type and requires at least one field.
        A type with no fields (None or empty list) matches all of its fields.
        """
        fields, scoped, types = set(), set(), set()
        for type_name, names in tree.items():
            names = list(names or [])
            if type_name == WILDCARD_TYPE and not names:
                raise ConfigValidationError(
                    "A field filter entry needs a type, a field name, or both",
                    value=type_name,
                )

            if not names:
                types.add(type_name)
                continue

            for field_name in names:
                if not isinstance(field_name, str) or not field_name:
                    raise ConfigValidationError(
                        "Field names cannot be empty; list no fields to match every field of a type",
                        value=type_name or None,
                    )
                if type_name == WILDCARD_TYPE:
                    fields.add(field_name)
                else:
                    scoped.add(f"{type_name}|{field_name}")

        return FieldIndex(frozenset(fields), frozenset(scoped), frozenset(types))
