"""
Audit filters.

Type and field filters vote approve/deny/abstain; changeset filters accept or
reject the whole changeset. See base.py for the capability contracts.
"""

from .author import AuthorProviderFilter
from .base import (
    CacheableFilter,
    ChangesetFilter,
    FieldFilter,
    TypeFilter,
    Vote,
    first_verdict,
)
from .match import WILDCARD_TYPE, FieldIndex, MatchFieldFilter, MatchTypeFilter
from .pause import PauseAuditFilter
from .provider import FilterProvider

__all__ = [
    "AuthorProviderFilter",
    "CacheableFilter",
    "ChangesetFilter",
    "FieldFilter",
    "FieldIndex",
    "FilterProvider",
    "MatchFieldFilter",
    "MatchTypeFilter",
    "PauseAuditFilter",
    "TypeFilter",
    "Vote",
    "WILDCARD_TYPE",
    "first_verdict",
]
