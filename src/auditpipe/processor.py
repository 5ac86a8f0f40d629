"""
Audit Processor

The decision engine between producers and sinks. The unit of work asks it
whether a type is auditable for every notification, and hands it the
changeset at flush time to filter fields, run changeset filters and decide
whether the changeset is kept.

Type decisions:
1. per-cycle (JIT) cache, consulted first, reset after every seal
2. persistent (L2) cache, fed only by cacheable filters
3. type filters in priority order, first non-abstain vote wins
4. configured default when no filter has an opinion

Field decisions run once per seal over every field of every record. All
field filters are consulted for an uncached field: any deny removes it,
otherwise any approve keeps it, otherwise the default decides. The resolved
vote is cached for the seal call. A deny is promoted to L2 when a cacheable
filter cast it; an approve only when every field filter is cacheable, since a
non-cacheable filter may deny the same field later. The whole pass is skipped
when no field filter is registered.

Filter exceptions are not caught: they abort the cycle and reach the caller
of flush().
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, List, Tuple

from loguru import logger

from .cache import VerdictCache
from .exceptions import ChangesetSealedError
from .filters.base import FieldFilter, Vote, first_verdict
from .filters.provider import FilterProvider
from .models import Changeset, OperationType


class AuditProcessor(ABC):
    """Decision-making layer used by the unit of work."""

    @abstractmethod
    def is_type_auditable(self, operation: OperationType, entity_type: str) -> bool:
        """Early check whether records of this type should be created at all."""

    @abstractmethod
    def seal_changeset(self, changeset: Changeset) -> bool:
        """
        Last chance to edit the changeset before delivery.

        Returns True to approve and seal the changeset, False to discard it.
        """

    def reset_cycle(self) -> None:
        """Forget per-cycle state. Called when a cycle ends without a seal."""


class FilteredProcessor(AuditProcessor):
    """
    Processor driven by the filter chains of a FilterProvider.

    Usage:
        provider = FilterProvider("main")
        provider.add_type_filter(MatchTypeFilter.include_on_match_exclude_otherwise(
            MatchTypeFilter.build_index(["Invoice"])), priority=500)
        processor = FilteredProcessor(provider)

        processor.is_type_auditable(OperationType.CREATE, "Invoice")  # True
    """

    def __init__(
        self,
        filter_provider: FilterProvider,
        default_audit_type: bool = True,
        default_audit_field: bool = True,
    ):
        self.filter_provider = filter_provider
        self.default_audit_type = default_audit_type
        self.default_audit_field = default_audit_field

        self.jit_types = VerdictCache("jit-types")
        self.l2_types = VerdictCache("l2-types", verdicts_only=True)
        self.l2_fields = VerdictCache("l2-fields", verdicts_only=True)

        self._seal_count = 0
        self._discard_count = 0

    def is_type_auditable(self, operation: OperationType, entity_type: str) -> bool:
        key = (operation, entity_type)
        vote = self.jit_types.get(key)
        if vote is None:
            vote = self.l2_types.get(key)
            if vote is None:
                vote = self._ask_type_filters(key, operation, entity_type)
            self.jit_types.put(key, vote)

        return self._decide(vote, self.default_audit_type)

    def seal_changeset(self, changeset: Changeset) -> bool:
        if changeset.is_sealed:
            raise ChangesetSealedError(f'Changeset id="{changeset.id}" was already sealed')

        try:
            self._filter_fields(changeset)
            approved = self._filter_changeset(changeset)
        finally:
            # JIT answers are scoped to one accumulation cycle
            self.jit_types.clear()

        if approved:
            changeset.seal()
            self._seal_count += 1
        else:
            self._discard_count += 1

        logger.debug(
            "Changeset sealing decided",
            changeset_id=changeset.id,
            approved=approved,
            records=len(changeset),
        )
        return approved

    def reset_cycle(self) -> None:
        self.jit_types.clear()

    def get_stats(self) -> Dict[str, Any]:
        return {
            "sealed": self._seal_count,
            "discarded": self._discard_count,
            "jit_types": len(self.jit_types),
            "l2_types": len(self.l2_types),
            "l2_fields": len(self.l2_fields),
            "has_field_filters": self.filter_provider.has_field_filters,
        }

    def _ask_type_filters(
        self, key: Tuple[OperationType, str], operation: OperationType, entity_type: str
    ) -> Vote:
        ballots = (
            (f, f.is_type_auditable(operation, entity_type))
            for f in self.filter_provider.get_type_filters()
        )
        vote, voter = first_verdict(ballots)
        if voter is not None and self.filter_provider.is_cacheable(voter):
            self.l2_types.put(key, vote)
        return vote

    def _filter_fields(self, changeset: Changeset) -> None:
        # Scanning every field of every record is the expensive part of a seal
        if not self.filter_provider.has_field_filters:
            return

        jit_fields = VerdictCache("jit-fields")
        filters = self.filter_provider.get_field_filters()
        all_cacheable = all(self.filter_provider.is_cacheable(f) for f in filters)
        for record in changeset.records():
            for field_name in list(record.state_change):
                key = (record.operation, record.entity_type, field_name)
                vote = jit_fields.get(key)
                if vote is None:
                    vote = self.l2_fields.get(key)
                    if vote is None:
                        vote = self._ask_field_filters(filters, key, all_cacheable)
                    jit_fields.put(key, vote)

                if not self._decide(vote, self.default_audit_field):
                    del record.state_change[field_name]

    def _ask_field_filters(
        self,
        filters: List[FieldFilter],
        key: Tuple[OperationType, str, str],
        all_cacheable: bool,
    ) -> Vote:
        operation, entity_type, field_name = key
        cast: Dict[Vote, bool] = {}
        for f in filters:
            vote = f.is_field_auditable(operation, entity_type, field_name)
            if vote.is_verdict:
                cast[vote] = cast.get(vote, False) or self.filter_provider.is_cacheable(f)

        if Vote.DENY in cast:
            vote = Vote.DENY
        elif Vote.APPROVE in cast:
            vote = Vote.APPROVE
        else:
            return Vote.ABSTAIN

        # A cached deny stands whatever the others say later; a cached approve
        # would hide a later deny from a non-cacheable filter
        if cast[vote] and (vote is Vote.DENY or all_cacheable):
            self.l2_fields.put(key, vote)
        return vote

    def _filter_changeset(self, changeset: Changeset) -> bool:
        for f in self.filter_provider.get_changeset_filters():
            if not f.on_audit(changeset):
                logger.debug(
                    "Changeset rejected by filter",
                    changeset_id=changeset.id,
                    filter=type(f).__name__,
                )
                return False

        # Kept by default; discarding everything is done earlier and cheaper via
        # the type default
        return True

    @staticmethod
    def _decide(vote: Vote, default: bool) -> bool:
        if vote.is_verdict:
            return vote is Vote.APPROVE
        return default
