"""
Filter Provider

Holds the filter registrations of one pipeline and materializes the three
ordered chains (type, field, changeset) on first use. Registrations may be
filter instances or zero-argument factories; factories are only called when
their chain is first requested, and never again for the pipeline's lifetime.

Chains are ordered by priority, highest first. Equal priorities keep their
registration order.
"""

from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Union

from loguru import logger

from ..exceptions import PipelineStateError
from .base import ChangesetFilter, FieldFilter, TypeFilter, is_cacheable

TYPE_CHAIN = "type"
FIELD_CHAIN = "field"
CHANGESET_CHAIN = "changeset"

_CAPABILITIES = {
    TYPE_CHAIN: TypeFilter,
    FIELD_CHAIN: FieldFilter,
    CHANGESET_CHAIN: ChangesetFilter,
}

FilterSource = Union[object, Callable[[], object]]


@dataclass
class _Registration:
    source: FilterSource
    priority: int
    sequence: int


class FilterProvider:
    """Lazily materialized, priority-ordered filter chains."""

    def __init__(self, name: str = "default"):
        self.name = name
        self._registrations: Dict[str, List[_Registration]] = {key: [] for key in _CAPABILITIES}
        self._chains: Dict[str, List[Any]] = {}
        self._cacheable_classes: Dict[type, bool] = {}
        self._sequence = 0

    def __repr__(self) -> str:
        counts = ", ".join(f"{key}={len(regs)}" for key, regs in self._registrations.items())
        return f"<FilterProvider {self.name} {counts}>"

    def add_type_filter(self, source: FilterSource, priority: int = 0) -> "FilterProvider":
        return self._register(TYPE_CHAIN, source, priority)

    def add_field_filter(self, source: FilterSource, priority: int = 0) -> "FilterProvider":
        return self._register(FIELD_CHAIN, source, priority)

    def add_changeset_filter(self, source: FilterSource, priority: int = 0) -> "FilterProvider":
        return self._register(CHANGESET_CHAIN, source, priority)

    def add_filter(self, filter_obj: object, priority: int = 0) -> "FilterProvider":
        """Register an instance in every chain whose capability it implements."""
        matched = False
        for chain, capability in _CAPABILITIES.items():
            if isinstance(filter_obj, capability):
                self._register(chain, filter_obj, priority)
                matched = True

        if not matched:
            raise TypeError(f"{type(filter_obj).__name__} implements no filter capability")
        return self

    @property
    def has_field_filters(self) -> bool:
        """Known without materializing (and thus instantiating) any field filter."""
        return len(self._registrations[FIELD_CHAIN]) > 0

    def get_type_filters(self) -> List[TypeFilter]:
        return self._materialize(TYPE_CHAIN)

    def get_field_filters(self) -> List[FieldFilter]:
        return self._materialize(FIELD_CHAIN)

    def get_changeset_filters(self) -> List[ChangesetFilter]:
        return self._materialize(CHANGESET_CHAIN)

    def is_cacheable(self, filter_obj: object) -> bool:
        """Cacheability depends on the filter's class only, so it is memoized per class."""
        cls = type(filter_obj)
        cached = self._cacheable_classes.get(cls)
        if cached is None:
            cached = self._cacheable_classes[cls] = is_cacheable(filter_obj)
        return cached

    def _register(self, chain: str, source: FilterSource, priority: int) -> "FilterProvider":
        if chain in self._chains:
            raise PipelineStateError(
                f'Cannot add a {chain} filter to pipeline "{self.name}" after its chain was materialized'
            )

        self._sequence += 1
        self._registrations[chain].append(_Registration(source, priority, self._sequence))
        return self

    def _materialize(self, chain: str) -> List[Any]:
        filters = self._chains.get(chain)
        if filters is not None:
            return filters

        capability = _CAPABILITIES[chain]
        ordered = sorted(self._registrations[chain], key=lambda reg: (-reg.priority, reg.sequence))
        filters = []
        for reg in ordered:
            filter_obj = reg.source
            if not isinstance(filter_obj, capability) and callable(filter_obj):
                filter_obj = filter_obj()
            if not isinstance(filter_obj, capability):
                raise TypeError(
                    f"{type(filter_obj).__name__} registered as a {chain} filter in "
                    f'pipeline "{self.name}" is not a {capability.__name__}'
                )
            self.is_cacheable(filter_obj)
            filters.append(filter_obj)

        self._chains[chain] = filters
        logger.debug(
            "Materialized filter chain",
            pipeline=self.name,
            chain=chain,
            filters=[type(f).__name__ for f in filters],
        )
        return filters
