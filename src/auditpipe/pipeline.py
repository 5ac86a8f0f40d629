"""
Pipeline assembly.

Turns a validated PipelineConfig into a ready unit of work: match filters are
registered at their built-in priorities, the processor gets the configured
defaults and the sinks are chained in configuration order.

    pipelines = load_pipelines("auditpipe.yaml")
    uow = pipelines["main"].unit_of_work
"""

from dataclasses import dataclass
from typing import Any, Dict, Iterable, Mapping, Optional

from loguru import logger

from .config import AuditConfig, Config, PipelineConfig, TypeResolver
from .exceptions import ConfigValidationError, PipelineStateError
from .factory import ChangesetFactory, ContextChangesetFactory, ProcessChangesetFactory
from .filters.match import MatchFieldFilter, MatchTypeFilter
from .filters.pause import PauseAuditFilter
from .filters.provider import FilterProvider
from .processor import FilteredProcessor
from .sinks import AuditSink, ChainSink, JsonlSink, LogSink, MemorySink
from .unit_of_work import AuditUnitOfWork

_CHANGESET_FACTORIES = {
    "context": ContextChangesetFactory,
    "process": ProcessChangesetFactory,
}

_BUILTIN_SINKS = {
    "memory": MemorySink,
    "log": LogSink,
    "jsonl": JsonlSink,
}


@dataclass
class Pipeline:
    """The assembled parts of one named pipeline."""

    name: str
    unit_of_work: AuditUnitOfWork
    processor: FilteredProcessor
    filter_provider: FilterProvider
    sink: ChainSink
    pause_filter: Optional[PauseAuditFilter] = None

    def pause_audit(self, reason: Optional[str] = None) -> None:
        if self.pause_filter is None:
            raise PipelineStateError(f'Pausing is not enabled for pipeline "{self.name}"')
        self.pause_filter.pause_audit(reason)

    def resume_audit(self) -> None:
        if self.pause_filter is not None:
            self.pause_filter.resume_audit()


def build_pipeline(
    name: str,
    config: PipelineConfig,
    custom_sinks: Optional[Mapping[str, AuditSink]] = None,
    changeset_factory: Optional[ChangesetFactory] = None,
    extra_filters: Iterable[Any] = (),
) -> Pipeline:
    """
    Assemble a pipeline from its configuration.

    Args:
        name: Pipeline name, used in logs and errors
        config: Validated pipeline configuration
        custom_sinks: Application sinks referenced by name in `sinks`
        changeset_factory: Overrides the configured changeset factory
        extra_filters: Application filters, either instances or
            (filter, priority) pairs; registered in every chain they support
    """
    provider = FilterProvider(name)
    filters = config.filters

    pause_filter = None
    if filters.pause.enabled:
        pause_filter = PauseAuditFilter(log_pauses=filters.pause.log_pauses)
        provider.add_filter(pause_filter, Config.PAUSE_FILTER_PRIORITY)

    register_match_filters(provider, config)

    for extra in extra_filters:
        if isinstance(extra, tuple):
            provider.add_filter(*extra)
        else:
            provider.add_filter(extra)

    processor = FilteredProcessor(
        provider,
        default_audit_type=filters.default.audit_type,
        default_audit_field=filters.default.audit_field,
    )
    sink = build_sink(name, config, custom_sinks)

    if changeset_factory is None:
        changeset_factory = _CHANGESET_FACTORIES[config.changeset_factory]()

    unit_of_work = AuditUnitOfWork(
        changeset_factory,
        processor,
        sink,
        deliver_empty=config.deliver_empty,
        name=name,
    )

    logger.info(
        "Audit pipeline ready",
        pipeline=name,
        sinks=[type(s).__name__ for s in sink.sinks],
        pause=pause_filter is not None,
    )
    return Pipeline(name, unit_of_work, processor, provider, sink, pause_filter)


def register_match_filters(provider: FilterProvider, config: PipelineConfig) -> None:
    """Register the configured type and field match filters."""
    filters = config.filters

    type_policies = (
        ("only_include_types", MatchTypeFilter.include_on_match_exclude_otherwise, Config.ONLY_FILTER_PRIORITY),
        ("only_exclude_types", MatchTypeFilter.exclude_on_match_include_otherwise, Config.ONLY_FILTER_PRIORITY),
        ("include_types", MatchTypeFilter.include_on_match_abstain_otherwise, Config.INCLUDE_FILTER_PRIORITY),
        ("exclude_types", MatchTypeFilter.exclude_on_match_abstain_otherwise, Config.EXCLUDE_FILTER_PRIORITY),
    )
    for category, policy, priority in type_policies:
        types = getattr(filters, category)
        if types:
            provider.add_type_filter(policy(MatchTypeFilter.build_index(types)), priority)

    field_policies = (
        ("only_include_fields", MatchFieldFilter.include_on_match_exclude_otherwise, Config.ONLY_FILTER_PRIORITY),
        ("only_exclude_fields", MatchFieldFilter.exclude_on_match_include_otherwise, Config.ONLY_FILTER_PRIORITY),
        ("include_fields", MatchFieldFilter.include_on_match_abstain_otherwise, Config.INCLUDE_FILTER_PRIORITY),
        ("exclude_fields", MatchFieldFilter.exclude_on_match_abstain_otherwise, Config.EXCLUDE_FILTER_PRIORITY),
    )
    for category, policy, priority in field_policies:
        tree = getattr(filters, category)
        if tree:
            provider.add_field_filter(policy(MatchFieldFilter.build_index(tree)), priority)


def build_sink(
    name: str, config: PipelineConfig, custom_sinks: Optional[Mapping[str, AuditSink]] = None
) -> ChainSink:
    custom_sinks = custom_sinks or {}
    sinks = []
    for sink_name, options in config.sink_entries():
        options = options or {}
        if sink_name in custom_sinks:
            sinks.append(custom_sinks[sink_name])
        elif sink_name in _BUILTIN_SINKS:
            try:
                sinks.append(_BUILTIN_SINKS[sink_name](**options))
            except TypeError as e:
                raise ConfigValidationError(
                    f"Invalid sink options: {e}", pipeline=name, category="sinks", value=options
                )
        else:
            raise ConfigValidationError("Unknown sink", pipeline=name, category="sinks", value=sink_name)
    return ChainSink(sinks)


def build_pipelines(
    config: AuditConfig,
    custom_sinks: Optional[Mapping[str, AuditSink]] = None,
) -> Dict[str, Pipeline]:
    return {
        name: build_pipeline(name, pipeline_config, custom_sinks=custom_sinks)
        for name, pipeline_config in config.pipelines.items()
    }


def load_pipelines(
    config_path: Optional[str] = None,
    custom_sinks: Optional[Mapping[str, AuditSink]] = None,
    type_resolver: Optional[TypeResolver] = None,
) -> Dict[str, Pipeline]:
    """Load a configuration file and assemble every pipeline it defines."""
    config = Config.load_from_file(config_path, type_resolver=type_resolver)
    return build_pipelines(config, custom_sinks=custom_sinks)
