"""
auditpipe: transactional audit pipeline

Collects entity changes of one logical transaction into a changeset, filters
them through prioritized type/field/changeset filters and delivers the sealed
changeset to one or more sinks:

- Unit of work: one changeset per transaction, re-entrancy safe while flushing
- Processor: three-valued filter votes with per-cycle and persistent caches
- Sinks: in-memory, loguru and hash-chained JSONL files
- Configuration: validated YAML, one entry per named pipeline
"""

from .config import AuditConfig, Config, PipelineConfig, parse_config
from .exceptions import (
    AuditError,
    ChangesetSealedError,
    ConfigFileNotFoundError,
    ConfigParseError,
    ConfigurationError,
    ConfigValidationError,
    DuplicateRecordError,
    InvariantViolationError,
    PipelineStateError,
    RecordNotFoundError,
)
from .factory import (
    ChangesetFactory,
    ContextChangesetFactory,
    ProcessChangesetFactory,
    bind_principal,
    bind_request,
)
from .models import (
    Changeset,
    CliTrigger,
    EntityRecord,
    HttpTrigger,
    OpaqueTrigger,
    OperationType,
    Trigger,
    User,
)
from .pipeline import Pipeline, build_pipeline, load_pipelines
from .processor import AuditProcessor, FilteredProcessor
from .producers import SnapshotProducer, take_snapshot
from .records import AuditRecord
from .unit_of_work import AuditUnitOfWork, UnitOfWork, UnitOfWorkState

__version__ = "0.1.0"

__all__ = [
    # Core
    "AuditUnitOfWork",
    "UnitOfWork",
    "UnitOfWorkState",
    "AuditProcessor",
    "FilteredProcessor",
    "Changeset",
    "EntityRecord",
    "OperationType",
    "User",
    "Trigger",
    "CliTrigger",
    "HttpTrigger",
    "OpaqueTrigger",
    "AuditRecord",
    # Changeset factories
    "ChangesetFactory",
    "ContextChangesetFactory",
    "ProcessChangesetFactory",
    "bind_principal",
    "bind_request",
    # Producers
    "SnapshotProducer",
    "take_snapshot",
    # Configuration
    "AuditConfig",
    "Config",
    "PipelineConfig",
    "parse_config",
    "Pipeline",
    "build_pipeline",
    "load_pipelines",
    # Errors
    "AuditError",
    "ChangesetSealedError",
    "ConfigFileNotFoundError",
    "ConfigParseError",
    "ConfigurationError",
    "ConfigValidationError",
    "DuplicateRecordError",
    "InvariantViolationError",
    "PipelineStateError",
    "RecordNotFoundError",
]
