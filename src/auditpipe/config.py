"""
Central configuration for audit pipelines.

Configuration is a YAML document with one entry per pipeline:

    pipelines:
      main:
        deliver_empty: false
        filters:
          default: {audit_type: true, audit_field: true}
          only_include_types: [Invoice, Customer]
          exclude_fields:
            _any_: [password]
            Customer: [notes]
        sinks:
          - log
          - jsonl: {log_dir: /var/log/auditpipe}

Everything is validated when loaded. Errors name the pipeline, the section
and the offending value so the file can be fixed without reading code.
"""

import os
import re
from pathlib import Path
from typing import Any, Callable, Dict, List, Literal, Mapping, Optional, Tuple, Union

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .exceptions import (
    ConfigFileNotFoundError,
    ConfigParseError,
    ConfigurationError,
    ConfigValidationError,
)

TypeResolver = Callable[[str], Optional[type]]
SinkEntry = Union[str, Dict[str, Optional[Dict[str, Any]]]]


class Config:
    """Configuration constants and file loading."""

    DEFAULT_CONFIG_PATH = "auditpipe.yaml"

    # Pseudo-type standing for "any type" in field filter trees
    WILDCARD_TYPE = "_any_"

    # Built-in filter priorities, higher runs first
    EXCLUDE_FILTER_PRIORITY = 520
    INCLUDE_FILTER_PRIORITY = 510
    ONLY_FILTER_PRIORITY = 500
    PAUSE_FILTER_PRIORITY = 1000

    PIPELINE_NAME_PATTERN = re.compile(r"^[A-Za-z0-9_]+$")
    FIELD_NAME_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")

    BUILTIN_SINKS = ("memory", "log", "jsonl")

    @classmethod
    def load_from_file(
        cls, config_path: Optional[str] = None, type_resolver: Optional[TypeResolver] = None
    ) -> "AuditConfig":
        """Load and validate configuration from a YAML file.

        Args:
            config_path: Path to configuration file. Defaults to $AUDITPIPE_CONFIG
                or auditpipe.yaml
            type_resolver: Optional lookup from type name to class, enabling
                checks that referenced types and fields exist

        Returns:
            Validated configuration
        """
        if config_path is None:
            config_path = os.getenv("AUDITPIPE_CONFIG", cls.DEFAULT_CONFIG_PATH)

        config_file = Path(config_path)
        if not config_file.exists():
            raise ConfigFileNotFoundError(str(config_path))

        try:
            with open(config_file, "r") as f:
                data = load_yaml(f) or {}
            return parse_config(data, type_resolver=type_resolver)
        except yaml.YAMLError as e:
            raise ConfigParseError(str(config_path), str(e))
        except ConfigurationError as e:
            raise e.with_config_path(str(config_path))

    @classmethod
    def get_defaults(cls) -> Dict[str, Any]:
        return {
            "deliver_empty": False,
            "changeset_factory": "context",
            "filters": {
                "default": {"audit_type": True, "audit_field": True},
                "pause": {"enabled": False, "log_pauses": True},
            },
            "sinks": ["log"],
        }

    @staticmethod
    def _deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
        """Deep merge two dictionaries."""
        result = base.copy()
        for key, value in override.items():
            if key in result and isinstance(result[key], dict) and isinstance(value, dict):
                result[key] = Config._deep_merge(result[key], value)
            else:
                result[key] = value
        return result


class FilterDefaults(BaseModel):
    """Tie-breakers used when every filter abstains."""

    model_config = ConfigDict(extra="forbid")

    audit_type: bool = True
    audit_field: bool = True


class PauseConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    enabled: bool = False
    log_pauses: bool = True


class FiltersConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    default: FilterDefaults = Field(default_factory=FilterDefaults)

    # Types
    only_include_types: List[str] = Field(default_factory=list)
    only_exclude_types: List[str] = Field(default_factory=list)
    include_types: List[str] = Field(default_factory=list)
    exclude_types: List[str] = Field(default_factory=list)

    # Fields: {type or "_any_": [field, ...]}; no fields means every field of the type
    only_include_fields: Dict[str, Optional[List[str]]] = Field(default_factory=dict)
    only_exclude_fields: Dict[str, Optional[List[str]]] = Field(default_factory=dict)
    include_fields: Dict[str, Optional[List[str]]] = Field(default_factory=dict)
    exclude_fields: Dict[str, Optional[List[str]]] = Field(default_factory=dict)

    pause: PauseConfig = Field(default_factory=PauseConfig)

    def type_lists(self) -> Dict[str, List[str]]:
        return {
            "only_include_types": self.only_include_types,
            "only_exclude_types": self.only_exclude_types,
            "include_types": self.include_types,
            "exclude_types": self.exclude_types,
        }

    def field_trees(self) -> Dict[str, Dict[str, Optional[List[str]]]]:
        return {
            "only_include_fields": self.only_include_fields,
            "only_exclude_fields": self.only_exclude_fields,
            "include_fields": self.include_fields,
            "exclude_fields": self.exclude_fields,
        }


class PipelineConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    deliver_empty: bool = False
    changeset_factory: Literal["context", "process"] = "context"
    filters: FiltersConfig = Field(default_factory=FiltersConfig)
    sinks: List[SinkEntry] = Field(default_factory=lambda: ["log"])

    def sink_entries(self) -> List[Tuple[str, Optional[Dict[str, Any]]]]:
        """Normalize sinks to (name, options) pairs."""
        entries = []
        for entry in self.sinks:
            if isinstance(entry, str):
                entries.append((entry, None))
            else:
                name, options = next(iter(entry.items()))
                entries.append((name, options))
        return entries


class AuditConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    pipelines: Dict[str, PipelineConfig] = Field(default_factory=dict)


def load_yaml(stream: Any) -> Any:
    """Parse a YAML document like yaml.safe_load, rejecting repeated mapping keys.

    PyYAML keeps the last of two equal keys, which would silently drop a
    filter entry such as a second ``Customer`` under ``exclude_fields``.
    """
    loader = yaml.SafeLoader(stream)
    try:
        node = loader.get_single_node()
        if node is None:
            return None
        _check_duplicate_keys(node, ())
        return loader.construct_document(node)
    finally:
        loader.dispose()


def _check_duplicate_keys(node: yaml.Node, path: Tuple[Any, ...]) -> None:
    if isinstance(node, yaml.SequenceNode):
        for i, item in enumerate(node.value):
            _check_duplicate_keys(item, path + (i,))
        return
    if not isinstance(node, yaml.MappingNode):
        return

    seen: Dict[str, int] = {}
    for key_node, value_node in node.value:
        if not isinstance(key_node, yaml.ScalarNode) or key_node.tag == "tag:yaml.org,2002:merge":
            _check_duplicate_keys(value_node, path)
            continue

        key = key_node.value
        line = key_node.start_mark.line + 1
        if key in seen:
            full = path + (key,)
            pipeline = full[1] if len(full) > 1 and full[0] == "pipelines" else None
            if len(full) > 3 and full[2] == "filters":
                category = full[3]
            else:
                category = full[2] if len(full) > 2 else None
            raise ConfigValidationError(
                f"Duplicate key on line {line}, first defined on line {seen[key]}",
                pipeline=pipeline,
                category=category,
                value=key,
                details={"path": list(full), "line": line},
            )
        seen[key] = line
        _check_duplicate_keys(value_node, path + (key,))


def parse_config(data: Mapping[str, Any], type_resolver: Optional[TypeResolver] = None) -> AuditConfig:
    """Validate a raw configuration mapping (e.g. parsed YAML)."""
    if not isinstance(data, Mapping):
        raise ConfigValidationError("Configuration root must be a mapping", value=type(data).__name__)

    pipelines = data.get("pipelines") or {}
    if not isinstance(pipelines, Mapping):
        raise ConfigValidationError("\"pipelines\" must be a mapping of name to pipeline", category="pipelines")

    merged = {}
    for name, raw in pipelines.items():
        if not isinstance(name, str) or not Config.PIPELINE_NAME_PATTERN.match(name):
            raise ConfigValidationError(
                "Pipeline name may contain only alphanumeric characters and underscores",
                pipeline=str(name),
                value=name,
            )
        if raw is not None and not isinstance(raw, Mapping):
            raise ConfigValidationError("Pipeline configuration must be a mapping", pipeline=name)
        merged[name] = Config._deep_merge(Config.get_defaults(), dict(raw or {}))

    try:
        config = AuditConfig(pipelines=merged)
    except ValidationError as e:
        raise _from_validation_error(e)

    for name, pipeline in config.pipelines.items():
        validate_pipeline(name, pipeline, type_resolver=type_resolver)
    return config


def validate_pipeline(
    name: str, pipeline: PipelineConfig, type_resolver: Optional[TypeResolver] = None
) -> PipelineConfig:
    """Check the rules pydantic cannot express; normalizes wildcard keys in place."""
    filters = pipeline.filters

    for kind in ("types", "fields"):
        only_include = getattr(filters, f"only_include_{kind}")
        only_exclude = getattr(filters, f"only_exclude_{kind}")
        if only_include and only_exclude:
            raise ConfigValidationError(
                f'Use either "only_include_{kind}" or "only_exclude_{kind}", not both. '
                f'Did you mean "include_{kind}" and "exclude_{kind}"?',
                pipeline=name,
                category=f"only_include_{kind}",
            )

    for category, types in filters.type_lists().items():
        seen = set()
        for type_name in types:
            if not type_name:
                raise ConfigValidationError("Type name cannot be empty", pipeline=name, category=category)
            if type_name in seen:
                raise ConfigValidationError(
                    "Type is defined more than once", pipeline=name, category=category, value=type_name
                )
            seen.add(type_name)
            _resolve_type(type_resolver, type_name, name, category)

    for category, tree in filters.field_trees().items():
        setattr(filters, category, _normalize_field_tree(tree, name, category, type_resolver))

    for entry in pipeline.sinks:
        if isinstance(entry, dict) and len(entry) != 1:
            raise ConfigValidationError(
                "A sink entry with options must name exactly one sink",
                pipeline=name,
                category="sinks",
                value=list(entry),
            )

    for sink_name, options in pipeline.sink_entries():
        if options is not None and sink_name not in Config.BUILTIN_SINKS:
            raise ConfigValidationError(
                f'Sink "{sink_name}" is not one of the built-in ones '
                f'({", ".join(Config.BUILTIN_SINKS)}) so it cannot take options',
                pipeline=name,
                category="sinks",
                value=options,
            )
        if sink_name == "jsonl" and not (options or {}).get("log_dir"):
            raise ConfigValidationError(
                'The "jsonl" sink requires a "log_dir" option', pipeline=name, category="sinks"
            )

    return pipeline


def _normalize_field_tree(
    tree: Dict[str, Optional[List[str]]],
    pipeline: str,
    category: str,
    type_resolver: Optional[TypeResolver],
) -> Dict[str, Optional[List[str]]]:
    normalized: Dict[str, Optional[List[str]]] = {}
    for type_name, fields in tree.items():
        fields = list(fields or [])
        is_wildcard = type_name in (Config.WILDCARD_TYPE, "")

        if is_wildcard and not fields:
            raise ConfigValidationError(
                f'The wildcard type ("{Config.WILDCARD_TYPE}") needs at least one field',
                pipeline=pipeline,
                category=category,
            )

        for field_name in fields:
            if not isinstance(field_name, str) or not Config.FIELD_NAME_PATTERN.match(field_name):
                raise ConfigValidationError(
                    f'Invalid field name for type "{type_name}"',
                    pipeline=pipeline,
                    category=category,
                    value=field_name,
                )

        key = "" if is_wildcard else type_name
        if key in normalized:
            raise ConfigValidationError(
                "Type is defined more than once", pipeline=pipeline, category=category, value=type_name
            )

        if not is_wildcard:
            cls = _resolve_type(type_resolver, type_name, pipeline, category)
            if cls is not None:
                for field_name in fields:
                    if not _has_field(cls, field_name):
                        raise ConfigValidationError(
                            f'Type "{type_name}" has no field named "{field_name}"',
                            pipeline=pipeline,
                            category=category,
                            value=field_name,
                        )

        normalized[key] = fields or None
    return normalized


def _resolve_type(
    type_resolver: Optional[TypeResolver], type_name: str, pipeline: str, category: str
) -> Optional[type]:
    if type_resolver is None:
        return None

    cls = type_resolver(type_name)
    if cls is None:
        raise ConfigValidationError("Unknown type", pipeline=pipeline, category=category, value=type_name)
    return cls


def _has_field(cls: type, field_name: str) -> bool:
    if hasattr(cls, field_name):
        return True
    for klass in cls.__mro__:
        if field_name in getattr(klass, "__annotations__", {}):
            return True
        if field_name in getattr(klass, "__slots__", ()):
            return True
    return False


def _from_validation_error(error: ValidationError) -> ConfigValidationError:
    first = error.errors()[0]
    loc = [str(part) for part in first.get("loc", ())]
    pipeline = loc[1] if len(loc) > 1 and loc[0] == "pipelines" else None
    category = ".".join(loc[2:]) or None
    return ConfigValidationError(
        first.get("msg", "Invalid configuration"),
        pipeline=pipeline,
        category=category,
        value=first.get("input"),
        details={"errors": error.errors()},
    )


def registry_resolver(*classes: type) -> TypeResolver:
    """Type resolver over an explicit set of entity classes, keyed by class name."""
    registry = {cls.__name__: cls for cls in classes}
    return registry.get
