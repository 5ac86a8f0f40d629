"""
Tests for configuration loading and pipeline assembly.

Tests:
- Defaults and deep merge
- Validation errors carry pipeline/category/value context
- File loading errors
- build_pipeline / load_pipelines wiring
"""

from dataclasses import dataclass
from pathlib import Path
from unittest.mock import MagicMock

import pytest
import yaml

from auditpipe.config import Config, load_yaml, parse_config, registry_resolver
from auditpipe.exceptions import (
    ConfigFileNotFoundError,
    ConfigParseError,
    ConfigValidationError,
    PipelineStateError,
)
from auditpipe.factory import ProcessChangesetFactory
from auditpipe.filters import ChangesetFilter, MatchFieldFilter, MatchTypeFilter, PauseAuditFilter
from auditpipe.pipeline import build_pipeline, load_pipelines
from auditpipe.sinks import AuditSink, JsonlSink, LogSink, MemorySink


@dataclass
class Invoice:
    id: int
    total: int = 0


class Entity:
    pass


def write_config(directory, data) -> str:
    path = Path(directory) / "auditpipe.yaml"
    path.write_text(yaml.safe_dump(data))
    return str(path)


class TestParseConfig:
    """Tests for validation of raw configuration."""

    def test_defaults(self):
        config = parse_config({"pipelines": {"main": None}})
        main = config.pipelines["main"]

        assert main.deliver_empty is False
        assert main.filters.default.audit_type is True
        assert main.filters.default.audit_field is True
        assert main.filters.pause.enabled is False
        assert main.sink_entries() == [("log", None)]

    def test_partial_override_is_deep_merged(self):
        config = parse_config({"pipelines": {"main": {"filters": {"default": {"audit_field": False}}}}})

        defaults = config.pipelines["main"].filters.default
        assert defaults.audit_type is True
        assert defaults.audit_field is False

    def test_empty_document(self):
        assert parse_config({}).pipelines == {}

    def test_invalid_pipeline_name(self):
        with pytest.raises(ConfigValidationError) as exc_info:
            parse_config({"pipelines": {"bad-name": {}}})

        assert exc_info.value.pipeline == "bad-name"

    def test_unknown_key_reports_location(self):
        with pytest.raises(ConfigValidationError) as exc_info:
            parse_config({"pipelines": {"main": {"filters": {"only_types": ["A"]}}}})

        assert exc_info.value.pipeline == "main"
        assert "filters" in exc_info.value.category

    def test_only_include_and_only_exclude_are_exclusive(self):
        with pytest.raises(ConfigValidationError) as exc_info:
            parse_config({"pipelines": {"main": {"filters": {
                "only_include_types": ["A"],
                "only_exclude_types": ["B"],
            }}}})

        assert "not both" in str(exc_info.value)

    def test_duplicate_type_rejected(self):
        with pytest.raises(ConfigValidationError) as exc_info:
            parse_config({"pipelines": {"main": {"filters": {"exclude_types": ["A", "A"]}}}})

        assert exc_info.value.category == "exclude_types"
        assert exc_info.value.value == "A"

    def test_wildcard_key_normalized(self):
        config = parse_config({"pipelines": {"main": {"filters": {
            "exclude_fields": {"_any_": ["password"], "Customer": None},
        }}}})

        assert config.pipelines["main"].filters.exclude_fields == {"": ["password"], "Customer": None}

    def test_wildcard_without_fields_rejected(self):
        with pytest.raises(ConfigValidationError):
            parse_config({"pipelines": {"main": {"filters": {"exclude_fields": {"_any_": []}}}}})

    def test_invalid_field_name_rejected(self):
        with pytest.raises(ConfigValidationError) as exc_info:
            parse_config({"pipelines": {"main": {"filters": {"exclude_fields": {"Customer": ["no-dash"]}}}}})

        assert exc_info.value.value == "no-dash"

    def test_custom_sink_cannot_take_options(self):
        with pytest.raises(ConfigValidationError):
            parse_config({"pipelines": {"main": {"sinks": [{"warehouse": {"url": "x"}}]}}})

    def test_jsonl_requires_log_dir(self):
        with pytest.raises(ConfigValidationError):
            parse_config({"pipelines": {"main": {"sinks": ["jsonl"]}}})

    def test_type_resolver_rejects_unknown_types(self):
        resolver = registry_resolver(Invoice)

        with pytest.raises(ConfigValidationError) as exc_info:
            parse_config({"pipelines": {"main": {"filters": {"include_types": ["Ghost"]}}}}, resolver)

        assert exc_info.value.value == "Ghost"

    def test_type_resolver_rejects_unknown_fields(self):
        resolver = registry_resolver(Invoice)

        parse_config({"pipelines": {"main": {"filters": {"exclude_fields": {"Invoice": ["total"]}}}}}, resolver)
        with pytest.raises(ConfigValidationError):
            parse_config(
                {"pipelines": {"main": {"filters": {"exclude_fields": {"Invoice": ["missing"]}}}}}, resolver
            )


class TestLoadFromFile:
    def test_missing_file(self, temp_log_dir):
        with pytest.raises(ConfigFileNotFoundError):
            Config.load_from_file(f"{temp_log_dir}/nope.yaml")

    def test_malformed_yaml(self, temp_log_dir):
        path = Path(temp_log_dir) / "broken.yaml"
        path.write_text("pipelines: [unclosed\n")

        with pytest.raises(ConfigParseError):
            Config.load_from_file(str(path))

    def test_validation_error_names_file(self, temp_log_dir):
        path = write_config(temp_log_dir, {"pipelines": {"main": {"deliver_empty": "sometimes"}}})

        with pytest.raises(ConfigValidationError) as exc_info:
            Config.load_from_file(path)

        assert exc_info.value.config_path == path
        assert path in str(exc_info.value)

    def test_duplicate_type_entry_rejected(self, temp_log_dir):
        path = Path(temp_log_dir) / "auditpipe.yaml"
        path.write_text(
            "pipelines:\n"
            "  main:\n"
            "    filters:\n"
            "      exclude_fields:\n"
            "        Customer: [password]\n"
            "        Customer: [notes]\n"
        )

        with pytest.raises(ConfigValidationError) as exc_info:
            Config.load_from_file(str(path))

        error = exc_info.value
        assert error.pipeline == "main"
        assert error.category == "exclude_fields"
        assert error.value == "Customer"
        assert error.details["line"] == 6
        assert error.config_path == str(path)

    def test_duplicate_pipeline_rejected(self, temp_log_dir):
        path = Path(temp_log_dir) / "auditpipe.yaml"
        path.write_text("pipelines:\n  main: {}\n  main: {deliver_empty: true}\n")

        with pytest.raises(ConfigValidationError) as exc_info:
            Config.load_from_file(str(path))

        assert exc_info.value.pipeline == "main"
        assert exc_info.value.category is None

    def test_load_yaml_matches_safe_load(self):
        text = "pipelines:\n  main:\n    sinks: [log, {jsonl: {log_dir: /tmp}}]\n"

        assert load_yaml(text) == yaml.safe_load(text)
        assert load_yaml("") is None

    def test_path_from_environment(self, temp_log_dir, monkeypatch):
        path = write_config(temp_log_dir, {"pipelines": {"main": {}}})
        monkeypatch.setenv("AUDITPIPE_CONFIG", path)

        assert "main" in Config.load_from_file().pipelines


class TestBuildPipeline:
    """Tests for assembling pipelines from configuration."""

    def build(self, raw, **kwargs):
        config = parse_config({"pipelines": {"main": raw}})
        return build_pipeline("main", config.pipelines["main"], **kwargs)

    def test_match_filters_registered_with_priorities(self):
        pipeline = self.build({
            "sinks": ["memory"],
            "filters": {
                "only_include_types": ["Invoice", "Customer"],
                "exclude_types": ["Customer"],
                "exclude_fields": {"_any_": ["password"]},
            },
        })
        type_filters = pipeline.filter_provider.get_type_filters()

        assert all(isinstance(f, MatchTypeFilter) for f in type_filters)
        assert len(type_filters) == 2
        assert isinstance(pipeline.filter_provider.get_field_filters()[0], MatchFieldFilter)

        uow = pipeline.unit_of_work
        assert uow.on_create(Entity(), "Invoice") is not None
        assert uow.on_create(Entity(), "Customer") is None
        assert uow.on_create(Entity(), "Session") is None

    def test_end_to_end_delivery(self):
        pipeline = self.build({
            "sinks": ["memory"],
            "filters": {"exclude_fields": {"_any_": ["password"]}},
        })
        record = pipeline.unit_of_work.on_create(Entity(), "User")
        record.set_field("password", None, "s3cret")
        record.set_field("name", None, "alice")

        pipeline.unit_of_work.flush()

        memory = pipeline.sink.sinks[0]
        assert memory.records[0].new_state == {"name": "alice"}

    def test_builtin_sinks(self, temp_log_dir):
        pipeline = self.build({"sinks": ["memory", "log", {"jsonl": {"log_dir": temp_log_dir}}]})

        kinds = [type(s) for s in pipeline.sink.sinks]
        assert kinds == [MemorySink, LogSink, JsonlSink]
        pipeline.sink.sinks[2].close()

    def test_custom_sink(self):
        warehouse = MagicMock(spec=AuditSink)
        pipeline = self.build({"sinks": ["warehouse"]}, custom_sinks={"warehouse": warehouse})

        pipeline.unit_of_work.on_create(Entity(), "Invoice")
        pipeline.unit_of_work.flush()

        warehouse.commit_audit.assert_called_once()

    def test_unknown_sink(self):
        with pytest.raises(ConfigValidationError):
            self.build({"sinks": ["warehouse"]})

    def test_invalid_sink_option(self):
        with pytest.raises(ConfigValidationError):
            self.build({"sinks": [{"log": {"colour": "red"}}]})

    def test_pause(self):
        pipeline = self.build({"sinks": ["memory"], "filters": {"pause": {"enabled": True}}})
        assert isinstance(pipeline.pause_filter, PauseAuditFilter)

        pipeline.pause_audit(reason="bulk import")
        assert pipeline.unit_of_work.on_create(Entity(), "Invoice") is None

        pipeline.resume_audit()
        pipeline.unit_of_work.flush()
        assert pipeline.unit_of_work.on_create(Entity(), "Invoice") is not None

    def test_pause_disabled(self):
        pipeline = self.build({"sinks": ["memory"]})

        with pytest.raises(PipelineStateError):
            pipeline.pause_audit()

    def test_extra_filters_and_factory(self):
        reject = MagicMock(spec=ChangesetFilter)
        reject.on_audit.return_value = False
        factory = ProcessChangesetFactory()

        pipeline = self.build(
            {"sinks": ["memory"], "deliver_empty": True},
            changeset_factory=factory,
            extra_filters=[(reject, 10)],
        )

        assert pipeline.unit_of_work.changeset_factory is factory
        assert pipeline.unit_of_work.deliver_empty is True
        pipeline.unit_of_work.on_create(Entity(), "Invoice")
        pipeline.unit_of_work.flush()
        assert len(pipeline.sink.sinks[0]) == 0

    def test_defaults_passed_to_processor(self):
        pipeline = self.build({"sinks": ["memory"], "filters": {"default": {"audit_type": False}}})

        assert pipeline.processor.default_audit_type is False
        assert pipeline.unit_of_work.on_create(Entity(), "Invoice") is None


class TestLoadPipelines:
    def test_load_pipelines(self, temp_log_dir):
        path = write_config(temp_log_dir, {"pipelines": {
            "main": {"sinks": ["memory"]},
            "billing": {"sinks": ["memory"], "filters": {"only_include_types": ["Invoice"]}},
        }})

        pipelines = load_pipelines(path)

        assert set(pipelines) == {"main", "billing"}
        assert pipelines["billing"].unit_of_work.name == "billing"
        assert pipelines["billing"].unit_of_work.on_create(Entity(), "Customer") is None
