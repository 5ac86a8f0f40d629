"""
Tests for the audit unit of work.

Tests:
- Lazy changeset creation and record merging
- Flush lifecycle, delivery policy and reset
- Re-entrant notifications while flushing
- End-to-end filtering scenarios
"""

from datetime import datetime, timezone
from unittest.mock import MagicMock

import pytest

from auditpipe.filters import ChangesetFilter, MatchFieldFilter, MatchTypeFilter, PauseAuditFilter
from auditpipe.models import OperationType, User
from auditpipe.sinks import AuditSink
from auditpipe.unit_of_work import UnitOfWorkState


class Entity:
    pass


class ReentrantSink(AuditSink):
    """Writes its audit through the audited storage, like a database sink would."""

    def __init__(self):
        self.uow = None
        self.reentrant_results = []
        self.delivered = []

    def commit_audit(self, changeset):
        self.delivered.append(changeset)
        self.reentrant_results.append(self.uow.on_create(Entity(), "AuditRow"))
        self.uow.flush()


class TestTracking:
    """Tests for change notifications."""

    def test_starts_idle(self, make_uow):
        uow = make_uow()

        assert uow.state is UnitOfWorkState.IDLE
        assert uow.get_changeset() is None

    def test_first_notification_opens_changeset(self, make_uow, changeset_factory):
        uow = make_uow()

        record = uow.on_create(Entity(), "Invoice")

        assert record is not None
        assert uow.state is UnitOfWorkState.ACCUMULATING
        assert uow.get_changeset() is record.changeset
        assert changeset_factory.created == 1

    def test_changeset_reused_within_transaction(self, make_uow, changeset_factory):
        uow = make_uow()

        first = uow.on_create(Entity(), "Invoice")
        second = uow.on_update(Entity(), "Invoice")

        assert first.changeset is second.changeset
        assert changeset_factory.created == 1

    def test_repeated_notification_returns_same_record(self, make_uow):
        uow = make_uow()
        entity = Entity()

        first = uow.on_update(entity, "Invoice")
        first_stamp = first.timestamp
        second = uow.on_update(entity, "Invoice")

        assert second is first
        assert second.timestamp >= first_stamp
        assert len(uow.get_changeset()) == 1

    def test_each_operation_gets_its_own_record(self, make_uow):
        uow = make_uow()
        entity = Entity()

        records = [
            uow.on_create(entity, "Invoice"),
            uow.on_read(entity, "Invoice"),
            uow.on_update(entity, "Invoice"),
            uow.on_delete(entity, "Invoice"),
            uow.on_snapshot(entity, "Invoice"),
        ]

        assert [r.operation for r in records] == list(OperationType)
        assert len(uow.get_changeset()) == 5

    def test_non_auditable_type_returns_none(self, make_uow, provider, changeset_factory):
        provider.add_type_filter(
            MatchTypeFilter.exclude_on_match_abstain_otherwise(MatchTypeFilter.build_index(["Session"]))
        )
        uow = make_uow()

        assert uow.on_create(Entity(), "Session") is None
        assert uow.state is UnitOfWorkState.IDLE
        assert changeset_factory.created == 0


class TestFlush:
    """Tests for flushing and resetting."""

    def test_flush_delivers_sealed_changeset(self, make_uow, memory_sink):
        uow = make_uow()
        before = datetime.now(timezone.utc)
        uow.on_create(Entity(), "Invoice").set_field("total", None, 10)

        uow.flush()

        assert len(memory_sink) == 1
        changeset = memory_sink.changesets[0]
        assert changeset.is_sealed
        assert changeset.timestamp >= before
        assert uow.state is UnitOfWorkState.IDLE

    def test_flush_without_changes_is_noop(self, make_uow, memory_sink):
        uow = make_uow(deliver_empty=True)

        uow.flush()

        assert len(memory_sink) == 0

    def test_empty_changeset_not_delivered_by_default(self, make_uow, memory_sink, provider):
        class DropAll(ChangesetFilter):
            def on_audit(self, changeset):
                for record in changeset.records():
                    changeset.remove_record(record)
                return True

        provider.add_changeset_filter(DropAll())
        uow = make_uow()
        uow.on_create(Entity(), "Invoice")

        uow.flush()

        assert len(memory_sink) == 0
        assert uow.state is UnitOfWorkState.IDLE

    def test_empty_changeset_delivered_when_configured(self, make_uow, memory_sink, provider):
        class DropAll(ChangesetFilter):
            def on_audit(self, changeset):
                for record in changeset.records():
                    changeset.remove_record(record)
                return True

        provider.add_changeset_filter(DropAll())
        uow = make_uow(deliver_empty=True)
        uow.on_create(Entity(), "Invoice")

        uow.flush()

        assert len(memory_sink) == 1
        assert len(memory_sink.changesets[0]) == 0

    def test_rejected_changeset_not_delivered(self, make_uow, memory_sink, provider):
        reject = MagicMock(spec=ChangesetFilter)
        reject.on_audit.return_value = False
        provider.add_changeset_filter(reject)
        uow = make_uow()
        uow.on_create(Entity(), "Invoice")

        uow.flush()

        reject.on_audit.assert_called_once()
        assert len(memory_sink) == 0
        assert uow.state is UnitOfWorkState.IDLE

    def test_reset_discards_changeset(self, make_uow, memory_sink):
        uow = make_uow()
        uow.on_create(Entity(), "Invoice")

        uow.reset()
        uow.flush()

        assert uow.state is UnitOfWorkState.IDLE
        assert len(memory_sink) == 0

    def test_new_changeset_after_flush(self, make_uow, memory_sink):
        uow = make_uow()
        uow.on_create(Entity(), "Invoice")
        uow.flush()
        uow.on_create(Entity(), "Invoice")
        uow.flush()

        assert len(memory_sink) == 2
        assert memory_sink.changesets[0].id != memory_sink.changesets[1].id

    def test_sink_failure_propagates_and_resets(self, make_uow):
        sink = MagicMock(spec=AuditSink)
        sink.commit_audit.side_effect = IOError("disk full")
        uow = make_uow(sink=sink)
        uow.on_create(Entity(), "Invoice")

        with pytest.raises(IOError):
            uow.flush()

        assert uow.state is UnitOfWorkState.IDLE

    def test_filter_failure_propagates_and_resets(self, make_uow, provider):
        failing = MagicMock(spec=ChangesetFilter)
        failing.on_audit.side_effect = ValueError("bad filter")
        provider.add_changeset_filter(failing)
        uow = make_uow()
        uow.on_create(Entity(), "Invoice")

        with pytest.raises(ValueError):
            uow.flush()

        assert uow.state is UnitOfWorkState.IDLE

    def test_notifications_during_flush_are_ignored(self, make_uow):
        sink = ReentrantSink()
        uow = make_uow(sink=sink)
        sink.uow = uow
        uow.on_create(Entity(), "Invoice")

        uow.flush()

        assert sink.reentrant_results == [None]
        assert len(sink.delivered) == 1
        assert [r.entity_type for r in sink.delivered[0].records()] == ["Invoice"]
        assert uow.state is UnitOfWorkState.IDLE

    def test_flush_without_changeset_ends_cycle(self, make_uow, provider):
        pause = PauseAuditFilter()
        provider.add_filter(pause, priority=1000)
        uow = make_uow()

        pause.pause_audit()
        assert uow.on_create(Entity(), "Invoice") is None
        uow.flush()
        pause.resume_audit()

        assert uow.on_create(Entity(), "Invoice") is not None


class TestScenarios:
    """End-to-end behavior of configured filters."""

    def test_exclusive_allow_list(self, make_uow, memory_sink, provider):
        provider.add_type_filter(
            MatchTypeFilter.include_on_match_exclude_otherwise(
                MatchTypeFilter.build_index(["Invoice", "Customer"])
            ),
            500,
        )
        uow = make_uow()

        assert uow.on_create(Entity(), "Invoice") is not None
        assert uow.on_create(Entity(), "Customer") is not None
        assert uow.on_create(Entity(), "Session") is None
        uow.flush()

        types = sorted(r.entity_type for r in memory_sink.changesets[0].records())
        assert types == ["Customer", "Invoice"]

    def test_author_carried_to_records(self, make_uow, memory_sink):
        uow = make_uow()
        uow.on_update(Entity(), "Invoice").set_field("total", 1, 2)

        uow.flush()

        assert memory_sink.records[0].author == User(id="42", name="alice")

    def test_password_never_reaches_sink(self, make_uow, memory_sink, provider):
        provider.add_field_filter(
            MatchFieldFilter.exclude_on_match_abstain_otherwise(
                MatchFieldFilter.build_index({"": ["password"]})
            ),
            520,
        )
        uow = make_uow()
        record = uow.on_create(Entity(), "User")
        record.set_field("password", None, "s3cret")
        record.set_field("email", None, "a@example.com")

        uow.flush()

        assert memory_sink.records[0].new_state == {"email": "a@example.com"}

    def test_exclusive_deny_list_through_flush(self, make_uow, memory_sink, provider):
        provider.add_field_filter(
            MatchFieldFilter.exclude_on_match_include_otherwise(
                MatchFieldFilter.build_index({"": ["password"]})
            ),
            520,
        )
        uow = make_uow(default_audit_field=False)
        record = uow.on_create(Entity(), "User")
        record.set_field("password", None, "s3cret")
        record.set_field("email", None, "a@example.com")

        uow.flush()

        assert memory_sink.records[0].new_state == {"email": "a@example.com"}

    def test_abstaining_filters_deliver_every_field(self, make_uow, memory_sink, provider):
        provider.add_type_filter(
            MatchTypeFilter.exclude_on_match_abstain_otherwise(MatchTypeFilter.build_index(["Session"]))
        )
        provider.add_field_filter(
            MatchFieldFilter.exclude_on_match_abstain_otherwise(
                MatchFieldFilter.build_index({"Session": None})
            )
        )
        uow = make_uow()
        entities = [Entity() for _ in range(5)]
        for i, entity in enumerate(entities):
            record = uow.on_update(entity, "Invoice")
            record.set_field("total", i, i + 1)
            record.set_field("customer", "old", f"acme-{i}")

        uow.flush()

        assert [r.entity for r in memory_sink.changesets[0].records()] == entities
        for i, audit in enumerate(memory_sink.records):
            assert audit.old_state == {"total": i, "customer": "old"}
            assert audit.new_state == {"total": i + 1, "customer": f"acme-{i}"}
