"""
Unit of Work

Owns the changeset of one logical transaction. Producers report changes
through on_create/on_read/on_update/on_delete, call flush() at the natural
transaction boundary and reset() on rollback/clear.

States:
    IDLE          no changeset open
    ACCUMULATING  changeset open, records accepted
    FLUSHING      sealing/delivery in progress, notifications are dropped

Sinks commonly write the audit through the same storage that is being
audited, which produces new notifications while flushing. Those are ignored
(the call returns None) instead of being audited recursively.
"""

from abc import ABC, abstractmethod
from enum import Enum
from typing import Optional

from loguru import logger

from .factory import ChangesetFactory
from .models import Changeset, EntityRecord, OperationType, utc_now
from .processor import AuditProcessor
from .sinks.base import AuditSink


class UnitOfWorkState(str, Enum):
    IDLE = "idle"
    ACCUMULATING = "accumulating"
    FLUSHING = "flushing"


class UnitOfWork(ABC):
    @abstractmethod
    def get_changeset(self) -> Optional[Changeset]:
        """
        Currently open changeset.

        The unit of work may discard or replace it at any time, so callers
        must not keep a reference to it.
        """

    @abstractmethod
    def flush(self) -> None:
        """Seal the open changeset and deliver it to the sink if approved."""

    @abstractmethod
    def reset(self) -> None:
        """Discard everything accumulated so far without delivering it."""


class AuditUnitOfWork(UnitOfWork):
    """
    Single-threaded, transaction-scoped unit of work.

    Usage:
        uow = AuditUnitOfWork(ContextChangesetFactory(), processor, sink)

        record = uow.on_update(invoice, "Invoice")
        if record is not None:
            record.set_field("total", 100, 120)

        uow.flush()
    """

    def __init__(
        self,
        changeset_factory: ChangesetFactory,
        processor: AuditProcessor,
        sink: AuditSink,
        deliver_empty: bool = False,
        name: str = "default",
    ):
        self.changeset_factory = changeset_factory
        self.processor = processor
        self.sink = sink
        self.deliver_empty = deliver_empty
        self.name = name

        self._changeset: Optional[Changeset] = None
        self._flushing = False

    def __repr__(self) -> str:
        return f"<AuditUnitOfWork {self.name} state={self.state.value}>"

    @property
    def state(self) -> UnitOfWorkState:
        if self._flushing:
            return UnitOfWorkState.FLUSHING
        if self._changeset is not None:
            return UnitOfWorkState.ACCUMULATING
        return UnitOfWorkState.IDLE

    def get_changeset(self) -> Optional[Changeset]:
        return self._changeset

    def on_create(self, entity: object, entity_type: str) -> Optional[EntityRecord]:
        return self.track(OperationType.CREATE, entity, entity_type)

    def on_read(self, entity: object, entity_type: str) -> Optional[EntityRecord]:
        return self.track(OperationType.READ, entity, entity_type)

    def on_update(self, entity: object, entity_type: str) -> Optional[EntityRecord]:
        return self.track(OperationType.UPDATE, entity, entity_type)

    def on_delete(self, entity: object, entity_type: str) -> Optional[EntityRecord]:
        return self.track(OperationType.DELETE, entity, entity_type)

    def on_snapshot(self, entity: object, entity_type: str) -> Optional[EntityRecord]:
        return self.track(OperationType.SNAPSHOT, entity, entity_type)

    def track(
        self, operation: OperationType, entity: object, entity_type: str
    ) -> Optional[EntityRecord]:
        """
        Return the record tracking this entity for this operation.

        Returns None while flushing or when the type is not auditable. A
        repeated notification returns the already tracked record with a
        refreshed timestamp.
        """
        if self._flushing or not self.processor.is_type_auditable(operation, entity_type):
            return None

        if self._changeset is not None:
            record = self._changeset.get_record(operation, entity)
            if record is not None:
                record.touch()
                return record
        else:
            self._changeset = self.changeset_factory.create_changeset()
            logger.debug(
                "Opened changeset",
                pipeline=self.name,
                changeset_id=self._changeset.id,
                trigger=self._changeset.trigger.source,
            )

        return EntityRecord(operation, self._changeset, entity, entity_type)

    def flush(self) -> None:
        if self._flushing:
            return
        if self._changeset is None:
            # Type verdicts from a cycle that never opened a changeset end here too
            self.processor.reset_cycle()
            return

        self._flushing = True
        changeset = self._changeset
        try:
            changeset.timestamp = utc_now()
            if not self.processor.seal_changeset(changeset):
                logger.debug("Changeset discarded", pipeline=self.name, changeset_id=changeset.id)
                return

            if not changeset.has_changes() and not self.deliver_empty:
                logger.debug("Empty changeset not delivered", pipeline=self.name, changeset_id=changeset.id)
                return

            try:
                self.sink.commit_audit(changeset)
            except Exception as e:
                logger.error(
                    "Audit delivery failed: {error}",
                    error=str(e),
                    pipeline=self.name,
                    changeset_id=changeset.id,
                )
                raise
        finally:
            self.reset()

    def reset(self) -> None:
        self._changeset = None
        self._flushing = False
        self.processor.reset_cycle()
