"""
Snapshot producer.

A minimal producer for plain Python objects (dataclasses, attribute bags).
Origin-system integrations (ORM event listeners and the like) follow the same
contract: report the change to the unit of work, fill the returned record's
state, flush at the transaction boundary and reset on rollback.
"""

import dataclasses
from typing import Any, Dict, Mapping, Optional, Sequence

from .models import EntityRecord
from .unit_of_work import AuditUnitOfWork


def unwrap_entity(entity: object) -> object:
    """Follow __wrapped__ links of proxies/wrappers to the real entity."""
    seen = set()
    while hasattr(entity, "__wrapped__") and id(entity) not in seen:
        seen.add(id(entity))
        entity = entity.__wrapped__
    return entity


def concrete_type_name(entity: object, qualified: bool = False) -> str:
    cls = type(unwrap_entity(entity))
    if qualified:
        return f"{cls.__module__}.{cls.__qualname__}"
    return cls.__name__


def take_snapshot(entity: object) -> Dict[str, Any]:
    """Public field values of an entity."""
    entity = unwrap_entity(entity)
    if dataclasses.is_dataclass(entity) and not isinstance(entity, type):
        return {f.name: getattr(entity, f.name) for f in dataclasses.fields(entity)}
    return {k: v for k, v in vars(entity).items() if not k.startswith("_")}


class SnapshotProducer:
    """
    Reports changes of plain objects to a unit of work. Proxies are unwrapped
    first, so an entity is tracked once however it is reached.

    Usage:
        producer = SnapshotProducer(uow)
        before = take_snapshot(invoice)
        invoice.total = 120
        producer.updated(invoice, before)
        producer.commit()
    """

    def __init__(
        self,
        unit_of_work: AuditUnitOfWork,
        id_fields: Sequence[str] = ("id",),
        qualified_names: bool = False,
    ):
        self.unit_of_work = unit_of_work
        self.id_fields = tuple(id_fields)
        self.qualified_names = qualified_names

    def created(self, entity: object) -> Optional[EntityRecord]:
        entity = unwrap_entity(entity)
        record = self.unit_of_work.on_create(entity, self._type_of(entity))
        if record is not None:
            for name, value in take_snapshot(entity).items():
                record.set_field(name, None, value)
            self._assign_id(record, entity)
        return record

    def loaded(self, entity: object) -> Optional[EntityRecord]:
        entity = unwrap_entity(entity)
        record = self.unit_of_work.on_read(entity, self._type_of(entity))
        if record is not None:
            for name, value in take_snapshot(entity).items():
                record.set_field(name, value, None)
            self._assign_id(record, entity)
        return record

    def updated(self, entity: object, before: Mapping[str, Any]) -> Optional[EntityRecord]:
        """Report fields whose value differs from the `before` snapshot."""
        entity = unwrap_entity(entity)
        after = take_snapshot(entity)
        changed = {
            name: value for name, value in after.items()
            if name not in before or before[name] != value
        }
        if not changed:
            return None

        record = self.unit_of_work.on_update(entity, self._type_of(entity))
        if record is not None:
            for name, value in changed.items():
                # Keep the oldest known value when the entity changes repeatedly
                old = record.old_value(name) if name in record.state_change else before.get(name)
                record.set_field(name, old, value)
            self._assign_id(record, entity)
        return record

    def deleted(self, entity: object) -> Optional[EntityRecord]:
        entity = unwrap_entity(entity)
        record = self.unit_of_work.on_delete(entity, self._type_of(entity))
        if record is not None:
            for name, value in take_snapshot(entity).items():
                record.set_field(name, value, None)
            self._assign_id(record, entity)
        return record

    def commit(self) -> None:
        self.unit_of_work.flush()

    def rollback(self) -> None:
        self.unit_of_work.reset()

    def _type_of(self, entity: object) -> str:
        return concrete_type_name(entity, qualified=self.qualified_names)

    def _assign_id(self, record: EntityRecord, entity: object) -> None:
        ids = {name: getattr(entity, name) for name in self.id_fields if hasattr(entity, name)}
        if ids:
            record.id = ids
