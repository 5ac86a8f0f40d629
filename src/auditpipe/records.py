"""
Audit Record Serialization

Flattens a sealed changeset into one storable AuditRecord per entity record:
- changeset identity and seal time shared by all rows of a changeset
- entity type and identifier (composite ids as canonical JSON)
- old/new state split by operation type
- effective author/impersonator and the serialized trigger

Canonical JSON (sorted keys, compact separators) is used for hashing so a
record's hash is stable across processes.
"""

import hashlib
import json
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, Field, field_validator

from .models import Changeset, EntityRecord, OperationType, User


class AuditRecord(BaseModel):
    """A single persisted audit row."""

    id: UUID = Field(default_factory=uuid4)
    operation: OperationType

    # Changeset (transaction) the row belongs to
    changeset_id: str
    changeset_timestamp: datetime

    # Changed entity
    entity_type: str
    entity_id: Optional[str] = Field(None, description="Scalar id or JSON of a composite id")

    # Change
    change_timestamp: datetime
    old_state: Optional[Dict[str, Any]] = Field(
        None, description="State before the operation; None for creates"
    )
    new_state: Optional[Dict[str, Any]] = Field(
        None, description="State after the operation; None for reads, deletes and snapshots"
    )

    # Actors
    author: Optional[User] = None
    impersonator: Optional[User] = None

    # Serialized trigger, always carrying "source"
    action: Dict[str, Any] = Field(default_factory=dict)
    opaque_data: Optional[Dict[str, Any]] = None

    @field_validator("changeset_timestamp", "change_timestamp", mode="before")
    @classmethod
    def ensure_utc(cls, v):
        if isinstance(v, datetime):
            if v.tzinfo is None:
                return v.replace(tzinfo=timezone.utc)
            return v.astimezone(timezone.utc)
        return v

    @classmethod
    def from_entity_record(cls, record: EntityRecord) -> "AuditRecord":
        changeset = record.changeset
        if changeset.timestamp is None:
            raise ValueError(f'Changeset id="{changeset.id}" has no seal timestamp')

        old_state, new_state = split_state(record)
        return cls(
            operation=record.operation,
            changeset_id=changeset.id,
            changeset_timestamp=changeset.timestamp,
            entity_type=record.entity_type,
            entity_id=serialize_entity_id(record.id),
            change_timestamp=record.timestamp,
            old_state=old_state,
            new_state=new_state,
            author=record.author,
            impersonator=record.impersonator,
            action=changeset.trigger.serialize(),
            opaque_data=record.opaque_data,
        )

    def canonical_form(self) -> str:
        """Deterministic JSON used for hashing."""
        data = self.model_dump(mode="json")
        return json.dumps(data, sort_keys=True, separators=(",", ":"), default=str)

    def compute_hash(self) -> str:
        return hashlib.sha256(self.canonical_form().encode()).hexdigest()

    def to_payload(self) -> Dict[str, Any]:
        """JSON-compatible payload for sinks."""
        return self.model_dump(mode="json")


def records_from_changeset(changeset: Changeset) -> Iterator[AuditRecord]:
    for record in changeset.records():
        yield AuditRecord.from_entity_record(record)


def split_state(record: EntityRecord):
    """Return (old_state, new_state) dicts appropriate for the operation."""
    if record.operation is OperationType.UPDATE:
        old = {name: pair[EntityRecord.OLD_STATE] for name, pair in record.state_change.items()}
        new = {name: pair[EntityRecord.NEW_STATE] for name, pair in record.state_change.items()}
        return old, new

    if record.operation is OperationType.CREATE:
        return None, {name: pair[EntityRecord.NEW_STATE] for name, pair in record.state_change.items()}

    # read, delete and snapshot only know the existing state
    return {name: pair[EntityRecord.OLD_STATE] for name, pair in record.state_change.items()}, None


def serialize_entity_id(entity_id: Any) -> Optional[str]:
    if entity_id is None:
        return None
    if isinstance(entity_id, dict):
        return json.dumps(entity_id, sort_keys=True, separators=(",", ":"), default=str, ensure_ascii=False)
    return str(entity_id)
