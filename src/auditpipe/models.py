"""
Audit Pipeline Models

Defines the value objects flowing through the pipeline:
- OperationType: the kind of change observed on an entity
- User: value-compared author/impersonator description
- Trigger: what caused the changeset to begin (CLI, HTTP, opaque, custom)
- Changeset: one logical transaction's batch of records
- EntityRecord: one change to one entity within a changeset

A Changeset is open while records accumulate, stamped when the unit of work
flushes, and sealed once approved for delivery. Sinks must treat a sealed
changeset as read-only.
"""

import itertools
from abc import abstractmethod
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Iterator, List, Mapping, Optional, Tuple, Union
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field

from .exceptions import DuplicateRecordError, RecordNotFoundError

Scalar = Union[str, int, float, bool, None]
EntityId = Union[Scalar, Dict[str, Scalar]]


class OperationType(str, Enum):
    """Operations which can be audited."""

    CREATE = "create"
    READ = "read"
    UPDATE = "update"
    DELETE = "delete"

    # Manual capture of the full entity state
    SNAPSHOT = "snapshot"


class User(BaseModel):
    """Author or impersonator of a change. Compared by value."""

    model_config = ConfigDict(frozen=True)

    kind: Optional[str] = Field(None, description="Class/kind tag of the principal")
    id: Optional[str] = Field(None, description="Stable, permanent identifier")
    name: Optional[str] = Field(None, description="Display name, login or email")


class TriggerSource(str, Enum):
    """Built-in trigger sources. Custom triggers may report any string."""

    CLI = "cli"
    HTTP = "http"
    OPAQUE = "opaque"


class Trigger(BaseModel):
    """Overarching subsystem which caused a changeset to be created."""

    @property
    @abstractmethod
    def source(self) -> str:
        """Source tag, e.g. "cli" or "http"."""

    @abstractmethod
    def context(self) -> Dict[str, Any]:
        """Free-form context. Must not contain the reserved "source" key."""

    def serialize(self) -> Dict[str, Any]:
        """Context plus the source tag; "source" always wins over context."""
        data = dict(self.context())
        data["source"] = self.source
        return data


class CliTrigger(Trigger):
    """Changeset started by a command-line process."""

    host: Optional[str] = None
    argv: List[str] = Field(default_factory=list)

    @property
    def source(self) -> str:
        return TriggerSource.CLI.value

    def context(self) -> Dict[str, Any]:
        return {"host": self.host, "argv": list(self.argv)}


class HttpTrigger(Trigger):
    """Changeset started while serving a network request."""

    request_id: Optional[str] = None
    ip: Optional[str] = None

    @property
    def source(self) -> str:
        return TriggerSource.HTTP.value

    def context(self) -> Dict[str, Any]:
        return {"request_id": self.request_id, "ip": self.ip}


class OpaqueTrigger(Trigger):
    """Trigger with no known origin."""

    @property
    def source(self) -> str:
        return TriggerSource.OPAQUE.value

    def context(self) -> Dict[str, Any]:
        return {}


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class Changeset:
    """
    A batch of entity records sharing one trigger/actor context.

    Records are keyed by (operation, identity handle). The handle is assigned
    once per tracked entity for the lifetime of this changeset and the entity
    reference is retained next to it, so a handle is never reused for a
    different object. Iteration order is not significant.

    Usage:
        changeset = Changeset(trigger=CliTrigger(host="worker-1"))
        record = EntityRecord(OperationType.UPDATE, changeset, invoice, "Invoice")
        record.set_field("total", 10, 12)
    """

    def __init__(
        self,
        trigger: Optional[Trigger] = None,
        author: Optional[User] = None,
        impersonator: Optional[User] = None,
    ):
        self.id: str = str(uuid4())
        self.timestamp: Optional[datetime] = None
        self.trigger: Trigger = trigger if trigger is not None else OpaqueTrigger()
        self.author = author
        self.impersonator = impersonator

        self._records: Dict[Tuple[OperationType, int], "EntityRecord"] = {}
        self._handles: Dict[int, Tuple[object, int]] = {}
        self._handle_seq = itertools.count(1)
        self._sealed = False

    def __repr__(self) -> str:
        return f"<Changeset id={self.id} records={len(self._records)} sealed={self._sealed}>"

    def __len__(self) -> int:
        return len(self._records)

    def __iter__(self) -> Iterator["EntityRecord"]:
        return self.records()

    @property
    def is_sealed(self) -> bool:
        return self._sealed

    def has_changes(self) -> bool:
        return len(self._records) > 0

    def identity_of(self, entity: object, assign: bool = False) -> Optional[int]:
        """Return the identity handle of an entity, optionally assigning one."""
        slot = self._handles.get(id(entity))
        if slot is not None and slot[0] is entity:
            return slot[1]
        if not assign:
            return None

        handle = next(self._handle_seq)
        self._handles[id(entity)] = (entity, handle)
        return handle

    def get_record(self, operation: OperationType, entity: object) -> Optional["EntityRecord"]:
        handle = self.identity_of(entity)
        if handle is None:
            return None
        return self._records.get((operation, handle))

    def records(self) -> Iterator["EntityRecord"]:
        """Iterate over a snapshot of records; filters may remove while iterating."""
        return iter(list(self._records.values()))

    def add_record(self, record: "EntityRecord") -> None:
        """Register a record. Called by EntityRecord's constructor only."""
        key = (record.operation, record.identity)
        if key in self._records:
            raise DuplicateRecordError(
                f'Entity "{record.entity_type}" (handle={record.identity}) is already '
                f'registered for "{record.operation.value}" in changeset id="{self.id}"'
            )
        self._records[key] = record

    def remove_record(self, record: "EntityRecord") -> None:
        key = (record.operation, record.identity)
        if self._records.get(key) is not record:
            raise RecordNotFoundError(
                f'Entity record for "{record.entity_type}" (operation="{record.operation.value}", '
                f"handle={record.identity}) does not exist in changeset id=\"{self.id}\""
            )
        del self._records[key]

    def seal(self) -> None:
        """Mark the changeset as final. Sinks receive sealed changesets only."""
        self._sealed = True


_INHERIT = object()


class EntityRecord:
    """
    One change to one entity within a changeset.

    Constructing a record registers it in its changeset. Author and
    impersonator default to the changeset's values; assigning them on the
    record stores a per-record override, and reset_author()/reset_impersonator()
    drop it again.

    state_change maps a field name to an (old, new) pair indexed by
    OLD_STATE and NEW_STATE. internal_state is pipeline-private and never
    serialized; opaque_data belongs to the application.
    """

    OLD_STATE = 0
    NEW_STATE = 1

    def __init__(
        self,
        operation: OperationType,
        changeset: Changeset,
        entity: object,
        entity_type: str,
    ):
        self.operation = operation
        self.changeset = changeset
        self.entity = entity
        self.entity_type = entity_type
        self.identity: int = changeset.identity_of(entity, assign=True)

        self._id: EntityId = None
        self._author: Any = _INHERIT
        self._impersonator: Any = _INHERIT

        self.timestamp: datetime = utc_now()
        self.state_change: Dict[str, Tuple[Any, Any]] = {}
        self.opaque_data: Optional[Dict[str, Any]] = None
        self.internal_state: Any = None

        self.touch()
        changeset.add_record(self)

    def __repr__(self) -> str:
        return (
            f"<EntityRecord {self.operation.value} {self.entity_type} "
            f"id={self._id!r} fields={sorted(self.state_change)}>"
        )

    @property
    def id(self) -> EntityId:
        return self._id

    @id.setter
    def id(self, value: Union[EntityId, Mapping[str, Scalar]]) -> None:
        if isinstance(value, Mapping):
            value = dict(value)
            if len(value) == 1:
                value = next(iter(value.values()))
        self._id = value

    @property
    def author(self) -> Optional[User]:
        if self._author is _INHERIT:
            return self.changeset.author
        return self._author

    @author.setter
    def author(self, user: Optional[User]) -> None:
        self._author = user

    @property
    def impersonator(self) -> Optional[User]:
        if self._impersonator is _INHERIT:
            return self.changeset.impersonator
        return self._impersonator

    @impersonator.setter
    def impersonator(self, user: Optional[User]) -> None:
        self._impersonator = user

    @property
    def has_author_override(self) -> bool:
        return self._author is not _INHERIT

    @property
    def has_impersonator_override(self) -> bool:
        return self._impersonator is not _INHERIT

    def reset_author(self) -> None:
        self._author = _INHERIT

    def reset_impersonator(self) -> None:
        self._impersonator = _INHERIT

    def touch(self) -> None:
        """Refresh the change timestamp, preferring one supplied by the entity."""
        provider = getattr(self.entity, "get_audit_timestamp", None)
        stamp = provider() if callable(provider) else None
        if stamp is None:
            stamp = utc_now()
        elif stamp.tzinfo is None:
            stamp = stamp.replace(tzinfo=timezone.utc)
        self.timestamp = stamp

    def set_field(self, name: str, old: Any, new: Any) -> None:
        self.state_change[name] = (old, new)

    def old_value(self, name: str) -> Any:
        return self.state_change[name][self.OLD_STATE]

    def new_value(self, name: str) -> Any:
        return self.state_change[name][self.NEW_STATE]
