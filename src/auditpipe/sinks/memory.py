"""In-process sink, mostly useful for tests and tooling."""

from typing import List

from ..models import Changeset
from ..records import AuditRecord, records_from_changeset
from .base import AuditSink


class MemorySink(AuditSink):
    """Keeps delivered changesets and their serialized records in memory."""

    def __init__(self):
        self.changesets: List[Changeset] = []
        self.records: List[AuditRecord] = []

    def __len__(self) -> int:
        return len(self.changesets)

    def commit_audit(self, changeset: Changeset) -> None:
        self.changesets.append(changeset)
        self.records.extend(records_from_changeset(changeset))

    def clear(self) -> None:
        self.changesets.clear()
        self.records.clear()
