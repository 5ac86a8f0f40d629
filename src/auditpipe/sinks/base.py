"""Sink contract."""

from abc import ABC, abstractmethod

from ..models import Changeset


class AuditSink(ABC):
    """
    Final step of a changeset's journey: storing it.

    The changeset is sealed when it arrives here and must not be modified.
    Sinks are called before the audited transaction commits, so a sink
    writing through the same transactional resource gets atomicity for free.
    Sinks writing elsewhere do not; retries, if any, belong to the sink.
    """

    @abstractmethod
    def commit_audit(self, changeset: Changeset) -> None:
        pass
