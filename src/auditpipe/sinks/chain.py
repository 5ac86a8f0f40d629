"""Fan-out sink."""

from typing import Iterable, List

from ..models import Changeset
from .base import AuditSink


class ChainSink(AuditSink):
    """
    Commits a changeset to each sink in order.

    A failing sink stops the chain: sinks after it are not called and sinks
    before it are not rolled back.
    """

    def __init__(self, sinks: Iterable[AuditSink]):
        self.sinks: List[AuditSink] = list(sinks)

    def __repr__(self) -> str:
        return f"<ChainSink {[type(s).__name__ for s in self.sinks]}>"

    def commit_audit(self, changeset: Changeset) -> None:
        for sink in self.sinks:
            sink.commit_audit(changeset)
