"""Sink emitting audit records through loguru."""

from loguru import logger

from ..models import Changeset
from ..records import records_from_changeset
from .base import AuditSink


class LogSink(AuditSink):
    """Logs one line per audit record, with the record as structured context."""

    def __init__(self, level: str = "INFO"):
        self.level = level

    def commit_audit(self, changeset: Changeset) -> None:
        for record in records_from_changeset(changeset):
            # bind() keeps braces in composite ids away from message formatting
            logger.bind(audit=record.to_payload()).log(
                self.level,
                f"AUDIT {record.operation.value} {record.entity_type} id={record.entity_id}",
            )
