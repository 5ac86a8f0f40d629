"""Runtime switch for suspending the audit without reconfiguring pipelines."""

import inspect
from typing import Any, Dict, Optional

from loguru import logger

from ..models import Changeset, OperationType
from .base import ChangesetFilter, TypeFilter, Vote


class PauseAuditFilter(TypeFilter, ChangesetFilter):
    """
    Suspends auditing while paused.

    As a type filter it denies every type while paused and abstains otherwise,
    so other filters decide when the audit is running. As a changeset filter it
    rejects whatever was accumulated while paused. Denials cast while paused are counted
    as "captures" so the number of dropped events can be reported.

    Usage:
        pause = PauseAuditFilter(log_pauses=True)
        pause.pause_audit(reason="bulk import")
        ...
        pause.resume_audit()
    """

    def __init__(self, log_pauses: bool = False):
        self._audit_events = True
        self._pause_origin: Optional[Dict[str, Any]] = None
        self._captures = 0
        self.log_pauses = log_pauses

    @property
    def is_paused(self) -> bool:
        return not self._audit_events

    @property
    def captures(self) -> int:
        return self._captures

    def pause_audit(self, reason: Optional[str] = None) -> "PauseAuditFilter":
        caller = inspect.stack(context=0)[1]
        self._audit_events = False
        self._captures = 0
        self._pause_origin = {
            "file": caller.filename,
            "line": caller.lineno,
            "function": caller.function,
            "reason": reason,
        }
        return self

    def resume_audit(self) -> "PauseAuditFilter":
        self._audit_events = True
        self._pause_origin = None
        self._captures = 0
        return self

    def is_type_auditable(self, operation: OperationType, entity_type: str) -> Vote:
        if self._audit_events:
            return Vote.ABSTAIN
        self._captures += 1
        return Vote.DENY

    def on_audit(self, changeset: Changeset) -> bool:
        if self._audit_events:
            return True

        if self.log_pauses and self._captures > 0:
            origin = self._pause_origin or {}
            logger.warning(
                "Audit was paused; events were dropped since the pause",
                paused_by=f"{origin.get('file')}:{origin.get('line')} in {origin.get('function')}",
                reason=origin.get("reason") or "no reason specified",
                missed=self._captures,
                changeset_id=changeset.id,
            )

        self._captures = 0
        return False
