"""Audit sinks: terminal delivery targets for sealed changesets."""

from .base import AuditSink
from .chain import ChainSink
from .jsonl import JsonlSink, verify_chain
from .log import LogSink
from .memory import MemorySink

__all__ = [
    "AuditSink",
    "ChainSink",
    "JsonlSink",
    "LogSink",
    "MemorySink",
    "verify_chain",
]
