"""Pytest configuration for auditpipe tests.

Puts src/ on the import path centrally. Do not add sys.path manipulations
in individual test files.
"""

import sys
import tempfile
from pathlib import Path
from typing import Optional

import pytest

project_root = Path(__file__).parent.parent
src_root = project_root / "src"
if str(src_root) not in sys.path:
    sys.path.insert(0, str(src_root))

from auditpipe.factory import ChangesetFactory  # noqa: E402
from auditpipe.filters.provider import FilterProvider  # noqa: E402
from auditpipe.models import Changeset, OpaqueTrigger, User  # noqa: E402
from auditpipe.processor import FilteredProcessor  # noqa: E402
from auditpipe.sinks.memory import MemorySink  # noqa: E402
from auditpipe.unit_of_work import AuditUnitOfWork  # noqa: E402


class FixedChangesetFactory(ChangesetFactory):
    """Opens changesets with a fixed author, counting how many were opened."""

    def __init__(self, author: Optional[User] = None):
        self.author = author
        self.created = 0

    def create_changeset(self) -> Changeset:
        self.created += 1
        return Changeset(trigger=OpaqueTrigger(), author=self.author)


@pytest.fixture
def temp_log_dir():
    """Create a temporary log directory."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield tmpdir


@pytest.fixture
def provider():
    return FilterProvider("test")


@pytest.fixture
def memory_sink():
    return MemorySink()


@pytest.fixture
def changeset_factory():
    return FixedChangesetFactory(author=User(id="42", name="alice"))


@pytest.fixture
def make_uow(provider, memory_sink, changeset_factory):
    """Build a unit of work over the shared provider and memory sink."""

    def _make(deliver_empty=False, default_audit_type=True, default_audit_field=True, sink=None):
        processor = FilteredProcessor(
            provider,
            default_audit_type=default_audit_type,
            default_audit_field=default_audit_field,
        )
        return AuditUnitOfWork(
            changeset_factory,
            processor,
            sink if sink is not None else memory_sink,
            deliver_empty=deliver_empty,
            name="test",
        )

    return _make
