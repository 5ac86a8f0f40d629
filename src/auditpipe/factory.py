"""
Changeset factories.

A factory opens a fresh Changeset with trigger, author and impersonator
taken from ambient context. The unit of work only depends on the
ChangesetFactory interface, so the factory can be swapped per pipeline.

ContextChangesetFactory reads request and principal information bound by the
application through context variables:

    with bind_request(request_id="req-42", ip="10.0.0.7"), bind_principal(user):
        session.commit()
"""

import os
import socket
import sys
from abc import ABC, abstractmethod
from contextlib import contextmanager
from contextvars import ContextVar
from dataclasses import dataclass
from typing import Iterator, Optional

from .models import Changeset, CliTrigger, HttpTrigger, Trigger, User


@dataclass(frozen=True)
class RequestContext:
    """Network request being served by the current context."""

    request_id: Optional[str] = None
    ip: Optional[str] = None


@dataclass(frozen=True)
class PrincipalContext:
    """Authenticated principal of the current context."""

    author: Optional[User] = None
    impersonator: Optional[User] = None


request_context_var: ContextVar[Optional[RequestContext]] = ContextVar(
    "auditpipe_request", default=None
)
principal_context_var: ContextVar[Optional[PrincipalContext]] = ContextVar(
    "auditpipe_principal", default=None
)


@contextmanager
def bind_request(request_id: Optional[str] = None, ip: Optional[str] = None) -> Iterator[RequestContext]:
    """Bind request details for changesets opened inside the block."""
    ctx = RequestContext(request_id=request_id, ip=ip)
    token = request_context_var.set(ctx)
    try:
        yield ctx
    finally:
        request_context_var.reset(token)


@contextmanager
def bind_principal(author: Optional[User], impersonator: Optional[User] = None) -> Iterator[PrincipalContext]:
    """Bind the acting principal for changesets opened inside the block."""
    ctx = PrincipalContext(author=author, impersonator=impersonator)
    token = principal_context_var.set(ctx)
    try:
        yield ctx
    finally:
        principal_context_var.reset(token)


def current_principal() -> PrincipalContext:
    return principal_context_var.get() or PrincipalContext()


class ChangesetFactory(ABC):
    @abstractmethod
    def create_changeset(self) -> Changeset:
        pass


class ProcessChangesetFactory(ChangesetFactory):
    """Creates changesets describing the current OS process only."""

    def create_changeset(self) -> Changeset:
        changeset = Changeset(trigger=self.create_trigger())
        self.populate_process_author(changeset)
        return changeset

    def create_trigger(self) -> Trigger:
        return CliTrigger(host=socket.gethostname() or None, argv=list(sys.argv))

    def populate_process_author(self, changeset: Changeset) -> None:
        """
        Author is the effective uid. The impersonator is the sudo caller when
        running under sudo, or the real uid when it differs (setuid, dropped
        privileges).
        """
        if not hasattr(os, "geteuid"):
            return

        euid = os.geteuid()
        changeset.author = User(id=str(euid), name=_user_name(euid))

        sudo_uid = os.environ.get("SUDO_UID")
        if sudo_uid:
            changeset.impersonator = User(
                id=sudo_uid,
                name=os.environ.get("SUDO_USER") or _user_name(int(sudo_uid)),
            )
            return

        ruid = os.getuid()
        if ruid != euid:
            changeset.impersonator = User(id=str(ruid), name=_user_name(ruid))


class ContextChangesetFactory(ProcessChangesetFactory):
    """
    Creates changesets from the request/principal bound in context variables.

    Without a bound request the trigger describes the process. Without a bound
    principal the process user is used for CLI triggers only; an HTTP changeset
    with no principal stays anonymous (see AuthorProviderFilter for late
    resolution).
    """

    def create_changeset(self) -> Changeset:
        changeset = Changeset(trigger=self.create_trigger())

        principal = principal_context_var.get()
        if principal is not None:
            changeset.author = principal.author
            changeset.impersonator = principal.impersonator

        if changeset.author is None and isinstance(changeset.trigger, CliTrigger):
            self.populate_process_author(changeset)

        return changeset

    def create_trigger(self) -> Trigger:
        request = request_context_var.get()
        if request is None:
            return super().create_trigger()
        return HttpTrigger(request_id=request.request_id, ip=request.ip)


def _user_name(uid: int) -> Optional[str]:
    try:
        import pwd
    except ImportError:
        return None

    try:
        return pwd.getpwuid(uid).pw_name
    except KeyError:
        return None
