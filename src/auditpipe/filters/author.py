"""Late author resolution for changesets opened before the principal was known."""

from typing import Callable, Optional, Tuple

from ..models import Changeset, User
from .base import ChangesetFilter

PrincipalProvider = Callable[[], Tuple[Optional[User], Optional[User]]]


class AuthorProviderFilter(ChangesetFilter):
    """
    Fills in a missing changeset author (and impersonator) at seal time.

    A changeset may be opened by a read that happens while the application is
    still authenticating, so the principal is unknown at that point. By the
    time the changeset is sealed the provider usually knows it. Records
    without an override pick the value up through the changeset.
    """

    def __init__(self, provider: PrincipalProvider):
        self._provider = provider

    def on_audit(self, changeset: Changeset) -> bool:
        if changeset.author is None:
            author, impersonator = self._provider()
            changeset.author = author
            if changeset.impersonator is None:
                changeset.impersonator = impersonator

        return True
