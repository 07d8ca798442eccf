"""Pluggable directory client interface.

A directory client answers one question: what does the external directory
know about this uid? LDAP is the shipped implementation; anything that can
produce a DirectoryRecord (SCIM, a static file, a test fake) can stand in.
"""

from __future__ import annotations

from abc import ABC, abstractmethod

from user_directory.models.identity import DirectoryRecord


class DirectoryClient(ABC):
    """Abstract interface for looking up users in an external directory."""

    @abstractmethod
    async def lookup(self, uid: str) -> DirectoryRecord:
        """Return the directory's record for a uid.

        Raises UserNotFoundError when the directory has no such user, and
        DirectoryUnavailableError when the directory could not be queried.
        May block on the network for as long as the transport allows.
        """

    async def close(self) -> None:
        """Release any connection held by the client."""
