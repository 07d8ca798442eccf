"""Error hierarchy for user resolution.

Callers only need to distinguish four kinds of failure:

- NotFoundError: the identifier is absent from every layer consulted.
- AlreadyExistsError: a create hit a uniqueness constraint. Re-resolve, don't give up.
- DirectoryUnavailableError: the directory could not be asked. Retry or degrade.
- ConfigurationFatalError: the service identity is missing. Stop.
"""

from __future__ import annotations


class UserDirectoryError(Exception):
    """Base exception for all user directory errors."""


class NotFoundError(UserDirectoryError):
    """The identifier is absent from every layer consulted."""


class UserNotFoundError(NotFoundError):
    def __init__(self, key: str | int) -> None:
        super().__init__(f"User {key!r} does not exist")
        self.key = key


class GroupNotFoundError(NotFoundError):
    def __init__(self, name: str) -> None:
        super().__init__(f"Group {name!r} does not exist")
        self.name = name


class AlreadyExistsError(UserDirectoryError):
    """A create hit a uniqueness constraint."""


class UserAlreadyExistsError(AlreadyExistsError):
    def __init__(self, uid: str) -> None:
        super().__init__(f"User {uid!r} already exists")
        self.uid = uid


class GroupAlreadyExistsError(AlreadyExistsError):
    def __init__(self, name: str) -> None:
        super().__init__(f"Group {name!r} already exists")
        self.name = name


class DirectoryUnavailableError(UserDirectoryError):
    """The directory could not be queried. Never the same thing as "absent"."""

    def __init__(self, message: str, *, uid: str | None = None) -> None:
        super().__init__(message)
        self.uid = uid


class ConfigurationFatalError(UserDirectoryError):
    """The service identity used to authorize provisioning cannot be resolved."""
