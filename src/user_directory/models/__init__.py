"""User directory data models."""

from user_directory.models.identity import (
    AuthRealm,
    DirectoryRecord,
    Group,
    User,
    UserFilter,
)

__all__ = [
    "AuthRealm",
    "DirectoryRecord",
    "Group",
    "User",
    "UserFilter",
]
