"""Persistent store interface.

The resolver and group sync only ever talk to a store through this contract.
The store owns uniqueness and assigns entity ids; duplicates are reported as
typed AlreadyExists errors, absence as typed NotFound errors.
"""

from __future__ import annotations

from abc import ABC, abstractmethod

from user_directory.models.identity import Group, User, UserFilter


class PersistentStore(ABC):
    """Abstract durable store for users and groups."""

    @abstractmethod
    async def add_user(self, user: User, actor: User | None = None) -> int:
        """Insert a user, assign and return its entity_id.

        Raises UserAlreadyExistsError if the uid is taken.
        """

    @abstractmethod
    async def get_user_by_entity_id(self, entity_id: int) -> User:
        """Raises UserNotFoundError if no such user."""

    @abstractmethod
    async def get_user_by_uid(self, uid: str) -> User:
        """Raises UserNotFoundError if no such user."""

    @abstractmethod
    async def list_users(self, user_filter: UserFilter | None = None) -> list[User]:
        """List users ordered by uid, narrowed by the given filter."""

    @abstractmethod
    async def get_group_by_name(self, name: str) -> Group:
        """Raises GroupNotFoundError if no such group."""

    @abstractmethod
    async def add_group(self, group: Group) -> int:
        """Insert a group, assign and return its entity_id.

        Raises GroupAlreadyExistsError if the name is taken.
        """

    @abstractmethod
    async def add_group_member(self, group: Group, user: User) -> None:
        """Add a user to a group. Adding an existing member is a no-op."""
