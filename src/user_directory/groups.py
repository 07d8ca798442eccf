"""Group sync: mirror a user's directory group memberships into local groups.

Groups missing locally are created as system groups. Groups that already exist
are reused as they are, whether or not they are system groups. There is no
transaction across groups: a failure on one group is recorded and the rest are
still processed, and nothing already applied is undone.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass, field

from user_directory.errors import GroupAlreadyExistsError, GroupNotFoundError
from user_directory.models.identity import Group, User
from user_directory.storage.base import PersistentStore

logger = logging.getLogger(__name__)


@dataclass
class GroupSyncResult:
    user: User
    synced: list[str] = field(default_factory=list)
    created: list[str] = field(default_factory=list)
    failures: dict[str, Exception] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.failures

    def raise_first(self) -> None:
        """Re-raise the first failure, for callers that prefer exceptions."""
        for error in self.failures.values():
            raise error


class GroupSyncEngine:
    def __init__(self, store: PersistentStore) -> None:
        self._store = store

    async def sync(self, user: User, group_names: Iterable[str]) -> GroupSyncResult:
        result = GroupSyncResult(user=user)
        for name in sorted(set(group_names)):
            try:
                group, created = await self._ensure_group(name)
                await self._store.add_group_member(group, user)
            except Exception as e:
                logger.exception("Failed to sync group %s for user %s", name, user.uid)
                result.failures[name] = e
                continue
            if created:
                result.created.append(name)
            result.synced.append(name)
        return result

    async def _ensure_group(self, name: str) -> tuple[Group, bool]:
        try:
            return await self._store.get_group_by_name(name), False
        except GroupNotFoundError:
            pass
        group = Group(name=name, system=True)
        try:
            await self._store.add_group(group)
        except GroupAlreadyExistsError:
            # Someone else created it between our lookup and insert
            return await self._store.get_group_by_name(name), False
        logger.info("Created system group %s", name)
        return group, True
