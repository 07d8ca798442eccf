"""User resolution: cache -> store -> directory, provisioning on first contact.

A uid that is neither cached nor stored is looked up in the directory (when
directory integration is enabled), persisted as a new LDAP-realm user, and its
directory groups are mirrored into local groups. Absence at the last layer
consulted is always reported as UserNotFoundError, whichever layer that was.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import StrEnum

from user_directory.cache import ResolutionCache
from user_directory.config import Settings, get_settings
from user_directory.directory.base import DirectoryClient
from user_directory.errors import (
    ConfigurationFatalError,
    UserAlreadyExistsError,
    UserNotFoundError,
)
from user_directory.groups import GroupSyncEngine, GroupSyncResult
from user_directory.models.identity import AuthRealm, User, UserFilter
from user_directory.storage.base import PersistentStore

logger = logging.getLogger(__name__)


class ResolutionSource(StrEnum):
    CACHE = "cache"
    STORE = "store"
    DIRECTORY = "directory"


@dataclass
class Resolution:
    """A resolved user, where it came from, and the outcome of any group sync.

    `group_sync` is only set for users provisioned from the directory with
    group sync enabled. A failed sync leaves the user committed.
    """

    user: User
    source: ResolutionSource
    group_sync: GroupSyncResult | None = None


class UserResolver:
    def __init__(
        self,
        store: PersistentStore,
        directory: DirectoryClient | None = None,
        *,
        settings: Settings | None = None,
        cache: ResolutionCache | None = None,
        group_sync: GroupSyncEngine | None = None,
    ) -> None:
        self._store = store
        self._directory = directory
        self._settings = settings or get_settings()
        self._cache = cache if cache is not None else ResolutionCache()
        self._group_sync = group_sync or GroupSyncEngine(store)

    @property
    def cache(self) -> ResolutionCache:
        return self._cache

    @property
    def directory_enabled(self) -> bool:
        return self._settings.ldap_enabled and self._directory is not None

    async def resolve_by_id(self, entity_id: int) -> User:
        """Look a user up by entity id. Never cached, never provisioned."""
        return await self._store.get_user_by_entity_id(entity_id)

    async def resolve_by_uid(self, uid: str) -> User:
        return (await self.resolve(uid)).user

    async def resolve(self, uid: str) -> Resolution:
        cached = self._cache.get(uid)
        if cached is not None:
            return Resolution(cached, ResolutionSource.CACHE)

        async with self._cache.lock(uid):
            # Another task may have resolved it while we waited
            cached = self._cache.get(uid)
            if cached is not None:
                return Resolution(cached, ResolutionSource.CACHE)
            try:
                user = await self._store.get_user_by_uid(uid)
            except UserNotFoundError:
                pass
            else:
                logger.debug("Resolved %s from store", uid)
                return Resolution(self._cache.put(user), ResolutionSource.STORE)
            return await self._provision(uid)

    async def list_users(self, user_filter: UserFilter | None = None) -> list[User]:
        return await self._store.list_users(user_filter)

    async def provision_local(self, user: User, actor: User | None = None) -> User:
        """Create a user that is not backed by the directory."""
        user.auth_realm = AuthRealm.LOCAL
        async with self._cache.lock(user.uid):
            await self._store.add_user(user, actor=actor)
            return self._cache.put(user)

    async def _service_identity(self) -> User:
        uid = self._settings.service_uid
        cached = self._cache.get(uid)
        if cached is not None:
            return cached
        try:
            user = await self._store.get_user_by_uid(uid)
        except UserNotFoundError as e:
            raise ConfigurationFatalError(
                f"Service identity {uid!r} must exist in the store before directory "
                "provisioning is enabled"
            ) from e
        return self._cache.put(user)

    async def _provision(self, uid: str) -> Resolution:
        if not self.directory_enabled:
            raise UserNotFoundError(uid)
        if uid == self._settings.service_uid:
            raise ConfigurationFatalError(
                f"Service identity {uid!r} is missing from the store and is never provisioned"
            )
        actor = await self._service_identity()
        record = await self._directory.lookup(uid)

        user = User(
            uid=uid,
            name=record.name,
            email=record.email,
            active=record.active,
            admin=record.admin,
            auth_realm=AuthRealm.LDAP,
        )
        # Cached before it is committed, so anything resolving this uid
        # meanwhile sees the same object
        self._cache.put(user)
        try:
            await self._store.add_user(user, actor=actor)
        except UserAlreadyExistsError:
            self._cache.discard(uid)
            logger.warning("User %s was created concurrently, resolve it again", uid)
            raise
        except Exception:
            self._cache.discard(uid)
            raise
        logger.info("Provisioned %s from directory as entity %d", uid, user.entity_id)

        group_sync = None
        if self._settings.full_group_sync:
            group_sync = await self._group_sync.sync(user, record.group_names)
            if not group_sync.ok:
                logger.warning(
                    "Group sync for %s partially failed: %s",
                    uid,
                    ", ".join(sorted(group_sync.failures)),
                )
        return Resolution(user, ResolutionSource.DIRECTORY, group_sync)
