"""Tests for the user resolver."""

import asyncio

import pytest

from user_directory.config import Settings
from user_directory.errors import (
    ConfigurationFatalError,
    DirectoryUnavailableError,
    UserAlreadyExistsError,
    UserNotFoundError,
)
from user_directory.models.identity import AuthRealm, Group, User, UserFilter
from user_directory.resolver import ResolutionSource, UserResolver
from user_directory.storage.sqlite import StorageEngine


class BrokenGroupStore(StorageEngine):
    async def add_group(self, group: Group) -> int:
        if group.name == "B":
            raise RuntimeError("group store unavailable")
        return await super().add_group(group)


@pytest.fixture
def resolver(storage, directory, settings, service_user) -> UserResolver:
    return UserResolver(storage, directory, settings=settings)


@pytest.mark.asyncio
async def test_provisions_from_directory(resolver, storage, directory) -> None:
    directory.add(
        "ada", name="Ada", email="ada@x", active=True, admin=False, group_names={"ops"}
    )
    resolution = await resolver.resolve("ada")
    user = resolution.user
    assert resolution.source == ResolutionSource.DIRECTORY
    assert user.uid == "ada"
    assert user.name == "Ada"
    assert user.email == "ada@x"
    assert user.auth_realm == AuthRealm.LDAP
    assert user.active is True
    assert user.admin is False
    assert user.entity_id is not None

    stored = await storage.get_user_by_uid("ada")
    assert stored.entity_id == user.entity_id
    ops = await storage.get_group_by_name("ops")
    assert ops.system is True
    assert [m.uid for m in await storage.list_group_members(ops)] == ["ada"]
    assert resolution.group_sync is not None
    assert resolution.group_sync.synced == ["ops"]


@pytest.mark.asyncio
async def test_provisioning_is_logged_as_service_identity(
    resolver, storage, directory, service_user
) -> None:
    directory.add("ada", name="Ada")
    user = await resolver.resolve_by_uid("ada")
    events = await storage.get_events(user.entity_id)
    assert [e["actor_id"] for e in events] == [service_user.entity_id]


@pytest.mark.asyncio
async def test_stored_user_skips_directory(resolver, storage, directory) -> None:
    stored = User(uid="grace", name="Grace")
    await storage.add_user(stored)
    resolution = await resolver.resolve("grace")
    assert resolution.source == ResolutionSource.STORE
    assert resolution.user.entity_id == stored.entity_id
    assert resolution.group_sync is None
    assert directory.lookups == []


@pytest.mark.asyncio
async def test_second_resolution_is_cache_hit(resolver, directory) -> None:
    directory.add("ada", name="Ada", group_names={"ops"})
    first = await resolver.resolve("ada")
    second = await resolver.resolve("ada")
    assert second.source == ResolutionSource.CACHE
    assert second.user.entity_id == first.user.entity_id
    assert directory.lookups == ["ada"]


@pytest.mark.asyncio
async def test_new_resolver_finds_provisioned_user_in_store(
    storage, directory, settings, resolver
) -> None:
    directory.add("ada", name="Ada")
    first = await resolver.resolve_by_uid("ada")
    fresh = UserResolver(storage, directory, settings=settings)
    resolution = await fresh.resolve("ada")
    assert resolution.source == ResolutionSource.STORE
    assert resolution.user.entity_id == first.entity_id
    assert directory.lookups == ["ada"]


@pytest.mark.asyncio
async def test_unknown_everywhere_is_not_found(resolver, directory) -> None:
    with pytest.raises(UserNotFoundError):
        await resolver.resolve_by_uid("nobody")
    assert directory.lookups == ["nobody"]
    assert "nobody" not in resolver.cache
    assert resolver.cache._locks == {}


@pytest.mark.asyncio
async def test_directory_disabled_is_not_found(storage, directory, service_user) -> None:
    directory.add("ada", name="Ada")
    resolver = UserResolver(storage, directory, settings=Settings(_env_file=None))
    assert not resolver.directory_enabled
    with pytest.raises(UserNotFoundError):
        await resolver.resolve_by_uid("ada")
    assert directory.lookups == []


@pytest.mark.asyncio
async def test_no_directory_client_is_not_found(storage, settings, service_user) -> None:
    resolver = UserResolver(storage, None, settings=settings)
    with pytest.raises(UserNotFoundError):
        await resolver.resolve_by_uid("ada")


@pytest.mark.asyncio
async def test_directory_unavailable_propagates(resolver, storage, directory) -> None:
    directory.add("ada", name="Ada")
    directory.unavailable = True
    with pytest.raises(DirectoryUnavailableError):
        await resolver.resolve_by_uid("ada")
    with pytest.raises(UserNotFoundError):
        await storage.get_user_by_uid("ada")
    assert "ada" not in resolver.cache


@pytest.mark.asyncio
async def test_missing_service_identity_is_fatal(storage, directory, settings) -> None:
    directory.add("ada", name="Ada")
    resolver = UserResolver(storage, directory, settings=settings)
    with pytest.raises(ConfigurationFatalError):
        await resolver.resolve_by_uid("ada")
    assert directory.lookups == []


@pytest.mark.asyncio
async def test_service_identity_is_never_provisioned(storage, directory, settings) -> None:
    directory.add("keys-sync", name="Sync")
    resolver = UserResolver(storage, directory, settings=settings)
    with pytest.raises(ConfigurationFatalError):
        await resolver.resolve_by_uid("keys-sync")
    assert directory.lookups == []


@pytest.mark.asyncio
async def test_service_identity_resolves_from_store(resolver, service_user, directory) -> None:
    user = await resolver.resolve_by_uid("keys-sync")
    assert user.entity_id == service_user.entity_id
    assert directory.lookups == []


@pytest.mark.asyncio
async def test_group_sync_disabled(storage, directory, service_user) -> None:
    settings = Settings(_env_file=None, ldap_enabled=True, full_group_sync=False)
    resolver = UserResolver(storage, directory, settings=settings)
    directory.add("ada", name="Ada", group_names={"ops"})
    resolution = await resolver.resolve("ada")
    assert resolution.group_sync is None
    cursor = await storage.db.execute("SELECT COUNT(*) FROM groups")
    assert (await cursor.fetchone())[0] == 0


@pytest.mark.asyncio
async def test_two_users_share_directory_group(resolver, storage, directory) -> None:
    directory.add("ada", name="Ada", group_names={"A", "B"})
    directory.add("bob", name="Bob", group_names={"A"})
    await resolver.resolve_by_uid("ada")
    await resolver.resolve_by_uid("bob")
    cursor = await storage.db.execute("SELECT COUNT(*) FROM groups WHERE name = 'A'")
    assert (await cursor.fetchone())[0] == 1
    group_a = await storage.get_group_by_name("A")
    group_b = await storage.get_group_by_name("B")
    assert group_a.system and group_b.system
    assert [m.uid for m in await storage.list_group_members(group_a)] == ["ada", "bob"]
    assert [m.uid for m in await storage.list_group_members(group_b)] == ["ada"]


@pytest.mark.asyncio
async def test_group_sync_failure_keeps_user(tmp_path, directory, settings) -> None:
    storage = BrokenGroupStore(tmp_path / "test.db")
    await storage.initialize()
    try:
        await storage.add_user(User(uid="keys-sync", name="Directory sync"))
        resolver = UserResolver(storage, directory, settings=settings)
        directory.add("ada", name="Ada", group_names={"A", "B"})

        resolution = await resolver.resolve("ada")
        assert resolution.source == ResolutionSource.DIRECTORY
        assert resolution.group_sync is not None
        assert not resolution.group_sync.ok
        assert list(resolution.group_sync.failures) == ["B"]

        stored = await storage.get_user_by_uid("ada")
        assert stored.entity_id == resolution.user.entity_id
        group_a = await storage.get_group_by_name("A")
        assert [m.uid for m in await storage.list_group_members(group_a)] == ["ada"]
    finally:
        await storage.close()


@pytest.mark.asyncio
async def test_concurrent_first_resolution_provisions_once(resolver, storage, directory) -> None:
    directory.add("ada", name="Ada", group_names={"ops"})
    directory.delay = 0.01
    users = await asyncio.gather(*(resolver.resolve_by_uid("ada") for _ in range(10)))
    assert len({u.entity_id for u in users}) == 1
    assert directory.lookups == ["ada"]
    assert len(await storage.list_users(UserFilter(uid="ada"))) == 1


@pytest.mark.asyncio
async def test_store_rejects_duplicate_from_separate_resolvers(
    storage, directory, settings, service_user
) -> None:
    directory.add("ada", name="Ada")
    directory.delay = 0.01
    first = UserResolver(storage, directory, settings=settings)
    second = UserResolver(storage, directory, settings=settings)
    results = await asyncio.gather(
        first.resolve_by_uid("ada"), second.resolve_by_uid("ada"), return_exceptions=True
    )
    users = [r for r in results if isinstance(r, User)]
    errors = [r for r in results if isinstance(r, Exception)]
    assert len(users) == 1
    assert len(errors) == 1
    assert isinstance(errors[0], UserAlreadyExistsError)
    assert len(await storage.list_users(UserFilter(uid="ada"))) == 1

    # The loser re-resolves and lands on the winner's record
    loser = second if "ada" not in second.cache else first
    again = await loser.resolve_by_uid("ada")
    assert again.entity_id == users[0].entity_id


@pytest.mark.asyncio
async def test_resolve_by_id(resolver, storage, directory) -> None:
    stored = User(uid="grace", name="Grace")
    await storage.add_user(stored)
    user = await resolver.resolve_by_id(stored.entity_id)
    assert user.uid == "grace"
    with pytest.raises(UserNotFoundError):
        await resolver.resolve_by_id(12345)
    assert directory.lookups == []


@pytest.mark.asyncio
async def test_provision_local(resolver, storage, service_user) -> None:
    user = await resolver.provision_local(
        User(uid="local1", name="Local", auth_realm=AuthRealm.LDAP), actor=service_user
    )
    assert user.auth_realm == AuthRealm.LOCAL
    assert user.entity_id is not None
    assert (await storage.get_user_by_uid("local1")).auth_realm == AuthRealm.LOCAL
    assert (await resolver.resolve("local1")).source == ResolutionSource.CACHE
    with pytest.raises(UserAlreadyExistsError):
        await resolver.provision_local(User(uid="local1", name="Again"))


@pytest.mark.asyncio
async def test_list_users_delegates_to_store(resolver, storage, directory) -> None:
    directory.add("ada", name="Ada")
    await resolver.resolve_by_uid("ada")
    users = await resolver.list_users()
    assert [u.uid for u in users] == ["ada", "keys-sync"]
    assert [u.uid for u in await resolver.list_users(UserFilter(name="Ada"))] == ["ada"]
