"""Shared fixtures: a seeded SQLite store and an in-memory directory."""

from __future__ import annotations

import asyncio
from pathlib import Path

import pytest
import pytest_asyncio

from user_directory.config import Settings
from user_directory.directory.base import DirectoryClient
from user_directory.errors import DirectoryUnavailableError, UserNotFoundError
from user_directory.models.identity import DirectoryRecord, User
from user_directory.storage.sqlite import StorageEngine


class FakeDirectory(DirectoryClient):
    """Directory backed by a dict, counting lookups."""

    def __init__(self) -> None:
        self.records: dict[str, DirectoryRecord] = {}
        self.lookups: list[str] = []
        self.delay = 0.0
        self.unavailable = False

    def add(self, uid: str, **fields) -> DirectoryRecord:
        record = DirectoryRecord(uid=uid, **fields)
        self.records[uid] = record
        return record

    async def lookup(self, uid: str) -> DirectoryRecord:
        self.lookups.append(uid)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.unavailable:
            raise DirectoryUnavailableError("directory is down", uid=uid)
        try:
            return self.records[uid]
        except KeyError:
            raise UserNotFoundError(uid) from None


@pytest_asyncio.fixture
async def storage(tmp_path: Path):
    db_path = tmp_path / "test.db"
    engine = StorageEngine(db_path)
    await engine.initialize()
    yield engine
    await engine.close()


@pytest_asyncio.fixture
async def service_user(storage: StorageEngine) -> User:
    user = User(uid="keys-sync", name="Directory sync", admin=True)
    await storage.add_user(user)
    return user


@pytest.fixture
def directory() -> FakeDirectory:
    return FakeDirectory()


@pytest.fixture
def settings() -> Settings:
    return Settings(_env_file=None, ldap_enabled=True, full_group_sync=True, service_uid="keys-sync")
