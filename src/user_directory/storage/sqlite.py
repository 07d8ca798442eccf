"""SQLite persistence for users, groups, memberships, servers, and the event log."""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path

import aiosqlite

from user_directory.errors import (
    GroupAlreadyExistsError,
    GroupNotFoundError,
    UserAlreadyExistsError,
    UserNotFoundError,
)
from user_directory.models.identity import AuthRealm, Group, User, UserFilter
from user_directory.storage.base import PersistentStore

logger = logging.getLogger(__name__)

_SCHEMA = """
-- Users and groups share one surrogate key space
CREATE TABLE IF NOT EXISTS entities (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    type TEXT NOT NULL CHECK (type IN ('user', 'group'))
);

CREATE TABLE IF NOT EXISTS users (
    entity_id INTEGER PRIMARY KEY REFERENCES entities(id),
    uid TEXT UNIQUE NOT NULL,
    name TEXT NOT NULL DEFAULT '',
    email TEXT NOT NULL DEFAULT '',
    active INTEGER NOT NULL DEFAULT 1,
    admin INTEGER NOT NULL DEFAULT 0,
    auth_realm TEXT NOT NULL DEFAULT 'local'
);

CREATE TABLE IF NOT EXISTS groups (
    entity_id INTEGER PRIMARY KEY REFERENCES entities(id),
    name TEXT UNIQUE NOT NULL,
    system INTEGER NOT NULL DEFAULT 0,
    active INTEGER NOT NULL DEFAULT 1
);

CREATE TABLE IF NOT EXISTS group_members (
    group_id INTEGER NOT NULL REFERENCES groups(entity_id),
    entity_id INTEGER NOT NULL REFERENCES entities(id),
    added_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
    PRIMARY KEY (group_id, entity_id)
);

-- Managed servers, only consulted by the admins_of_active_servers filter
CREATE TABLE IF NOT EXISTS servers (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    hostname TEXT UNIQUE NOT NULL,
    key_management TEXT NOT NULL DEFAULT 'keys'
);

CREATE TABLE IF NOT EXISTS server_admins (
    server_id INTEGER NOT NULL REFERENCES servers(id),
    entity_id INTEGER NOT NULL REFERENCES entities(id),
    PRIMARY KEY (server_id, entity_id)
);

-- Event log (immutable, append-only)
CREATE TABLE IF NOT EXISTS events (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    entity_id INTEGER NOT NULL REFERENCES entities(id),
    actor_id INTEGER REFERENCES entities(id),
    details JSON NOT NULL,
    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
);
"""

DECOMMISSIONED = "decommissioned"


def _is_unique_violation(error: aiosqlite.IntegrityError, column: str) -> bool:
    """Only a UNIQUE failure on the natural key means "already exists"."""
    return f"UNIQUE constraint failed: {column}" in str(error)


def _user_from_row(row: aiosqlite.Row) -> User:
    return User(
        entity_id=row["entity_id"],
        uid=row["uid"],
        name=row["name"],
        email=row["email"],
        active=bool(row["active"]),
        admin=bool(row["admin"]),
        auth_realm=AuthRealm(row["auth_realm"]),
    )


def _group_from_row(row: aiosqlite.Row) -> Group:
    return Group(
        entity_id=row["entity_id"],
        name=row["name"],
        system=bool(row["system"]),
        active=bool(row["active"]),
    )


class StorageEngine(PersistentStore):
    """Async SQLite storage for users and groups.

    One connection is shared by every task using the engine, so multi-statement
    writes hold a lock to keep their transactions from interleaving.
    """

    def __init__(self, db_path: Path) -> None:
        self.db_path = db_path
        self._db: aiosqlite.Connection | None = None
        self._write_lock = asyncio.Lock()

    async def initialize(self) -> None:
        """Open connection and create schema."""
        self._db = await aiosqlite.connect(str(self.db_path))
        self._db.row_factory = aiosqlite.Row
        await self._db.execute("PRAGMA foreign_keys = ON")
        await self._db.executescript(_SCHEMA)
        await self._db.commit()

    async def close(self) -> None:
        if self._db:
            await self._db.close()
            self._db = None

    @property
    def db(self) -> aiosqlite.Connection:
        if self._db is None:
            raise RuntimeError("StorageEngine not initialized, call initialize() first")
        return self._db

    async def _insert_entity(self, entity_type: str) -> int:
        cursor = await self.db.execute("INSERT INTO entities (type) VALUES (?)", (entity_type,))
        return cursor.lastrowid

    # ----- Users -----

    async def add_user(self, user: User, actor: User | None = None) -> int:
        async with self._write_lock:
            try:
                entity_id = await self._insert_entity("user")
                await self.db.execute(
                    """INSERT INTO users (entity_id, uid, name, email, active, admin, auth_realm)
                       VALUES (?, ?, ?, ?, ?, ?, ?)""",
                    (
                        entity_id,
                        user.uid,
                        user.name,
                        user.email,
                        int(user.active),
                        int(user.admin),
                        user.auth_realm.value,
                    ),
                )
                await self._append_event(
                    entity_id, actor.entity_id if actor else None, {"action": "User add"}
                )
                await self.db.commit()
            except aiosqlite.IntegrityError as e:
                await self.db.rollback()
                if _is_unique_violation(e, "users.uid"):
                    raise UserAlreadyExistsError(user.uid) from e
                raise
            except Exception:
                await self.db.rollback()
                raise
        user.entity_id = entity_id
        logger.info("Added user %s as entity %d", user.uid, entity_id)
        return entity_id

    async def get_user_by_entity_id(self, entity_id: int) -> User:
        cursor = await self.db.execute("SELECT * FROM users WHERE entity_id = ?", (entity_id,))
        row = await cursor.fetchone()
        if row is None:
            raise UserNotFoundError(entity_id)
        return _user_from_row(row)

    async def get_user_by_uid(self, uid: str) -> User:
        cursor = await self.db.execute("SELECT * FROM users WHERE uid = ?", (uid,))
        row = await cursor.fetchone()
        if row is None:
            raise UserNotFoundError(uid)
        return _user_from_row(row)

    async def list_users(self, user_filter: UserFilter | None = None) -> list[User]:
        user_filter = user_filter or UserFilter()
        query = "SELECT users.* FROM users"
        params: list = []
        if user_filter.admins_of_active_servers:
            query += (
                " INNER JOIN server_admins ON server_admins.entity_id = users.entity_id"
                " INNER JOIN servers ON servers.id = server_admins.server_id"
                " AND servers.key_management <> ?"
            )
            params.append(DECOMMISSIONED)
        query += " WHERE 1=1"
        if user_filter.uid:
            query += " AND users.uid = ?"
            params.append(user_filter.uid)
        if user_filter.name:
            query += " AND users.name = ?"
            params.append(user_filter.name)
        query += " GROUP BY users.entity_id ORDER BY users.uid"
        cursor = await self.db.execute(query, params)
        rows = await cursor.fetchall()
        return [_user_from_row(row) for row in rows]

    async def list_user_groups(self, user: User) -> list[Group]:
        cursor = await self.db.execute(
            """SELECT groups.* FROM groups
               INNER JOIN group_members ON group_members.group_id = groups.entity_id
               WHERE group_members.entity_id = ?
               ORDER BY groups.name""",
            (user.entity_id,),
        )
        rows = await cursor.fetchall()
        return [_group_from_row(row) for row in rows]

    # ----- Groups -----

    async def get_group_by_name(self, name: str) -> Group:
        cursor = await self.db.execute("SELECT * FROM groups WHERE name = ?", (name,))
        row = await cursor.fetchone()
        if row is None:
            raise GroupNotFoundError(name)
        return _group_from_row(row)

    async def add_group(self, group: Group) -> int:
        async with self._write_lock:
            try:
                entity_id = await self._insert_entity("group")
                await self.db.execute(
                    "INSERT INTO groups (entity_id, name, system, active) VALUES (?, ?, ?, ?)",
                    (entity_id, group.name, int(group.system), int(group.active)),
                )
                await self.db.commit()
            except aiosqlite.IntegrityError as e:
                await self.db.rollback()
                if _is_unique_violation(e, "groups.name"):
                    raise GroupAlreadyExistsError(group.name) from e
                raise
            except Exception:
                await self.db.rollback()
                raise
        group.entity_id = entity_id
        logger.info("Added group %s as entity %d", group.name, entity_id)
        return entity_id

    async def add_group_member(self, group: Group, user: User) -> None:
        if group.entity_id is None or user.entity_id is None:
            raise ValueError("Group and user must be persisted before adding a membership")
        async with self._write_lock:
            await self.db.execute(
                "INSERT OR IGNORE INTO group_members (group_id, entity_id) VALUES (?, ?)",
                (group.entity_id, user.entity_id),
            )
            await self.db.commit()

    async def list_group_members(self, group: Group) -> list[User]:
        cursor = await self.db.execute(
            """SELECT users.* FROM users
               INNER JOIN group_members ON group_members.entity_id = users.entity_id
               WHERE group_members.group_id = ?
               ORDER BY users.uid""",
            (group.entity_id,),
        )
        rows = await cursor.fetchall()
        return [_user_from_row(row) for row in rows]

    # ----- Servers -----

    async def add_server(self, hostname: str, key_management: str = "keys") -> int:
        async with self._write_lock:
            cursor = await self.db.execute(
                "INSERT INTO servers (hostname, key_management) VALUES (?, ?)",
                (hostname, key_management),
            )
            await self.db.commit()
        return cursor.lastrowid

    async def add_server_admin(self, server_id: int, entity: User | Group) -> None:
        async with self._write_lock:
            await self.db.execute(
                "INSERT OR IGNORE INTO server_admins (server_id, entity_id) VALUES (?, ?)",
                (server_id, entity.entity_id),
            )
            await self.db.commit()

    # ----- Events -----

    async def _append_event(self, entity_id: int, actor_id: int | None, details: dict) -> None:
        await self.db.execute(
            "INSERT INTO events (entity_id, actor_id, details) VALUES (?, ?, ?)",
            (entity_id, actor_id, json.dumps(details)),
        )

    async def get_events(self, entity_id: int) -> list[dict]:
        cursor = await self.db.execute(
            "SELECT * FROM events WHERE entity_id = ? ORDER BY id", (entity_id,)
        )
        rows = await cursor.fetchall()
        return [dict(row) for row in rows]
