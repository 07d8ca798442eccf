"""LDAP directory client built on ldap3.

ldap3's synchronous strategy is not safe to share between threads, so every
operation runs in a worker thread while holding the client's lock.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from typing import Any

from ldap3 import NONE, SUBTREE, Connection, Server
from ldap3.core.exceptions import LDAPException
from ldap3.utils.conv import escape_filter_chars

from user_directory.config import Settings
from user_directory.directory.base import DirectoryClient
from user_directory.errors import DirectoryUnavailableError, UserNotFoundError
from user_directory.models.identity import DirectoryRecord

logger = logging.getLogger(__name__)

_TRUTHY = {"true", "1", "yes"}


def _first(value: Any) -> str:
    """Collapse an LDAP attribute value (list or scalar) to a single string."""
    if value is None:
        return ""
    if isinstance(value, list | tuple):
        return str(value[0]) if value else ""
    return str(value)


def _all(value: Any) -> list[str]:
    if value is None:
        return []
    if isinstance(value, list | tuple):
        return [str(v) for v in value]
    return [str(value)]


class LDAPDirectoryClient(DirectoryClient):
    """Looks users and their group memberships up in an LDAP server."""

    def __init__(
        self,
        settings: Settings,
        connection_factory: Callable[[], Connection] | None = None,
    ) -> None:
        self._settings = settings
        self._connection_factory = connection_factory or self._connect
        self._conn: Connection | None = None
        self._lock = asyncio.Lock()

    def _connect(self) -> Connection:
        server = Server(
            self._settings.ldap_uri,
            get_info=NONE,
            connect_timeout=self._settings.ldap_connect_timeout,
        )
        return Connection(
            server,
            user=self._settings.ldap_bind_dn,
            password=self._settings.ldap_bind_password,
            auto_bind=True,
            read_only=True,
            raise_exceptions=True,
            receive_timeout=self._settings.ldap_receive_timeout,
        )

    def _connection(self) -> Connection:
        if self._conn is None:
            self._conn = self._connection_factory()
        return self._conn

    async def lookup(self, uid: str) -> DirectoryRecord:
        async with self._lock:
            return await asyncio.to_thread(self._lookup_sync, uid)

    async def close(self) -> None:
        async with self._lock:
            if self._conn is not None:
                conn, self._conn = self._conn, None
                await asyncio.to_thread(conn.unbind)

    def _search(self, base: str, search_filter: str, attributes: list[str]) -> list[dict]:
        conn = self._connection()
        conn.search(
            search_base=base,
            search_filter=search_filter,
            search_scope=SUBTREE,
            attributes=attributes,
        )
        # search() also returns False for a successful search with no entries,
        # so only the result code tells a refusal from an empty answer
        result = conn.result or {}
        if result.get("result", 0) != 0:
            raise LDAPException(
                f"search of {base} failed: {result.get('description') or result.get('result')}"
            )
        return [
            entry.get("attributes", {})
            for entry in conn.response or []
            if entry.get("type") == "searchResEntry"
        ]

    def _lookup_sync(self, uid: str) -> DirectoryRecord:
        s = self._settings
        escaped = escape_filter_chars(uid)
        user_attributes = [s.ldap_uid_attribute, s.ldap_name_attribute, s.ldap_email_attribute]
        if s.ldap_active_attribute:
            user_attributes.append(s.ldap_active_attribute)

        try:
            users = self._search(
                s.ldap_user_base, f"({s.ldap_uid_attribute}={escaped})", user_attributes
            )
            if not users:
                raise UserNotFoundError(uid)
            groups = self._search(
                s.ldap_group_base, f"({s.ldap_group_member_attribute}={escaped})", ["cn"]
            )
        except LDAPException as e:
            # Drop the connection so the next lookup reconnects
            self._conn = None
            logger.warning("LDAP lookup for %s failed: %s", uid, e)
            raise DirectoryUnavailableError(f"LDAP lookup for {uid!r} failed: {e}", uid=uid) from e

        attrs = users[0]
        group_names = {name for group in groups for name in _all(group.get("cn")) if name}

        active = True
        if s.ldap_active_attribute:
            raw = _first(attrs.get(s.ldap_active_attribute))
            if raw:
                active = raw.strip().lower() in _TRUTHY

        return DirectoryRecord(
            uid=uid,
            name=_first(attrs.get(s.ldap_name_attribute)),
            email=_first(attrs.get(s.ldap_email_attribute)),
            active=active,
            admin=bool(s.ldap_admin_group) and s.ldap_admin_group in group_names,
            group_names=group_names,
        )
