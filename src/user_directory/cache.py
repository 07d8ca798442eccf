"""In-process memo of uid -> resolved User.

A cache lives exactly as long as the resolver that owns it. Entries are
written once and never evicted; the only removal is `discard`, used when a
provisioning attempt fails to persist the user it had already cached.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from user_directory.models.identity import User


class ResolutionCache:
    def __init__(self) -> None:
        self._users: dict[str, User] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._lock_users: dict[str, int] = {}

    def __contains__(self, uid: str) -> bool:
        return uid in self._users

    def __len__(self) -> int:
        return len(self._users)

    def get(self, uid: str) -> User | None:
        return self._users.get(uid)

    def put(self, user: User) -> User:
        """Cache a user unless its uid is already cached; return the cached user."""
        return self._users.setdefault(user.uid, user)

    def discard(self, uid: str) -> None:
        self._users.pop(uid, None)

    @asynccontextmanager
    async def lock(self, uid: str) -> AsyncIterator[None]:
        """Serialize resolution of one uid. Different uids never contend.

        A uid's lock is forgotten once no task holds or waits on it.
        """
        lock = self._locks.setdefault(uid, asyncio.Lock())
        self._lock_users[uid] = self._lock_users.get(uid, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[uid] -= 1
            if not self._lock_users[uid]:
                del self._lock_users[uid]
                del self._locks[uid]
