"""Foundation types: users, groups, and the records the directory hands back."""

from __future__ import annotations

from enum import StrEnum

from pydantic import BaseModel, Field


class AuthRealm(StrEnum):
    LOCAL = "local"
    LDAP = "LDAP"


class User(BaseModel):
    """A user known to the local store.

    `entity_id` stays None until the store assigns it on insert, and is never
    reassigned afterwards. `uid` is the external identifier and is unique."""

    entity_id: int | None = None
    uid: str
    name: str = ""
    email: str = ""
    active: bool = True
    admin: bool = False
    auth_realm: AuthRealm = AuthRealm.LOCAL


class Group(BaseModel):
    """A named set of users. `system` groups are created by directory sync."""

    entity_id: int | None = None
    name: str
    system: bool = False
    active: bool = True


class DirectoryRecord(BaseModel):
    """What the external directory knows about one uid."""

    uid: str
    name: str = ""
    email: str = ""
    active: bool = True
    admin: bool = False
    group_names: set[str] = Field(default_factory=set)


class UserFilter(BaseModel):
    """Enumerated filter vocabulary for listing users. Falsy values are ignored."""

    uid: str | None = None
    name: str | None = None
    admins_of_active_servers: bool = False  # only users administering a live server
