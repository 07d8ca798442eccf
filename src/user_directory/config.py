"""Environment-driven settings via pydantic-settings.

Every field can be set with a USER_DIRECTORY_ prefixed environment variable
or in a .env file, e.g. USER_DIRECTORY_LDAP_ENABLED=true.
"""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="USER_DIRECTORY_", env_file=".env", case_sensitive=False, extra="ignore"
    )

    # Storage
    database_path: Path = Path(".user_directory") / "users.db"

    # Resolution
    ldap_enabled: bool = False
    full_group_sync: bool = True
    service_uid: str = "keys-sync"

    # LDAP connection
    ldap_uri: str = "ldap://localhost:389"
    ldap_bind_dn: str | None = None
    ldap_bind_password: str | None = None
    ldap_connect_timeout: int = 10
    ldap_receive_timeout: int = 15

    # LDAP schema mapping
    ldap_user_base: str = "ou=users,dc=example,dc=com"
    ldap_group_base: str = "ou=groups,dc=example,dc=com"
    ldap_uid_attribute: str = "uid"
    ldap_name_attribute: str = "cn"
    ldap_email_attribute: str = "mail"
    ldap_active_attribute: str | None = None
    ldap_group_member_attribute: str = "memberUid"
    ldap_admin_group: str | None = None

    # Observability
    log_level: str = "INFO"


@lru_cache
def get_settings() -> Settings:
    return Settings()
