"""User directory: resolve uids to users, provisioning from LDAP on first contact."""

__version__ = "0.1.0"
