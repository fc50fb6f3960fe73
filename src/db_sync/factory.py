"""Connection factory.

Turns db.toml profiles (or a raw URL) into adapters and ``ConnectionHandle``
objects.  Nothing is cached: every call creates a fresh adapter that the
caller owns and must close.

Usage:
    from db_sync.factory import open_connection

    handle = await open_connection("prod")
    try:
        ...
    finally:
        await handle.client.close()
"""

import logging
import os
from urllib.parse import quote

from db_sync.adapters.async_sql import AsyncSqlAdapter
from db_sync.adapters.base import ConnectionHandle
from db_sync.config.loader import load_db_config
from db_sync.config.models import DatabaseConfig, DatabaseProfile
from db_sync.schema.models import Dialect

logger = logging.getLogger(__name__)


class ProfileNotFoundError(Exception):
    """Raised when no database profile is configured or the name is unknown."""

    pass


def get_active_profile_name(env_prefix: str = "") -> str:
    """Get active profile name from the ``{env_prefix}DB_PROFILE`` env var.

    Raises:
        ProfileNotFoundError: If the variable is not set.
    """
    env_var = f"{env_prefix}DB_PROFILE"
    profile_name = os.environ.get(env_var)
    if profile_name:
        return profile_name
    raise ProfileNotFoundError(
        f"No database profile configured.\n"
        f"Set {env_var}=<name> or pass a profile name explicitly."
    )


def resolve_url(profile: DatabaseProfile) -> str:
    """Resolve profile URL with password substitution.

    Args:
        profile: Database profile from config

    Returns:
        Connection URL with password substituted
    """
    url = profile.url
    if profile.db_password and "[YOUR-PASSWORD]" in url:
        url = url.replace("[YOUR-PASSWORD]", quote(profile.db_password, safe=""))
    return url


def get_profile(profile_name: str, config: DatabaseConfig | None = None) -> DatabaseProfile:
    """Look up a profile by name.

    Raises:
        ProfileNotFoundError: If the profile is not in the config.
    """
    config = config or load_db_config()
    if profile_name not in config.profiles:
        available = ", ".join(config.profiles) or "(none)"
        raise ProfileNotFoundError(f"Profile '{profile_name}' not found. Available: {available}")
    return config.profiles[profile_name]


async def get_adapter(
    profile_name: str | None = None,
    database_url: str | None = None,
    env_prefix: str = "",
    config: DatabaseConfig | None = None,
) -> AsyncSqlAdapter:
    """Create an adapter from a URL or a profile.

    Priority:
    1. ``database_url`` if given
    2. ``profile_name`` if given
    3. ``{env_prefix}DB_PROFILE`` env var

    Raises:
        ProfileNotFoundError: If no profile can be resolved.
    """
    if database_url:
        return AsyncSqlAdapter(database_url)

    if profile_name is None:
        profile_name = get_active_profile_name(env_prefix)
    profile = get_profile(profile_name, config)
    return AsyncSqlAdapter(resolve_url(profile), dialect=profile.dialect)


async def open_connection(profile_name: str, config: DatabaseConfig | None = None) -> ConnectionHandle:
    """Create a ``ConnectionHandle`` for a configured profile.

    The handle's default schema comes from the profile, falling back to the
    database name for MySQL/MariaDB.

    Example:
        source = await open_connection("prod", config)
        target = await open_connection("staging", config)
    """
    profile = get_profile(profile_name, config)
    adapter = AsyncSqlAdapter(resolve_url(profile), dialect=profile.dialect)

    default_schema = profile.default_schema
    if default_schema is None and profile.dialect in (Dialect.MYSQL, Dialect.MARIADB):
        default_schema = adapter.database_name

    logger.debug(f"Opened connection {profile_name} ({profile.dialect.value})")
    return ConnectionHandle(
        name=profile_name,
        dialect=profile.dialect,
        client=adapter,
        default_schema=default_schema,
    )
