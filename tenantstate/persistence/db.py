from __future__ import annotations

import re
from typing import Any

from sqlalchemy.engine import URL, make_url
from sqlalchemy.exc import ArgumentError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from tenantstate.core.config import get_settings
from tenantstate.core.errors import ConfigError


ASYNC_DRIVER = "postgresql+asyncpg"

# SQLSTATE codes raised when a tenant schema or table is missing.
MISSING_RELATION_CODES = frozenset({"42P01", "3F000"})
# SQLSTATE codes raised when a concurrent creator wins the DDL race.
DUPLICATE_OBJECT_CODES = frozenset({"42P06", "42P07", "42710", "23505"})

_KEYWORD_ALIASES = {
    "host": "host",
    "server": "host",
    "port": "port",
    "user": "username",
    "username": "username",
    "user id": "username",
    "userid": "username",
    "password": "password",
    "dbname": "database",
    "database": "database",
    "sslmode": "ssl",
    "ssl mode": "ssl",
}

_engines: dict[str, AsyncEngine] = {}
_sessionmakers: dict[str, async_sessionmaker[AsyncSession]] = {}


def _parse_keyword_pairs(connection_string: str) -> URL:
    # Accept libpq (space separated) and Npgsql (semicolon separated) keyword strings.
    separator = ";" if ";" in connection_string else None
    pieces = connection_string.split(separator) if separator else re.split(r"\s+", connection_string)
    fields: dict[str, Any] = {}
    query: dict[str, str] = {}
    for piece in pieces:
        piece = piece.strip()
        if not piece:
            continue
        name, sep, value = piece.partition("=")
        if not sep:
            raise ConfigError(f"Malformed connection string segment '{piece}'")
        value = value.strip().strip("'\"")
        mapped = _KEYWORD_ALIASES.get(name.strip().lower())
        if mapped is None:
            continue
        if mapped == "ssl":
            query["ssl"] = value.lower()
        elif mapped == "port":
            try:
                fields["port"] = int(value)
            except ValueError as exc:
                raise ConfigError(f"Invalid port '{value}' in connection string") from exc
        else:
            fields[mapped] = value
    if "host" not in fields:
        raise ConfigError("Connection string does not name a host")
    return URL.create(ASYNC_DRIVER, query=query, **fields)


def normalize_connection_string(connection_string: str) -> str:
    # Normalize every accepted connection string form onto the asyncpg driver URL.
    cleaned = (connection_string or "").strip()
    if not cleaned:
        raise ConfigError("Connection string is empty")
    if "://" not in cleaned:
        return _parse_keyword_pairs(cleaned).render_as_string(hide_password=False)
    try:
        url = make_url(cleaned)
    except ArgumentError as exc:
        raise ConfigError("Connection string is not a valid database URL") from exc
    if url.get_backend_name() not in {"postgres", "postgresql"}:
        raise ConfigError(f"Unsupported database backend '{url.get_backend_name()}'")
    return url.set(drivername=ASYNC_DRIVER).render_as_string(hide_password=False)


def get_engine(connection_string: str) -> AsyncEngine:
    # One pooled engine per database; store instances and the sweeper share it.
    url = normalize_connection_string(connection_string)
    engine = _engines.get(url)
    if engine is not None:
        return engine
    settings = get_settings()
    engine_kwargs: dict[str, Any] = {
        "pool_pre_ping": True,
        "pool_size": max(1, int(settings.db_pool_size)),
        "max_overflow": max(0, int(settings.db_max_overflow)),
        "pool_timeout": 30,
        "pool_recycle": 1800,
    }
    if settings.db_statement_timeout_ms > 0:
        engine_kwargs["connect_args"] = {
            "server_settings": {"statement_timeout": str(int(settings.db_statement_timeout_ms))}
        }
    engine = create_async_engine(url, **engine_kwargs)
    _engines[url] = engine
    return engine


def get_sessionmaker(connection_string: str) -> async_sessionmaker[AsyncSession]:
    url = normalize_connection_string(connection_string)
    factory = _sessionmakers.get(url)
    if factory is None:
        factory = async_sessionmaker(get_engine(url), expire_on_commit=False)
        _sessionmakers[url] = factory
    return factory


async def dispose_engines() -> None:
    # Dispose pools on shutdown and between tests to avoid cross-loop connection reuse.
    engines = list(_engines.values())
    _engines.clear()
    _sessionmakers.clear()
    for engine in engines:
        await engine.dispose()


def sqlstate_of(exc: BaseException) -> str | None:
    # Dig the SQLSTATE out of the DBAPI error wrapped by SQLAlchemy.
    candidates = [getattr(exc, "orig", None), exc]
    orig = candidates[0]
    if orig is not None:
        candidates.append(getattr(orig, "__cause__", None))
    for candidate in candidates:
        if candidate is None:
            continue
        code = getattr(candidate, "sqlstate", None) or getattr(candidate, "pgcode", None)
        if isinstance(code, str) and code:
            return code
    return None


def is_missing_relation_error(exc: BaseException) -> bool:
    code = sqlstate_of(exc)
    if code is not None:
        return code in MISSING_RELATION_CODES
    message = str(exc).lower()
    return "undefinedtableerror" in message or ("relation" in message and "does not exist" in message)


def is_duplicate_object_error(exc: BaseException) -> bool:
    code = sqlstate_of(exc)
    if code is not None:
        return code in DUPLICATE_OBJECT_CODES
    return "already exists" in str(exc).lower()
