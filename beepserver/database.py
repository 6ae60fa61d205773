"""Database engine and session management."""

from __future__ import annotations

import threading
from contextlib import contextmanager
from typing import Iterator, Optional

from sqlalchemy import create_engine
from sqlalchemy.engine import URL, Engine, make_url
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from .config import ConfigError, DatabaseConfig, get_config
from .models import ServiceError

SCHEMA = "beepf"

_DEFAULT_POOL_SIZE = 5

_lock = threading.Lock()
_sessionmaker: Optional[sessionmaker] = None


class NotFoundError(ServiceError):
    """Raised when a requested record does not exist."""


def build_url(db_config: DatabaseConfig) -> str:
    """Return the MySQL connection URL described by db_config."""
    host, _, port = db_config.host.partition(":")
    try:
        port_number = int(port) if port else None
    except ValueError as exc:
        raise ConfigError(f"invalid database port: {port!r}") from exc
    url = URL.create(
        "mysql+pymysql",
        username=db_config.user or None,
        password=db_config.password or None,
        host=host or None,
        port=port_number,
        database=db_config.name or None,
        query={"charset": "utf8mb4"},
    )
    return url.render_as_string(hide_password=False)


def _pool_options(db_config: DatabaseConfig) -> dict:
    pool_size = db_config.max_idle if db_config.max_idle > 0 else _DEFAULT_POOL_SIZE
    if db_config.max_open > 0:
        pool_size = min(pool_size, db_config.max_open)
        max_overflow = db_config.max_open - pool_size
    else:
        max_overflow = -1
    return {"pool_size": pool_size, "max_overflow": max_overflow}


def setup(db_config: Optional[DatabaseConfig] = None, url: Optional[str] = None) -> Engine:
    """Create the engine and session factory and return the engine.

    Without arguments the database section of the current configuration is
    used. An explicit url overrides the one built from the configuration.
    """
    global _sessionmaker
    if db_config is None and url is None:
        config = get_config()
        if config is None or config.database is None:
            raise ConfigError("database configuration is missing")
        db_config = config.database

    target = make_url(url) if url else make_url(build_url(db_config))
    echo = db_config is not None and db_config.log_mode == "debug"

    if target.get_backend_name() == "sqlite":
        options: dict = {"connect_args": {"check_same_thread": False}}
        if target.database in (None, "", ":memory:"):
            options["poolclass"] = StaticPool
        engine = create_engine(target, echo=echo, **options).execution_options(
            schema_translate_map={SCHEMA: None}
        )
    else:
        options = {"pool_pre_ping": True}
        if db_config is not None:
            options.update(_pool_options(db_config))
        engine = create_engine(target, echo=echo, **options)

    with _lock:
        _sessionmaker = sessionmaker(bind=engine, expire_on_commit=False)
    return engine


def get_sessionmaker() -> sessionmaker:
    """Return the session factory created by setup()."""
    with _lock:
        factory = _sessionmaker
    if factory is None:
        raise RuntimeError("database is not set up")
    return factory


@contextmanager
def session_scope() -> Iterator[Session]:
    """Yield a session that commits on success and rolls back on error."""
    session = get_sessionmaker()()
    try:
        yield session
        session.commit()
    except BaseException:
        session.rollback()
        raise
    finally:
        session.close()