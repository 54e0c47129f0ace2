"""Database engine and session management.

Provides:
- Engines cached per connection URL (QueuePool for PostgreSQL, StaticPool for SQLite)
- Context manager for transactional sessions (commit on success, rollback on error)
"""

from contextlib import contextmanager
from typing import Generator, Optional

from sqlalchemy.pool import QueuePool, StaticPool
from sqlmodel import Session, create_engine

from race_results_platform.database.config import DEFAULT_CONFIG, DatabaseConfig

# Global engine cache (one engine per unique connection URL)
_engines = {}


def get_engine(config: Optional[DatabaseConfig] = None):
    """Get or create a SQLAlchemy engine.

    Engines are cached per connection URL so pooled connections are reused
    across sessions. SQLite engines share one connection and may be used from
    worker threads.

    Args:
        config: Database configuration (uses DEFAULT_CONFIG if None)

    Returns:
        SQLAlchemy Engine instance
    """
    if config is None:
        config = DEFAULT_CONFIG

    connection_url = config.get_connection_url()

    if connection_url in _engines:
        return _engines[connection_url]

    if config.is_sqlite:
        engine = create_engine(
            connection_url,
            echo=config.echo,
            poolclass=StaticPool,
            connect_args={"check_same_thread": False},
        )
    else:
        engine = create_engine(
            connection_url,
            echo=config.echo,
            echo_pool=config.echo_pool,
            poolclass=QueuePool,
            pool_size=config.pool_size,
            max_overflow=config.max_overflow,
            pool_timeout=config.pool_timeout,
            pool_recycle=config.pool_recycle,
            pool_pre_ping=True,  # Verify connections before using
        )

    _engines[connection_url] = engine

    return engine


@contextmanager
def get_session(engine, autoflush: bool = True) -> Generator[Session, None, None]:
    """Transactional session on an engine.

    Commits when the block exits normally and rolls back on any exception,
    so a failing batch leaves no partial writes behind.

    Usage:
        with get_session(engine) as session:
            session.add(record)
            # Automatically commits on exit

    Raises:
        Any database exceptions (after rollback)
    """
    session = Session(engine, autoflush=autoflush)

    try:
        yield session
        session.commit()

    except Exception:
        session.rollback()
        raise

    finally:
        session.close()


@contextmanager
def get_read_only_session(engine) -> Generator[Session, None, None]:
    """Session for queries only: no autoflush, never commits."""
    session = Session(engine, autoflush=False)

    try:
        yield session

    except Exception:
        session.rollback()
        raise

    finally:
        session.close()


def dispose_engines():
    """Dispose all cached engines and clear the cache.

    Warning: Closes all connection pools.
    """
    for engine in _engines.values():
        engine.dispose()

    _engines.clear()
