"""Unit tests for database session management.

Engine creation is mocked; session behaviour runs against in-memory SQLite.
"""

from unittest.mock import MagicMock, patch

import pytest
from sqlalchemy import text
from sqlalchemy.pool import QueuePool, StaticPool
from sqlmodel import Session

from race_results_platform.database.config import DEFAULT_CONFIG, DatabaseConfig
from race_results_platform.database.session import (
    _engines,
    dispose_engines,
    get_engine,
    get_read_only_session,
    get_session,
)


@pytest.fixture(autouse=True)
def clear_engine_cache():
    """Clear the global engine cache before each test."""
    _engines.clear()
    yield
    _engines.clear()


class TestGetEngine:
    """Test get_engine() function."""

    @patch("race_results_platform.database.session.create_engine")
    def test_get_engine_uses_default_config(self, mock_create_engine):
        """Test get_engine uses DEFAULT_CONFIG when no config provided."""
        mock_create_engine.return_value = MagicMock()

        get_engine()

        assert mock_create_engine.call_args[0][0] == DEFAULT_CONFIG.get_connection_url()

    @patch("race_results_platform.database.session.create_engine")
    def test_get_engine_caches_engines(self, mock_create_engine):
        """Test get_engine caches engines by connection URL."""
        mock_create_engine.return_value = MagicMock()

        engine1 = get_engine()
        engine2 = get_engine()

        assert mock_create_engine.call_count == 1
        assert engine1 is engine2

    @patch("race_results_platform.database.session.create_engine")
    def test_postgres_pool_parameters(self, mock_create_engine):
        """Test PostgreSQL engines get a pre-pinged QueuePool."""
        mock_create_engine.return_value = MagicMock()

        get_engine(DatabaseConfig(pool_size=20, max_overflow=30, echo=True))

        call_kwargs = mock_create_engine.call_args[1]
        assert call_kwargs["poolclass"] == QueuePool
        assert call_kwargs["pool_size"] == 20
        assert call_kwargs["max_overflow"] == 30
        assert call_kwargs["echo"] is True
        assert call_kwargs["pool_pre_ping"] is True

    @patch("race_results_platform.database.session.create_engine")
    def test_sqlite_uses_static_pool(self, mock_create_engine):
        """Test SQLite engines share one connection across threads."""
        mock_create_engine.return_value = MagicMock()

        get_engine(DatabaseConfig(url="sqlite://"))

        call_kwargs = mock_create_engine.call_args[1]
        assert call_kwargs["poolclass"] == StaticPool
        assert call_kwargs["connect_args"] == {"check_same_thread": False}
        assert "pool_size" not in call_kwargs

    def test_dispose_engines(self):
        """Test dispose_engines disposes and forgets every engine."""
        engine = MagicMock()
        _engines["sqlite://"] = engine

        dispose_engines()

        engine.dispose.assert_called_once()
        assert _engines == {}


class TestGetSession:
    """Test get_session() context manager."""

    @patch("race_results_platform.database.session.Session")
    def test_get_session_commits_on_success(self, mock_session_class):
        """Test get_session commits transaction on successful exit."""
        mock_session = MagicMock(spec=Session)
        mock_session_class.return_value = mock_session
        engine = MagicMock()

        with get_session(engine) as session:
            assert session is mock_session

        mock_session_class.assert_called_once_with(engine, autoflush=True)
        mock_session.commit.assert_called_once()
        mock_session.rollback.assert_not_called()
        mock_session.close.assert_called_once()

    @patch("race_results_platform.database.session.Session")
    def test_get_session_rollback_on_exception(self, mock_session_class):
        """Test get_session rolls back transaction on exception."""
        mock_session = MagicMock(spec=Session)
        mock_session_class.return_value = mock_session

        with pytest.raises(ValueError):
            with get_session(MagicMock()):
                raise ValueError("Test error")

        mock_session.commit.assert_not_called()
        mock_session.rollback.assert_called_once()
        mock_session.close.assert_called_once()

    def test_rollback_discards_writes(self, engine):
        """Test a failing block leaves no rows behind on a real database."""
        with get_session(engine) as session:
            session.execute(text("CREATE TABLE probe (id INTEGER PRIMARY KEY)"))

        with pytest.raises(RuntimeError):
            with get_session(engine) as session:
                session.execute(text("INSERT INTO probe (id) VALUES (1)"))
                raise RuntimeError("abort")

        with get_read_only_session(engine) as session:
            assert session.execute(text("SELECT COUNT(*) FROM probe")).scalar_one() == 0


class TestGetReadOnlySession:
    """Test get_read_only_session() context manager."""

    @patch("race_results_platform.database.session.Session")
    def test_read_only_session_never_commits(self, mock_session_class):
        mock_session = MagicMock(spec=Session)
        mock_session_class.return_value = mock_session
        engine = MagicMock()

        with get_read_only_session(engine):
            pass

        mock_session_class.assert_called_once_with(engine, autoflush=False)
        mock_session.commit.assert_not_called()
        mock_session.close.assert_called_once()

    @patch("race_results_platform.database.session.Session")
    def test_read_only_session_rollback_on_exception(self, mock_session_class):
        mock_session = MagicMock(spec=Session)
        mock_session_class.return_value = mock_session

        with pytest.raises(RuntimeError):
            with get_read_only_session(MagicMock()):
                raise RuntimeError("Read error")

        mock_session.rollback.assert_called_once()
        mock_session.close.assert_called_once()
