"""
Unit tests for database session helpers.
"""
from sqlalchemy import create_engine, inspect
from sqlalchemy.orm import Session
from sqlalchemy.pool import StaticPool

import backend.database as database


class TestDatabaseHelpers:
    """Tests for get_db, bind_engine and init_db."""

    def test_get_db_yields_session(self, bound_database):
        gen = database.get_db()
        session = next(gen)

        assert isinstance(session, Session)
        assert session.get_bind() is bound_database
        gen.close()

    def test_get_engine_returns_bound_engine(self, bound_database):
        assert database.get_engine() is bound_database

    def test_init_db_creates_learning_tables(self):
        """Test the learning tables are registered and created."""
        engine = create_engine(
            "sqlite:///:memory:",
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )

        database.init_db(engine)

        tables = set(inspect(engine).get_table_names())
        assert {"learned_patterns", "correction_feedback", "learning_metrics", "learning_log"} <= tables

    def test_sqlite_engine_skips_pool_sizing(self):
        engine = database.create_db_engine("sqlite:///:memory:")

        assert engine.dialect.name == "sqlite"
