"""Tests for the Alembic migration setup."""

from sqlalchemy import create_engine, inspect

from loopcore.config import settings
from loopcore.core.migrations import get_alembic_config, get_head_revision, run_migrations


class TestMigrations:
    """Tests for migration configuration and the initial schema."""

    def test_config_points_at_migrations(self):
        config = get_alembic_config()

        assert config.get_main_option("script_location").endswith("migrations")
        assert config.attributes["skip_logging_config"] is True

    def test_head_revision(self):
        assert get_head_revision() == "001_initial"

    def test_upgrade_creates_tables(self, tmp_path, monkeypatch):
        db_path = tmp_path / "migrated.db"
        monkeypatch.setattr(settings, "database_url", f"sqlite+aiosqlite:///{db_path}")

        run_migrations()

        engine = create_engine(f"sqlite:///{db_path}")
        try:
            inspector = inspect(engine)
            tables = set(inspector.get_table_names())
            assert {"blobs", "pump_events", "alert_entries", "alembic_version"} <= tables
            unique = inspector.get_unique_constraints("pump_events")
            assert any(c["column_names"] == ["sync_identifier"] for c in unique)
        finally:
            engine.dispose()
