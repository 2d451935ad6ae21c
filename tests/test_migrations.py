from pathlib import Path

import allure
from sqlalchemy import text

from dualpath.jobs.repository import JobStore

pytestmark = [
    allure.epic("Job Queue"),
    allure.feature("Schema Migrations"),
]


def test_alembic_schema_is_initialized_to_head(tmp_path: Path) -> None:
    store = JobStore(tmp_path / "migrations.db")
    store.init_schema()
    store.init_schema()

    with store.engine.connect() as connection:
        version = connection.execute(text("SELECT version_num FROM alembic_version")).all()
        assert [row[0] for row in version] == ["20261019_0001"]

        tables = connection.execute(
            text(
                """
                SELECT name
                FROM sqlite_master
                WHERE type = 'table'
                  AND name IN ('jobs', 'job_events', 'fast_replies')
                ORDER BY name
                """,
            ),
        ).all()
        assert [row[0] for row in tables] == ["fast_replies", "job_events", "jobs"]

        journal_mode = connection.execute(text("PRAGMA journal_mode")).scalar_one()
        assert str(journal_mode).lower() == "wal"
    store.close()
