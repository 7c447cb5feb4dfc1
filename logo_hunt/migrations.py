"""
Database migration system. Tables come from SQLModel metadata; migrations add what
create_all does not (indexes used by the dashboards).
"""

from sqlmodel import SQLModel, Field, create_engine, text, Session, select
from typing import Optional
from datetime import datetime, timezone
import logging

from . import settings

logger = logging.getLogger(__name__)


class Migration(SQLModel, table=True):
    """Track applied migrations"""
    id: Optional[int] = Field(default=None, primary_key=True)
    name: str = Field(index=True, unique=True)
    applied_at: datetime


MIGRATIONS = [
    (
        "001_dashboard_indexes",
        """
        CREATE INDEX IF NOT EXISTS idx_leaderboard_timestamp ON leaderboard(timestamp);
        CREATE INDEX IF NOT EXISTS idx_answer_history_timestamp ON answer_history(timestamp);
        CREATE INDEX IF NOT EXISTS idx_game_state_completed ON game_state(is_completed)
        """,
    ),
]


def get_engine(url: str = settings.DATABASE_URL):
    return create_engine(url, **settings.engine_kwargs(url))


def has_migration_been_applied(engine, migration_name: str) -> bool:
    Migration.metadata.create_all(engine, tables=[Migration.__table__])  # type: ignore[attr-defined]
    with Session(engine) as session:
        result = session.exec(
            select(Migration).where(Migration.name == migration_name)
        ).first()
        return result is not None


def apply_migration(engine, migration_name: str, migration_sql: str) -> bool:
    """Apply a migration and record it. Returns False when it was already applied."""
    if has_migration_been_applied(engine, migration_name):
        logger.info(f"Migration {migration_name} already applied, skipping")
        return False

    logger.info(f"Applying migration: {migration_name}")
    with Session(engine) as session:
        try:
            for statement in migration_sql.strip().split(';'):
                statement = statement.strip()
                if statement:
                    session.execute(text(statement))
            session.add(Migration(name=migration_name, applied_at=datetime.now(timezone.utc)))
            session.commit()
        except Exception as e:
            session.rollback()
            logger.error(f"Failed to apply migration {migration_name}: {e}")
            raise
    logger.info(f"Migration {migration_name} applied successfully")
    return True


def run_migrations(engine=None):
    """Run all pending migrations"""
    engine = engine or get_engine()
    for name, sql in MIGRATIONS:
        apply_migration(engine, name, sql)
    logger.info("All migrations completed")


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    run_migrations()
