import logging
from datetime import datetime, timezone
from pathlib import Path

from .postgres_repository import ConnectionProtocol

LOGGER = logging.getLogger(__name__)

DEFAULT_MIGRATION_DIR = Path(__file__).resolve().parents[2] / "migrations"


class MigrationRunner:
    def __init__(self, conn: ConnectionProtocol, migration_dir: Path = DEFAULT_MIGRATION_DIR) -> None:
        self.conn = conn
        self.migration_dir = migration_dir
        self._ensure_schema_table()

    def _ensure_schema_table(self) -> None:
        cursor = self.conn.cursor()
        cursor.execute(
            """
            CREATE TABLE IF NOT EXISTS schema_migrations (
                filename TEXT PRIMARY KEY,
                applied_at TEXT NOT NULL
            )
            """
        )
        cursor.close()
        self.conn.commit()

    def _applied(self) -> set[str]:
        cursor = self.conn.cursor()
        cursor.execute("SELECT filename FROM schema_migrations")
        rows = cursor.fetchall()
        cursor.close()
        return {str(row[0]) for row in rows}

    def pending(self) -> list[Path]:
        applied = self._applied()
        return [
            path
            for path in sorted(self.migration_dir.glob("*.sql"))
            if path.name not in applied
        ]

    def apply_pending(self) -> list[str]:
        executed: list[str] = []

        for migration_path in self.pending():
            name = migration_path.name
            sql = migration_path.read_text(encoding="utf-8")
            cursor = self.conn.cursor()
            try:
                cursor.execute(sql)
                cursor.execute(
                    "INSERT INTO schema_migrations(filename, applied_at) VALUES (%s, %s)",
                    (name, datetime.now(timezone.utc).isoformat()),
                )
                self.conn.commit()
            except Exception:
                self.conn.rollback()
                LOGGER.error("migration %s failed, rolled back", name)
                raise
            finally:
                cursor.close()
            LOGGER.info("applied migration %s", name)
            executed.append(name)

        return executed
