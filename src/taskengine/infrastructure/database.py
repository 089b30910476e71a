"""SQLite database schema and AppDatabase composition root."""

from __future__ import annotations

import sqlite3
from pathlib import Path

from taskengine.infrastructure.config import STORE_DIR
from taskengine.infrastructure.logger import logger


def create_schema(db: sqlite3.Connection) -> None:
    """Create all tables and indexes. Safe to call multiple times (IF NOT EXISTS)."""
    db.executescript("""
        CREATE TABLE IF NOT EXISTS tasks (
            id TEXT PRIMARY KEY,
            agent_id TEXT NOT NULL,
            principal_id TEXT NOT NULL,
            name TEXT NOT NULL,
            description TEXT,
            kind TEXT NOT NULL CHECK (kind IN ('scheduled', 'event_based')),
            status TEXT NOT NULL DEFAULT 'active'
                CHECK (status IN ('active', 'paused', 'completed', 'failed', 'cancelled')),
            instructions TEXT NOT NULL,
            tool_allow_list TEXT NOT NULL DEFAULT '[]',
            cron_expression TEXT,
            timezone TEXT NOT NULL DEFAULT 'UTC',
            next_run_at TEXT,
            last_run_at TEXT,
            trigger_type TEXT,
            total_executions INTEGER NOT NULL DEFAULT 0,
            successful_executions INTEGER NOT NULL DEFAULT 0,
            failed_executions INTEGER NOT NULL DEFAULT 0,
            consecutive_failures INTEGER NOT NULL DEFAULT 0,
            max_executions INTEGER,
            start_date TEXT,
            end_date TEXT,
            claim_token TEXT,
            claimed_until TEXT,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL,
            CHECK (kind != 'scheduled' OR cron_expression IS NOT NULL),
            CHECK (kind != 'event_based' OR trigger_type IS NOT NULL),
            CHECK (max_executions IS NULL OR max_executions > 0),
            CHECK (start_date IS NULL OR end_date IS NULL OR start_date < end_date)
        );
        CREATE INDEX IF NOT EXISTS idx_tasks_agent ON tasks(agent_id);
        CREATE INDEX IF NOT EXISTS idx_tasks_principal ON tasks(principal_id);
        CREATE INDEX IF NOT EXISTS idx_tasks_due ON tasks(status, kind, next_run_at);

        CREATE TABLE IF NOT EXISTS executions (
            id TEXT PRIMARY KEY,
            task_id TEXT NOT NULL REFERENCES tasks(id) ON DELETE CASCADE,
            agent_id TEXT NOT NULL,
            status TEXT NOT NULL DEFAULT 'pending'
                CHECK (status IN ('pending', 'running', 'completed', 'failed', 'cancelled')),
            trigger_source TEXT NOT NULL CHECK (trigger_source IN ('scheduled', 'event', 'manual')),
            trigger_data TEXT NOT NULL DEFAULT '{}',
            instructions_used TEXT NOT NULL,
            tools_used TEXT NOT NULL DEFAULT '[]',
            started_at TEXT,
            completed_at TEXT,
            duration_ms INTEGER,
            output TEXT,
            tool_outputs TEXT NOT NULL DEFAULT '[]',
            error_message TEXT,
            metadata TEXT NOT NULL DEFAULT '{}',
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL,
            CHECK (status != 'completed'
                   OR (started_at IS NOT NULL AND completed_at IS NOT NULL AND duration_ms IS NOT NULL)),
            CHECK (started_at IS NULL OR completed_at IS NULL OR started_at <= completed_at)
        );
        CREATE INDEX IF NOT EXISTS idx_executions_task ON executions(task_id, created_at);
        CREATE INDEX IF NOT EXISTS idx_executions_status ON executions(status);

        CREATE TABLE IF NOT EXISTS event_triggers (
            id TEXT PRIMARY KEY,
            task_id TEXT NOT NULL REFERENCES tasks(id) ON DELETE CASCADE,
            trigger_type TEXT NOT NULL,
            name TEXT NOT NULL,
            conditions TEXT NOT NULL DEFAULT '{}',
            is_active INTEGER NOT NULL DEFAULT 1,
            cooldown_minutes INTEGER NOT NULL DEFAULT 0 CHECK (cooldown_minutes >= 0),
            last_triggered_at TEXT,
            trigger_count INTEGER NOT NULL DEFAULT 0,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        );
        CREATE INDEX IF NOT EXISTS idx_event_triggers_task ON event_triggers(task_id);
        CREATE INDEX IF NOT EXISTS idx_event_triggers_type ON event_triggers(trigger_type, is_active);
    """)
    _run_schema_migrations(db)


def _run_schema_migrations(db: sqlite3.Connection) -> None:
    """Additive ALTER TABLE migrations for databases created by older releases."""

    # Add claim lease columns
    for column in ("claim_token", "claimed_until"):
        try:
            db.execute(f"ALTER TABLE tasks ADD COLUMN {column} TEXT")
            db.commit()
        except sqlite3.OperationalError:
            pass

    # Add consecutive_failures column
    try:
        db.execute("ALTER TABLE tasks ADD COLUMN consecutive_failures INTEGER NOT NULL DEFAULT 0")
        db.commit()
    except sqlite3.OperationalError:
        pass


def connect(path: str | Path) -> sqlite3.Connection:
    db = sqlite3.connect(str(path))
    db.row_factory = sqlite3.Row
    db.execute("PRAGMA foreign_keys = ON")
    return db


class AppDatabase:
    """Composition root that initializes the DB and exposes repositories."""

    def __init__(self) -> None:
        self._db: sqlite3.Connection | None = None
        # Repositories are set after init
        self.task_repo: TaskRepository | None = None  # type: ignore[assignment]
        self.trigger_repo: TriggerRepository | None = None  # type: ignore[assignment]
        self.ledger: ExecutionLedger | None = None  # type: ignore[assignment]

    @property
    def is_open(self) -> bool:
        return self._db is not None

    @property
    def db(self) -> sqlite3.Connection:
        assert self._db is not None, "Database not initialized. Call init() first."
        return self._db

    def init(self, db_path: Path | None = None) -> None:
        """Open (or create) the database file, by default at the standard location."""
        db_path = db_path or STORE_DIR / "tasks.db"
        db_path.parent.mkdir(parents=True, exist_ok=True)
        self._db = connect(db_path)
        self._db.execute("PRAGMA journal_mode = WAL")
        self._init_repos()
        logger.info("Database opened", path=str(db_path))

    def _init_test(self) -> None:
        """For tests only. Creates a fresh in-memory database."""
        self._db = connect(":memory:")
        self._init_repos()

    def close(self) -> None:
        if self._db is not None:
            self._db.close()
            self._db = None

    def _init_repos(self) -> None:
        assert self._db is not None
        create_schema(self._db)

        # Import here to avoid circular imports
        from taskengine.execution.ledger import ExecutionLedger
        from taskengine.tasks.repository import TaskRepository
        from taskengine.triggers.repository import TriggerRepository

        self.task_repo = TaskRepository(self._db)
        self.trigger_repo = TriggerRepository(self._db)
        self.ledger = ExecutionLedger(self._db)


# Singleton instance
database = AppDatabase()
