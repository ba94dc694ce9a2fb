import sqlite3
from pathlib import Path


def path(root: Path, name: str) -> Path:
    target = Path(root) / f"{name}.db"
    target.parent.mkdir(parents=True, exist_ok=True)
    return target


def connect(root: Path, name: str) -> sqlite3.Connection:
    db = sqlite3.connect(path(root, name), timeout=20, isolation_level=None)
    db.execute("PRAGMA journal_mode=WAL")
    db.execute("PRAGMA busy_timeout = 20000")
    db.execute("PRAGMA synchronous = FULL")
    return db


def setup(root: Path) -> None:
    db = connect(root, "gamemath")
    try:
        db.execute(
            """
            CREATE TABLE IF NOT EXISTS game_math (
                model_id TEXT PRIMARY KEY,
                payload TEXT NOT NULL,
                updated_at TEXT DEFAULT CURRENT_TIMESTAMP
            )
            """
        )
    finally:
        db.close()

    db = connect(root, "rounds")
    try:
        db.execute(
            """
            CREATE TABLE IF NOT EXISTS round_results (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                round_id TEXT NOT NULL,
                game TEXT NOT NULL,
                outcome TEXT NOT NULL,
                tier TEXT NOT NULL DEFAULT '',
                stake TEXT NOT NULL,
                currency TEXT NOT NULL,
                payout TEXT NOT NULL,
                balance_delta TEXT NOT NULL,
                detail TEXT NOT NULL DEFAULT '{}',
                settled_at REAL NOT NULL
            )
            """
        )
        db.execute("CREATE INDEX IF NOT EXISTS idx_round_results_round ON round_results(round_id)")
        db.execute(
            """
            CREATE TRIGGER IF NOT EXISTS trg_round_results_no_update
            BEFORE UPDATE ON round_results
            BEGIN
                SELECT RAISE(ABORT, 'round results are immutable');
            END;
            """
        )
        db.execute(
            """
            CREATE TRIGGER IF NOT EXISTS trg_round_results_no_delete
            BEFORE DELETE ON round_results
            BEGIN
                SELECT RAISE(ABORT, 'round results are append-only');
            END;
            """
        )
        db.execute(
            """
            CREATE TABLE IF NOT EXISTS crash_rounds (
                round_id TEXT PRIMARY KEY,
                stake TEXT NOT NULL,
                currency TEXT NOT NULL,
                crash_step INTEGER NOT NULL,
                started_at REAL NOT NULL,
                created_at TEXT DEFAULT CURRENT_TIMESTAMP
            )
            """
        )
    finally:
        db.close()
