"""
Database adapter to support both SQLite (local dev, tests) and PostgreSQL (production)
"""

import logging
import sqlite3
from contextlib import contextmanager

import psycopg2
import psycopg2.extras

from config import DATABASE_URL, SQLITE_PATH, SQLITE_TIMEOUT_SECONDS

logger = logging.getLogger(__name__)

# Errors raised by either backend when the store is unavailable or rejects a write
DatabaseError = (sqlite3.Error, psycopg2.Error)


class Database:
    """Wrapper that gives SQLite and PostgreSQL connections the same interface.

    Queries are written with ``%s`` placeholders and rewritten for SQLite.
    Both backends run in autocommit mode outside of ``transaction()`` so every
    multi-statement write has to go through it.
    """

    def __init__(self, conn, postgres=False):
        self.conn = conn
        self.postgres = postgres
        self.in_transaction = False

    def execute(self, query, params=None):
        if not self.postgres:
            query = query.replace("%s", "?")
        cursor = self.conn.cursor()
        if params:
            cursor.execute(query, params)
        else:
            cursor.execute(query)
        return cursor

    @contextmanager
    def transaction(self):
        """Run the block as one transaction; roll back on any exception.

        On SQLite ``BEGIN IMMEDIATE`` takes the database write lock up front,
        so concurrent writers queue here until the holder commits.
        """
        if self.in_transaction:
            raise RuntimeError("Nested transactions are not supported")
        self.execute("BEGIN" if self.postgres else "BEGIN IMMEDIATE")
        self.in_transaction = True
        try:
            yield self
            self.execute("COMMIT")
        except BaseException:
            self.rollback()
            raise
        finally:
            self.in_transaction = False

    def lock(self, key):
        """Take an exclusive lock on ``key`` until the current transaction ends."""
        if not self.in_transaction:
            raise RuntimeError("lock() must be called inside transaction()")
        if self.postgres:
            self.execute("SELECT pg_advisory_xact_lock(hashtext(%s))", (key,))
        # SQLite: already held since BEGIN IMMEDIATE

    def rollback(self):
        if not self.postgres and not self.conn.in_transaction:
            return
        try:
            self.conn.cursor().execute("ROLLBACK")
        except DatabaseError as exc:
            logger.warning("Rollback failed: %s", exc)

    def close(self):
        self.conn.close()


def dict_factory(cursor, row):
    """Convert row to dict for consistent access pattern"""
    return {k[0]: row[i] for i, k in enumerate(cursor.description)}


def get_db_connection(database_url=None, sqlite_path=None):
    """Get a database connection (SQLite or PostgreSQL)"""
    if database_url is None:
        database_url = DATABASE_URL
    if database_url:
        conn = psycopg2.connect(
            database_url, cursor_factory=psycopg2.extras.RealDictCursor
        )
        conn.autocommit = True
        return Database(conn, postgres=True)

    conn = sqlite3.connect(
        sqlite_path or SQLITE_PATH,
        timeout=SQLITE_TIMEOUT_SECONDS,
        isolation_level=None,
    )
    conn.row_factory = dict_factory
    conn.execute("PRAGMA foreign_keys = ON")
    return Database(conn, postgres=False)


def init_schema(db):
    """Initialize database schema (works for both SQLite and PostgreSQL)"""
    real = "DOUBLE PRECISION" if db.postgres else "REAL"

    with db.transaction():
        db.execute(
            """
            CREATE TABLE IF NOT EXISTS leagues (
                id TEXT PRIMARY KEY,
                name TEXT NOT NULL,
                join_code TEXT NOT NULL UNIQUE,
                roster_size INTEGER NOT NULL,
                season_length_weeks INTEGER NOT NULL,
                start_date TEXT NOT NULL,
                current_week INTEGER NOT NULL DEFAULT 0 CHECK (current_week >= 0),
                playoffs_started INTEGER NOT NULL DEFAULT 0,
                champion_id TEXT,
                scoring_config TEXT NOT NULL,
                is_active INTEGER NOT NULL DEFAULT 1,
                created_at TEXT NOT NULL,
                last_week_finalized_at TEXT
            )
            """
        )
        db.execute(
            f"""
            CREATE TABLE IF NOT EXISTS league_members (
                league_id TEXT NOT NULL REFERENCES leagues (id) ON DELETE CASCADE,
                user_id TEXT NOT NULL,
                kind TEXT NOT NULL,
                join_order INTEGER NOT NULL,
                wins INTEGER NOT NULL DEFAULT 0 CHECK (wins >= 0),
                losses INTEGER NOT NULL DEFAULT 0 CHECK (losses >= 0),
                ties INTEGER NOT NULL DEFAULT 0 CHECK (ties >= 0),
                cumulative_points {real} NOT NULL DEFAULT 0 CHECK (cumulative_points >= 0),
                playoff_seed INTEGER,
                playoff_tiebreaker_points {real},
                eliminated INTEGER NOT NULL DEFAULT 0,
                joined_at TEXT NOT NULL,
                PRIMARY KEY (league_id, user_id)
            )
            """
        )
        db.execute(
            f"""
            CREATE TABLE IF NOT EXISTS matchups (
                league_id TEXT NOT NULL REFERENCES leagues (id) ON DELETE CASCADE,
                week_number INTEGER NOT NULL,
                player1_id TEXT NOT NULL,
                player2_id TEXT NOT NULL,
                player1_score {real},
                player2_score {real},
                winner_id TEXT,
                is_tie INTEGER NOT NULL DEFAULT 0,
                is_finalized INTEGER NOT NULL DEFAULT 0,
                finalized_at TEXT,
                PRIMARY KEY (league_id, week_number, player1_id),
                UNIQUE (league_id, week_number, player2_id)
            )
            """
        )
        db.execute(
            f"""
            CREATE TABLE IF NOT EXISTS weekly_scores (
                league_id TEXT NOT NULL REFERENCES leagues (id) ON DELETE CASCADE,
                user_id TEXT NOT NULL,
                week_number INTEGER NOT NULL,
                steps {real} NOT NULL DEFAULT 0,
                sleep_hours {real} NOT NULL DEFAULT 0,
                calories {real} NOT NULL DEFAULT 0,
                workout_minutes {real} NOT NULL DEFAULT 0,
                distance_miles {real} NOT NULL DEFAULT 0,
                total_points {real} NOT NULL DEFAULT 0,
                last_synced_at TEXT,
                PRIMARY KEY (league_id, user_id, week_number)
            )
            """
        )
        db.execute(
            f"""
            CREATE TABLE IF NOT EXISTS playoff_matches (
                league_id TEXT NOT NULL REFERENCES leagues (id) ON DELETE CASCADE,
                round INTEGER NOT NULL CHECK (round IN (1, 2)),
                match_index INTEGER NOT NULL,
                week_number INTEGER NOT NULL,
                player1_id TEXT NOT NULL,
                player2_id TEXT NOT NULL,
                player1_score {real},
                player2_score {real},
                winner_id TEXT,
                is_finalized INTEGER NOT NULL DEFAULT 0,
                finalized_at TEXT,
                PRIMARY KEY (league_id, round, match_index)
            )
            """
        )

        # Create indexes for better query performance
        db.execute(
            "CREATE INDEX IF NOT EXISTS idx_matchups_week ON matchups(league_id, week_number)"
        )
        db.execute(
            "CREATE INDEX IF NOT EXISTS idx_matchups_finalized ON matchups(league_id, is_finalized)"
        )
        db.execute(
            "CREATE INDEX IF NOT EXISTS idx_weekly_scores_week ON weekly_scores(league_id, week_number)"
        )
