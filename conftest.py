from datetime import date, datetime, time, timedelta, timezone

import pytest

import events
from config import ROSTER_SIZES
from db_adapter import get_db_connection, init_schema
from leagues import create_league, human, join_league
from schedule import start_season
from sync import record_weekly_metrics

START_DATE = date(2026, 1, 5)  # a Monday
FUTURE_START_DATE = date(2099, 1, 5)  # also a Monday


def week_end(week, start_date=START_DATE):
    """UTC instant the given week ends."""
    first_day = datetime.combine(start_date, time.min, tzinfo=timezone.utc)
    return first_day + timedelta(days=7 * week)


def connect(path):
    return get_db_connection(database_url="", sqlite_path=path)


def set_points(db, league_id, user_id, week, points):
    """Record a weekly score worth exactly ``points`` (<= 100) under default scoring."""
    return record_weekly_metrics(
        db, league_id, user_id, week, {"steps": points * 1000}
    )


def fetch_member(db, league_id, user_id):
    return db.execute(
        "SELECT * FROM league_members WHERE league_id = %s AND user_id = %s",
        (league_id, user_id),
    ).fetchone()


@pytest.fixture
def db_path(tmp_path):
    return str(tmp_path / "league.db")


@pytest.fixture
def db(db_path):
    conn = connect(db_path)
    init_schema(conn)
    yield conn
    conn.close()


@pytest.fixture(autouse=True)
def reset_event_subscribers():
    yield
    events.clear()


@pytest.fixture
def make_league(db):
    def _make(
        players,
        season_length_weeks=6,
        scoring_config=None,
        start=True,
        start_date=START_DATE,
    ):
        roster_size = min(size for size in ROSTER_SIZES if size >= len(players))
        league = create_league(
            db,
            "Test League",
            roster_size,
            season_length_weeks,
            start_date,
            scoring_config=scoring_config,
        )
        for player in players:
            join_league(db, league["id"], human(player))
        if start:
            start_season(db, league["id"])
        return league["id"]

    return _make
