import logging
import secrets
import uuid
from collections import namedtuple
from datetime import date, datetime, timezone

from config import (
    JOIN_CODE_ALPHABET,
    JOIN_CODE_ATTEMPTS,
    JOIN_CODE_LENGTH,
    ROSTER_SIZES,
    SEASON_LENGTHS,
)
from errors import LeagueError, LeagueNotFound, ValidationError
from scoring import ScoringConfig

logger = logging.getLogger(__name__)

HUMAN = "human"
SYNTHETIC = "synthetic"


class Participant(namedtuple("Participant", ["kind", "ident"])):
    """A league member: a real user or a synthetic test account.

    Only ``key`` is stored on member, matchup and score rows, so nothing
    downstream of joining can tell the two kinds apart.
    """

    __slots__ = ()

    @property
    def key(self):
        if self.kind == HUMAN:
            return str(self.ident)
        return f"{self.kind}:{self.ident}"


def human(user_id):
    return Participant(HUMAN, str(user_id))


def synthetic(test_id):
    return Participant(SYNTHETIC, str(test_id))


def utc_now():
    return datetime.now(timezone.utc)


def roster_lock_key(league_id):
    return f"league-roster:{league_id}"


def generate_join_code():
    return "".join(secrets.choice(JOIN_CODE_ALPHABET) for _ in range(JOIN_CODE_LENGTH))


def normalize_join_code(join_code):
    if not isinstance(join_code, str) or not join_code.strip():
        raise ValidationError("Join code is required")
    return join_code.strip().upper()


def parse_start_date(value):
    if isinstance(value, datetime):
        value = value.date()
    if not isinstance(value, date):
        try:
            value = date.fromisoformat(str(value))
        except ValueError as exc:
            raise ValidationError(f"Invalid start date '{value}'") from exc
    if value.weekday() != 0:
        raise ValidationError("Start date must be a Monday")
    return value


def fetch_league(db, league_id):
    league = db.execute("SELECT * FROM leagues WHERE id = %s", (league_id,)).fetchone()
    if league is None:
        raise LeagueNotFound(league_id)
    return league


def fetch_league_by_code(db, join_code):
    join_code = normalize_join_code(join_code)
    league = db.execute(
        "SELECT * FROM leagues WHERE join_code = %s", (join_code,)
    ).fetchone()
    if league is None:
        raise LeagueNotFound(join_code)
    return league


def fetch_members(db, league_id):
    """Members in join order."""
    return db.execute(
        "SELECT * FROM league_members WHERE league_id = %s ORDER BY join_order",
        (league_id,),
    ).fetchall()


def fetch_matchups(db, league_id, week=None):
    if week is None:
        return db.execute(
            """
            SELECT * FROM matchups WHERE league_id = %s
            ORDER BY week_number, player1_id
            """,
            (league_id,),
        ).fetchall()
    return db.execute(
        """
        SELECT * FROM matchups WHERE league_id = %s AND week_number = %s
        ORDER BY player1_id
        """,
        (league_id, week),
    ).fetchall()


def fetch_playoff_matches(db, league_id):
    return db.execute(
        "SELECT * FROM playoff_matches WHERE league_id = %s ORDER BY round, match_index",
        (league_id,),
    ).fetchall()


def league_scoring_config(league):
    return ScoringConfig.from_json(league["scoring_config"])


def create_league(
    db, name, roster_size, season_length_weeks, start_date, scoring_config=None
):
    """Create a league with an invite code and freeze its scoring config.

    Returns the league row.
    """
    if not isinstance(name, str) or not name.strip():
        raise ValidationError("League name is required")
    name = name.strip()
    try:
        roster_size = int(roster_size)
        season_length_weeks = int(season_length_weeks)
    except (TypeError, ValueError) as exc:
        raise ValidationError("Roster size and season length must be integers") from exc
    if roster_size not in ROSTER_SIZES:
        raise ValidationError(f"Roster size must be one of {ROSTER_SIZES}")
    if season_length_weeks not in SEASON_LENGTHS:
        raise ValidationError(f"Season length must be one of {SEASON_LENGTHS}")
    start = parse_start_date(start_date)
    if not isinstance(scoring_config, ScoringConfig):
        scoring_config = ScoringConfig.from_dict(scoring_config)

    league_id = str(uuid.uuid4())
    with db.transaction():
        for _ in range(JOIN_CODE_ATTEMPTS):
            join_code = generate_join_code()
            taken = db.execute(
                "SELECT 1 FROM leagues WHERE join_code = %s", (join_code,)
            ).fetchone()
            if not taken:
                break
        else:
            raise LeagueError("Could not allocate a unique join code")
        db.execute(
            """
            INSERT INTO leagues (
                id,
                name,
                join_code,
                roster_size,
                season_length_weeks,
                start_date,
                current_week,
                playoffs_started,
                scoring_config,
                is_active,
                created_at
            )
            VALUES (%s, %s, %s, %s, %s, %s, 0, 0, %s, 1, %s)
            """,
            (
                league_id,
                name,
                join_code,
                roster_size,
                season_length_weeks,
                start.isoformat(),
                scoring_config.to_json(),
                utc_now().isoformat(),
            ),
        )
    logger.info("Created league %s (%s), join code %s", league_id, name, join_code)
    return fetch_league(db, league_id)


def join_league(db, league_id, participant):
    """Add a participant to a league that has not started.

    Returns True when a member row was added, False when they were already in.
    """
    with db.transaction():
        db.lock(roster_lock_key(league_id))
        league = fetch_league(db, league_id)
        existing = db.execute(
            "SELECT 1 FROM league_members WHERE league_id = %s AND user_id = %s",
            (league_id, participant.key),
        ).fetchone()
        if existing:
            return False
        if league["current_week"] > 0:
            raise ValidationError("League has already started")
        row = db.execute(
            """
            SELECT COUNT(*) AS count, COALESCE(MAX(join_order), 0) AS last_order
            FROM league_members WHERE league_id = %s
            """,
            (league_id,),
        ).fetchone()
        if row["count"] >= league["roster_size"]:
            raise ValidationError("League is full")
        db.execute(
            """
            INSERT INTO league_members (league_id, user_id, kind, join_order, joined_at)
            VALUES (%s, %s, %s, %s, %s)
            """,
            (
                league_id,
                participant.key,
                participant.kind,
                row["last_order"] + 1,
                utc_now().isoformat(),
            ),
        )
    logger.info("%s joined league %s", participant.key, league_id)
    return True


def join_league_by_code(db, join_code, participant):
    """Join the league behind an invite code; returns ``(league, added)``."""
    league = fetch_league_by_code(db, join_code)
    added = join_league(db, league["id"], participant)
    return league, added


def leave_league(db, league_id, user_id):
    """Remove a member before the season starts.

    Returns False if ``user_id`` was not a member. Once the schedule exists a
    member can't leave, since their matchups would lose an opponent.
    """
    with db.transaction():
        db.lock(roster_lock_key(league_id))
        league = fetch_league(db, league_id)
        if league["current_week"] > 0:
            raise ValidationError("Can't leave a league that has already started")
        cursor = db.execute(
            "DELETE FROM league_members WHERE league_id = %s AND user_id = %s",
            (league_id, user_id),
        )
        removed = cursor.rowcount > 0
    if removed:
        logger.info("%s left league %s", user_id, league_id)
    return removed
