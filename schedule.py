import logging

from errors import ValidationError
from leagues import fetch_league, fetch_members, roster_lock_key

logger = logging.getLogger(__name__)


def build_round_robin(player_ids, limit_weeks):
    """Circle-method pairings for ``limit_weeks`` weeks.

    The first player stays fixed while the rest rotate one slot per week.
    Odd rosters get a ``None`` slot; whoever lands on it has a bye and no
    pairing that week. Seasons longer than N-1 weeks repeat the cycle.
    """
    rotation = prepare_rotation(player_ids)
    if len(rotation) < 2:
        return [[] for _ in range(limit_weeks)]
    rounds = []
    current = rotation[:]
    for _ in range(limit_weeks):
        rounds.append(capture_pairs(current))
        current = rotate_players(current)
    return [clean_pairs(pairs) for pairs in rounds]


def prepare_rotation(player_ids):
    roster = list(player_ids)
    if len(roster) % 2 != 0:
        roster.append(None)
    return roster


def capture_pairs(rotation):
    half = len(rotation) // 2
    return [normalize_pair(rotation[i], rotation[-(i + 1)]) for i in range(half)]


def rotate_players(rotation):
    if len(rotation) <= 2:
        return rotation[:]
    return [rotation[0], rotation[-1], *rotation[1:-1]]


def normalize_pair(player_a, player_b):
    if player_a is None:
        return player_b, None
    return player_a, player_b


def clean_pairs(pairs):
    return [pair for pair in pairs if pair[0] is not None and pair[1] is not None]


def bye_players(player_ids, week):
    """Players with no opponent in ``week`` (1-based)."""
    if len(player_ids) < 2:
        return list(player_ids)
    pairs = build_round_robin(player_ids, week)[week - 1]
    paired = {player for pair in pairs for player in pair}
    return [player for player in player_ids if player not in paired]


def insert_schedule(db, league_id, player_ids, season_length_weeks):
    """Insert every regular-season matchup; existing rows are left alone.

    Must run inside a transaction. Returns the number of rows inserted.
    """
    if len(player_ids) < 2:
        return 0
    inserted = 0
    weeks = build_round_robin(player_ids, season_length_weeks)
    for week_number, pairs in enumerate(weeks, start=1):
        for player1_id, player2_id in pairs:
            cursor = db.execute(
                """
                INSERT INTO matchups (league_id, week_number, player1_id, player2_id)
                VALUES (%s, %s, %s, %s)
                ON CONFLICT DO NOTHING
                """,
                (league_id, week_number, player1_id, player2_id),
            )
            inserted += max(cursor.rowcount, 0)
    return inserted


def generate_schedule(db, league_id):
    """Fill in a started league's regular-season matchups. Safe to call repeatedly.

    Does nothing before the season starts: the roster can still change then,
    and pairings from a partial roster would collide with the final ones.
    """
    with db.transaction():
        db.lock(roster_lock_key(league_id))
        league = fetch_league(db, league_id)
        if league["current_week"] == 0:
            logger.debug("League %s has not started; no schedule yet", league_id)
            return 0
        player_ids = [member["user_id"] for member in fetch_members(db, league_id)]
        inserted = insert_schedule(
            db, league_id, player_ids, league["season_length_weeks"]
        )
    if inserted:
        logger.info("Generated %d matchups for league %s", inserted, league_id)
    return inserted


def start_season(db, league_id):
    """Move a league from not-started to week 1 and build its schedule.

    Returns False if the league had already started.
    """
    with db.transaction():
        db.lock(roster_lock_key(league_id))
        league = fetch_league(db, league_id)
        if league["current_week"] > 0:
            logger.debug("League %s already started", league_id)
            return False
        player_ids = [member["user_id"] for member in fetch_members(db, league_id)]
        if len(player_ids) < 2:
            raise ValidationError("Need at least two members to start a season")
        db.execute(
            "UPDATE leagues SET current_week = 1 WHERE id = %s AND current_week = 0",
            (league_id,),
        )
        inserted = insert_schedule(
            db, league_id, player_ids, league["season_length_weeks"]
        )
    logger.info(
        "Started league %s with %d members and %d matchups",
        league_id,
        len(player_ids),
        inserted,
    )
    return True
