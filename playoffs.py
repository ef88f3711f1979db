"""Four-player single-elimination playoff.

State per league: not-started -> semifinals -> finals -> complete.

Seeding takes the top four of ``league_standings`` and pairs 1v4 and 2v3 in
the first week after the regular season; the final is played the week after.
A playoff match can't end level. Equal weekly scores are broken by:

1. the higher regular-season cumulative points, frozen when the bracket was
   seeded so late syncs can't change them,
2. then the better (lower) seed,
3. then player1, which is already the better seed in every match we create.
"""

import logging

import events
from config import PLAYOFF_SIZE
from errors import ValidationError
from finalizer import fetch_week_totals
from leagues import fetch_league, fetch_members, fetch_playoff_matches, utc_now
from standings import league_standings

logger = logging.getLogger(__name__)

SEMIFINAL_ROUND = 1
FINAL_ROUND = 2

NOT_STARTED = "not-started"
SEMIFINALS = "semifinals"
FINALS = "finals"
COMPLETE = "complete"


def playoff_lock_key(league_id):
    return f"playoffs:{league_id}"


def label_for_round(round_number):
    if round_number == SEMIFINAL_ROUND:
        return "Semifinals"
    if round_number == FINAL_ROUND:
        return "Finals"
    return f"Round {round_number}"


def seed_pairings(ranked):
    """Seed the top four of ``ranked``: returns ``[(seed1, seed4), (seed2, seed3)]``."""
    if len(ranked) < PLAYOFF_SIZE:
        raise ValidationError(f"Need at least {PLAYOFF_SIZE} players for playoffs")
    top = ranked[:PLAYOFF_SIZE]
    return [(top[0], top[3]), (top[1], top[2])]


def playoffs_due(league):
    return (
        not league["playoffs_started"]
        and league["current_week"] > league["season_length_weeks"]
    )


def _tiebreak_key(member):
    points = member.get("playoff_tiebreaker_points")
    if points is None:
        points = member["cumulative_points"]
    seed = member.get("playoff_seed") or PLAYOFF_SIZE + 1
    return points, -seed


def decide_playoff_winner(match, score1, score2, members):
    """Return ``(winner_id, loser_id)``; never a tie."""
    player1_id = match["player1_id"]
    player2_id = match["player2_id"]
    if score1 > score2:
        return player1_id, player2_id
    if score2 > score1:
        return player2_id, player1_id
    key1 = _tiebreak_key(members[player1_id])
    key2 = _tiebreak_key(members[player2_id])
    if key2 > key1:
        return player2_id, player1_id
    return player1_id, player2_id


def _insert_playoff_match(db, league_id, round_number, match_index, week, player1, player2):
    db.execute(
        """
        INSERT INTO playoff_matches (
            league_id,
            round,
            match_index,
            week_number,
            player1_id,
            player2_id
        )
        VALUES (%s, %s, %s, %s, %s, %s)
        ON CONFLICT DO NOTHING
        """,
        (league_id, round_number, match_index, week, player1, player2),
    )


def start_playoffs(db, league_id):
    """Seed the bracket and create both semifinals, once.

    Returns True only for the call that created the bracket.
    """
    with db.transaction():
        db.lock(playoff_lock_key(league_id))
        league = fetch_league(db, league_id)
        if not playoffs_due(league):
            return False
        ranked = league_standings(db, league_id)
        if len(ranked) < PLAYOFF_SIZE:
            logger.warning(
                "League %s has %d members; not enough for playoffs",
                league_id,
                len(ranked),
            )
            return False

        for seed, member in enumerate(ranked[:PLAYOFF_SIZE], start=1):
            db.execute(
                """
                UPDATE league_members
                SET playoff_seed = %s, playoff_tiebreaker_points = cumulative_points
                WHERE league_id = %s AND user_id = %s
                """,
                (seed, league_id, member["user_id"]),
            )
        week = league["season_length_weeks"] + 1
        for match_index, (high, low) in enumerate(seed_pairings(ranked), start=1):
            _insert_playoff_match(
                db,
                league_id,
                SEMIFINAL_ROUND,
                match_index,
                week,
                high["user_id"],
                low["user_id"],
            )
        db.execute(
            "UPDATE leagues SET playoffs_started = 1 WHERE id = %s AND playoffs_started = 0",
            (league_id,),
        )

    seeds = [member["user_id"] for member in ranked[:PLAYOFF_SIZE]]
    logger.info("Playoffs started for league %s, seeds %s", league_id, seeds)
    events.emit(events.PLAYOFFS_STARTED, league_id=league_id, seeds=seeds)
    return True


def _create_final_if_ready(db, league, members):
    """Create the final once both semifinals are done. Caller holds the playoff lock."""
    league_id = league["id"]
    semis = db.execute(
        "SELECT * FROM playoff_matches WHERE league_id = %s AND round = %s",
        (league_id, SEMIFINAL_ROUND),
    ).fetchall()
    if len(semis) < 2 or not all(semi["is_finalized"] for semi in semis):
        return None
    existing = db.execute(
        "SELECT 1 FROM playoff_matches WHERE league_id = %s AND round = %s",
        (league_id, FINAL_ROUND),
    ).fetchone()
    if existing:
        return None

    finalists = sorted(
        (semi["winner_id"] for semi in semis),
        key=lambda user_id: members[user_id]["playoff_seed"] or PLAYOFF_SIZE + 1,
    )
    week = league["season_length_weeks"] + 2
    _insert_playoff_match(db, league_id, FINAL_ROUND, 1, week, *finalists)
    return finalists


def finalize_playoff_match(db, league_id, round_number, match_index):
    """Score one playoff match, eliminate the loser and advance the bracket.

    Returns False if the match was already finalized.
    """
    with db.transaction():
        db.lock(playoff_lock_key(league_id))
        league = fetch_league(db, league_id)
        match = db.execute(
            """
            SELECT * FROM playoff_matches
            WHERE league_id = %s AND round = %s AND match_index = %s
            """,
            (league_id, round_number, match_index),
        ).fetchone()
        if match is None:
            raise ValidationError(
                f"No playoff match {round_number}/{match_index} in league {league_id}"
            )
        if match["is_finalized"]:
            return False

        totals = fetch_week_totals(db, league_id, match["week_number"])
        score1 = totals.get(match["player1_id"], 0.0)
        score2 = totals.get(match["player2_id"], 0.0)
        members = {member["user_id"]: member for member in fetch_members(db, league_id)}
        winner_id, loser_id = decide_playoff_winner(match, score1, score2, members)

        db.execute(
            """
            UPDATE playoff_matches
            SET player1_score = %s,
                player2_score = %s,
                winner_id = %s,
                is_finalized = 1,
                finalized_at = %s
            WHERE league_id = %s AND round = %s AND match_index = %s
            """,
            (
                score1,
                score2,
                winner_id,
                utc_now().isoformat(),
                league_id,
                round_number,
                match_index,
            ),
        )
        db.execute(
            "UPDATE league_members SET eliminated = 1 WHERE league_id = %s AND user_id = %s",
            (league_id, loser_id),
        )

        finalists = None
        if round_number == SEMIFINAL_ROUND:
            finalists = _create_final_if_ready(db, league, members)
        else:
            db.execute(
                """
                UPDATE leagues SET champion_id = %s, is_active = 0
                WHERE id = %s AND champion_id IS NULL
                """,
                (winner_id, league_id),
            )

    logger.info(
        "%s %s of league %s: %s beat %s (%s-%s)",
        label_for_round(round_number),
        match_index,
        league_id,
        winner_id,
        loser_id,
        score1,
        score2,
    )
    if finalists:
        logger.info("Final created for league %s: %s vs %s", league_id, *finalists)
    if round_number == FINAL_ROUND:
        events.emit(events.CHAMPION_CROWNED, league_id=league_id, champion_id=winner_id)
    return True


def bracket_state(league, matches):
    if not league["playoffs_started"]:
        return NOT_STARTED
    if league["champion_id"]:
        return COMPLETE
    if any(match["round"] == FINAL_ROUND for match in matches):
        return FINALS
    return SEMIFINALS


def build_bracket(db, league_id):
    """Bracket view: state, both rounds with seeds, and the champion if any."""
    league = fetch_league(db, league_id)
    matches = fetch_playoff_matches(db, league_id)
    seeds = {
        member["user_id"]: member["playoff_seed"]
        for member in fetch_members(db, league_id)
        if member["playoff_seed"]
    }

    def view(match):
        return {
            "round": match["round"],
            "label": label_for_round(match["round"]),
            "match_index": match["match_index"],
            "week_number": match["week_number"],
            "player1_id": match["player1_id"],
            "player1_seed": seeds.get(match["player1_id"]),
            "player1_score": match["player1_score"],
            "player2_id": match["player2_id"],
            "player2_seed": seeds.get(match["player2_id"]),
            "player2_score": match["player2_score"],
            "winner_id": match["winner_id"],
            "is_finalized": bool(match["is_finalized"]),
        }

    finals = [view(m) for m in matches if m["round"] == FINAL_ROUND]
    return {
        "state": bracket_state(league, matches),
        "semifinals": [view(m) for m in matches if m["round"] == SEMIFINAL_ROUND],
        "final": finals[0] if finals else None,
        "champion_id": league["champion_id"],
    }
