"""Exactly-once finalization of a league's regular-season week.

A week moves open -> finalizing -> finalized, and the last regular week
leaves the league season-complete (``current_week > season_length_weeks``)
and ready for playoffs. Any number of clients may ask for the same week to
be finalized at the same time; the lock plus the ``current_week`` re-check
under that lock make every call after the first a no-op.
"""

import logging

import events
from config import SCORE_DECIMALS
from leagues import fetch_league, fetch_members, utc_now
from scoring import compare_scores

logger = logging.getLogger(__name__)


def week_lock_key(league_id, week):
    return f"finalize-week:{league_id}:{week}"


def week_is_open(league, week):
    return (
        not league["playoffs_started"]
        and league["current_week"] == week
        and 1 <= week <= league["season_length_weeks"]
    )


def fetch_week_totals(db, league_id, week):
    rows = db.execute(
        """
        SELECT user_id, total_points FROM weekly_scores
        WHERE league_id = %s AND week_number = %s
        """,
        (league_id, week),
    ).fetchall()
    return {row["user_id"]: row["total_points"] or 0.0 for row in rows}


def score_matchup(matchup, totals):
    """Winner, tie flag and both scores; a player who never synced scores 0."""
    score1 = totals.get(matchup["player1_id"], 0.0)
    score2 = totals.get(matchup["player2_id"], 0.0)
    winner, is_tie, margin = compare_scores(score1, score2)
    winner_id = None
    if winner == 1:
        winner_id = matchup["player1_id"]
    elif winner == 2:
        winner_id = matchup["player2_id"]
    return {
        "player1_score": score1,
        "player2_score": score2,
        "winner_id": winner_id,
        "is_tie": is_tie,
        "margin": margin,
    }


def apply_result_to_stats(stats, matchup, result):
    p1 = stats.get(matchup["player1_id"])
    p2 = stats.get(matchup["player2_id"])
    if not p1 or not p2:
        logger.warning(
            "Matchup %s vs %s references a missing member",
            matchup["player1_id"],
            matchup["player2_id"],
        )
        return
    p1["cumulative_points"] = round(
        p1["cumulative_points"] + result["player1_score"], SCORE_DECIMALS
    )
    p2["cumulative_points"] = round(
        p2["cumulative_points"] + result["player2_score"], SCORE_DECIMALS
    )
    if result["is_tie"]:
        p1["ties"] += 1
        p2["ties"] += 1
    elif result["winner_id"] == matchup["player1_id"]:
        p1["wins"] += 1
        p2["losses"] += 1
    else:
        p2["wins"] += 1
        p1["losses"] += 1


def _record_matchup(db, matchup, result, finalized_at):
    db.execute(
        """
        UPDATE matchups
        SET player1_score = %s,
            player2_score = %s,
            winner_id = %s,
            is_tie = %s,
            is_finalized = 1,
            finalized_at = %s
        WHERE league_id = %s
          AND week_number = %s
          AND player1_id = %s
          AND is_finalized = 0
        """,
        (
            result["player1_score"],
            result["player2_score"],
            result["winner_id"],
            1 if result["is_tie"] else 0,
            finalized_at,
            matchup["league_id"],
            matchup["week_number"],
            matchup["player1_id"],
        ),
    )


def _persist_stats(db, league_id, stats, touched):
    for user_id in touched:
        row = stats[user_id]
        db.execute(
            """
            UPDATE league_members
            SET wins = %s, losses = %s, ties = %s, cumulative_points = %s
            WHERE league_id = %s AND user_id = %s
            """,
            (
                row["wins"],
                row["losses"],
                row["ties"],
                row["cumulative_points"],
                league_id,
                user_id,
            ),
        )


def finalize_week(db, league_id, week):
    """Score and lock every matchup of ``week``, update records, advance the week.

    Returns True if this call did the finalization, False if the week was not
    open (already finalized, not reached yet, or playoffs running). Store
    errors propagate after the whole transaction has been rolled back.
    """
    with db.transaction():
        db.lock(week_lock_key(league_id, week))
        league = fetch_league(db, league_id)
        if not week_is_open(league, week):
            logger.debug(
                "Week %s of league %s is not open (current week %s)",
                week,
                league_id,
                league["current_week"],
            )
            return False

        matchups = db.execute(
            """
            SELECT * FROM matchups
            WHERE league_id = %s AND week_number = %s AND is_finalized = 0
            ORDER BY player1_id
            """,
            (league_id, week),
        ).fetchall()
        totals = fetch_week_totals(db, league_id, week)
        stats = {member["user_id"]: dict(member) for member in fetch_members(db, league_id)}
        touched = []
        finalized_at = utc_now().isoformat()

        for matchup in matchups:
            result = score_matchup(matchup, totals)
            _record_matchup(db, matchup, result, finalized_at)
            apply_result_to_stats(stats, matchup, result)
            touched.extend((matchup["player1_id"], matchup["player2_id"]))

        _persist_stats(db, league_id, stats, [uid for uid in touched if uid in stats])
        db.execute(
            """
            UPDATE leagues
            SET current_week = current_week + 1,
                last_week_finalized_at = %s
            WHERE id = %s AND current_week = %s
            """,
            (finalized_at, league_id, week),
        )

    season_complete = week == league["season_length_weeks"]
    logger.info(
        "Finalized week %s of league %s (%d matchups)%s",
        week,
        league_id,
        len(matchups),
        ", regular season complete" if season_complete else "",
    )
    events.emit(
        events.WEEK_FINALIZED,
        league_id=league_id,
        week=week,
        matchups=[dict(m, **score_matchup(m, totals)) for m in matchups],
        season_complete=season_complete,
    )
    return True
