"""Entry points the presentation layer calls on foreground, poll and refresh.

``record_weekly_metrics`` keeps weekly scores current and never takes a
league lock, so on PostgreSQL it never waits on a finalization. SQLite has a
single database-wide write lock: there a score upsert queues behind any open
transition for up to ``SQLITE_TIMEOUT_SECONDS``.
``check_and_finalize_if_due`` advances the league through every transition
whose week boundary has passed.
"""

import logging
from datetime import datetime, time, timedelta, timezone

from config import DAYS_PER_WEEK, FINALIZE_GRACE_HOURS
from db_adapter import DatabaseError
from errors import ValidationError
from finalizer import finalize_week
from leagues import (
    fetch_league,
    fetch_matchups,
    fetch_playoff_matches,
    league_scoring_config,
    utc_now,
)
from playoffs import build_bracket, finalize_playoff_match, playoffs_due, start_playoffs
from scoring import (
    compare_scores,
    project_weekly_score,
    sanitize_metrics,
    score,
    win_probability,
)
from standings import league_standings

logger = logging.getLogger(__name__)


def _as_date(value):
    if isinstance(value, str):
        return datetime.fromisoformat(value).date()
    return value


def week_date_range(start_date, week):
    """``[start, end)`` of a week as UTC datetimes; weeks run Monday to Sunday."""
    first_day = datetime.combine(_as_date(start_date), time.min, tzinfo=timezone.utc)
    start = first_day + timedelta(days=(week - 1) * DAYS_PER_WEEK)
    return start, start + timedelta(days=DAYS_PER_WEEK)


def days_remaining_in_week(start_date, week, now=None):
    now = now or utc_now()
    _, end = week_date_range(start_date, week)
    if now >= end:
        return 0
    return (end.date() - now.date()).days


def week_is_due(start_date, week, now=None, grace_hours=None):
    """True once ``week`` has ended and the late-sync grace window has passed."""
    if grace_hours is None:
        grace_hours = FINALIZE_GRACE_HOURS
    now = now or utc_now()
    _, end = week_date_range(start_date, week)
    return now >= end + timedelta(hours=grace_hours)


def record_weekly_metrics(db, league_id, user_id, week, metrics):
    """Upsert a player's aggregated metrics for a week and return the score.

    Points always come from the league's frozen scoring config. Syncs for a
    week that is already finalized are stored but don't change its results.
    """
    league = fetch_league(db, league_id)
    try:
        week = int(week)
    except (TypeError, ValueError) as exc:
        raise ValidationError("Week must be an integer") from exc
    if not 1 <= week <= league["season_length_weeks"] + 2:
        raise ValidationError(f"Week {week} is outside league {league_id}'s season")
    member = db.execute(
        "SELECT 1 FROM league_members WHERE league_id = %s AND user_id = %s",
        (league_id, user_id),
    ).fetchone()
    if member is None:
        raise ValidationError(f"{user_id} is not a member of league {league_id}")

    safe = sanitize_metrics(metrics)
    result = score(safe, league_scoring_config(league))
    db.execute(
        """
        INSERT INTO weekly_scores (
            league_id,
            user_id,
            week_number,
            steps,
            sleep_hours,
            calories,
            workout_minutes,
            distance_miles,
            total_points,
            last_synced_at
        )
        VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
        ON CONFLICT (league_id, user_id, week_number) DO UPDATE SET
            steps = excluded.steps,
            sleep_hours = excluded.sleep_hours,
            calories = excluded.calories,
            workout_minutes = excluded.workout_minutes,
            distance_miles = excluded.distance_miles,
            total_points = excluded.total_points,
            last_synced_at = excluded.last_synced_at
        """,
        (
            league_id,
            user_id,
            week,
            safe["steps"],
            safe["sleep_hours"],
            safe["calories"],
            safe["workout_minutes"],
            safe["distance_miles"],
            result["total"],
            utc_now().isoformat(),
        ),
    )
    return result


def matchup_detail(db, league_id, user_id, week=None, now=None):
    """A player's matchup for ``week`` as seen from their side.

    Includes the live margin, a projected full-week score for both players
    and a win probability. Returns None when the player has no matchup that
    week (a bye, or the season hasn't started).
    """
    league = fetch_league(db, league_id)
    week = week or league["current_week"]
    matchup = None
    for row in fetch_matchups(db, league_id, week):
        if user_id in (row["player1_id"], row["player2_id"]):
            matchup = row
            break
    if matchup is None:
        return None

    if matchup["player1_id"] == user_id:
        opponent_id = matchup["player2_id"]
    else:
        opponent_id = matchup["player1_id"]
    rows = {
        row["user_id"]: row
        for row in db.execute(
            "SELECT * FROM weekly_scores WHERE league_id = %s AND week_number = %s",
            (league_id, week),
        ).fetchall()
    }
    config = league_scoring_config(league)
    days_left = 0
    if not matchup["is_finalized"]:
        days_left = min(
            days_remaining_in_week(league["start_date"], week, now), DAYS_PER_WEEK
        )
    days_completed = DAYS_PER_WEEK - days_left

    def side(player_id):
        row = rows.get(player_id)
        if row is None:
            return {"user_id": player_id, "score": 0.0, "projected": 0.0}
        return {
            "user_id": player_id,
            "score": row["total_points"],
            "projected": project_weekly_score(row, days_completed, config),
        }

    player = side(user_id)
    opponent = side(opponent_id)
    _, _, margin = compare_scores(player["score"], opponent["score"])
    return {
        "week": week,
        "is_finalized": bool(matchup["is_finalized"]),
        "player": player,
        "opponent": opponent,
        "margin": margin,
        "days_remaining": days_left,
        "win_probability": win_probability(player["score"], opponent["score"], days_left),
    }


def _advance(db, league_id, now, grace_hours, finalized_weeks):
    league = fetch_league(db, league_id)
    if league["current_week"] == 0 or league["champion_id"]:
        return

    # Regular season, one week at a time and in order
    while (
        not league["playoffs_started"]
        and 1 <= league["current_week"] <= league["season_length_weeks"]
        and week_is_due(league["start_date"], league["current_week"], now, grace_hours)
    ):
        week = league["current_week"]
        if finalize_week(db, league_id, week):
            finalized_weeks.append(week)
        league = fetch_league(db, league_id)
        if league["current_week"] == week:
            # Another caller holds the week; pick it up on the next trigger
            return

    if playoffs_due(league):
        start_playoffs(db, league_id)

    # Semifinals first; finishing both creates the final, which may be due too
    progressed = True
    while progressed:
        progressed = False
        for match in fetch_playoff_matches(db, league_id):
            if match["is_finalized"]:
                continue
            if not week_is_due(league["start_date"], match["week_number"], now, grace_hours):
                continue
            finalize_playoff_match(db, league_id, match["round"], match["match_index"])
            progressed = True


def league_snapshot(db, league_id):
    league = fetch_league(db, league_id)
    week = min(max(league["current_week"], 1), league["season_length_weeks"])
    return {
        "league": league,
        "standings": league_standings(db, league_id),
        "matchups": fetch_matchups(db, league_id, week),
        "playoffs": build_bracket(db, league_id),
    }


def check_and_finalize_if_due(db, league_id, now=None, grace_hours=None):
    """Run every transition that is due for the league and return its state.

    Safe to call from any number of clients at any time. A store failure
    rolls back the transition in progress and is reported as
    ``deferred``; the next trigger retries it.
    """
    now = now or utc_now()
    finalized_weeks = []
    deferred = None
    try:
        _advance(db, league_id, now, grace_hours, finalized_weeks)
    except DatabaseError as exc:
        logger.warning("Finalization deferred for league %s: %s", league_id, exc)
        deferred = str(exc)

    snapshot = league_snapshot(db, league_id)
    snapshot["finalized_weeks"] = finalized_weeks
    snapshot["deferred"] = deferred
    return snapshot
