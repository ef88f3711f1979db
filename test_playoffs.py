"""Bracket seeding, tiebreaks and advancement for the four-player playoff."""

import threading

import pytest

import events
from conftest import connect, fetch_member, set_points, week_end
from errors import ValidationError
from finalizer import finalize_week
from leagues import fetch_league, fetch_playoff_matches
from playoffs import (
    COMPLETE,
    FINALS,
    NOT_STARTED,
    SEMIFINALS,
    build_bracket,
    decide_playoff_winner,
    finalize_playoff_match,
    seed_pairings,
    start_playoffs,
)
from standings import rank_members
from sync import check_and_finalize_if_due

STANDINGS = [
    ("A", 6, 800.0),
    ("B", 5, 750.0),
    ("C", 5, 700.0),
    ("D", 4, 650.0),
    ("E", 3, 500.0),
]


def end_regular_season(db, league_id, standings=STANDINGS):
    """Put the league just past its last regular week with the given records."""
    for user_id, wins, points in standings:
        db.execute(
            """
            UPDATE league_members SET wins = %s, cumulative_points = %s
            WHERE league_id = %s AND user_id = %s
            """,
            (wins, points, league_id, user_id),
        )
    db.execute(
        "UPDATE leagues SET current_week = season_length_weeks + 1 WHERE id = %s",
        (league_id,),
    )


@pytest.fixture
def seeded_league(db, make_league):
    # Joined out of rank order so seeding has to come from the standings
    league_id = make_league(["E", "C", "A", "D", "B"])
    end_regular_season(db, league_id)
    assert start_playoffs(db, league_id) is True
    return league_id


def test_seed_pairings_top_four():
    members = [
        {"user_id": user_id, "wins": wins, "cumulative_points": points}
        for user_id, wins, points in reversed(STANDINGS)
    ]

    pairs = seed_pairings(rank_members(members))

    assert [(p1["user_id"], p2["user_id"]) for p1, p2 in pairs] == [("A", "D"), ("B", "C")]


def test_seed_pairings_needs_four():
    with pytest.raises(ValidationError):
        seed_pairings([{"user_id": "a"}, {"user_id": "b"}])


def test_start_playoffs_seeds_from_standings(db, seeded_league):
    matches = fetch_playoff_matches(db, seeded_league)

    assert [(m["round"], m["match_index"], m["player1_id"], m["player2_id"]) for m in matches] == [
        (1, 1, "A", "D"),
        (1, 2, "B", "C"),
    ]
    assert {m["week_number"] for m in matches} == {7}
    seeds = {uid: fetch_member(db, seeded_league, uid)["playoff_seed"] for uid in "ABCDE"}
    assert seeds == {"A": 1, "B": 2, "C": 3, "D": 4, "E": None}
    assert fetch_member(db, seeded_league, "A")["playoff_tiebreaker_points"] == 800.0
    assert fetch_league(db, seeded_league)["playoffs_started"] == 1


def test_start_playoffs_only_once(db, seeded_league):
    assert start_playoffs(db, seeded_league) is False
    assert start_playoffs(db, seeded_league) is False
    assert len(fetch_playoff_matches(db, seeded_league)) == 2


def test_playoffs_wait_for_the_regular_season(db, make_league):
    league_id = make_league(["a", "b", "c", "d"])

    assert start_playoffs(db, league_id) is False
    assert fetch_playoff_matches(db, league_id) == []


def test_league_too_small_for_playoffs(db, make_league):
    league_id = make_league(["a", "b", "c"])
    db.execute("UPDATE leagues SET current_week = 7 WHERE id = %s", (league_id,))

    assert start_playoffs(db, league_id) is False
    assert fetch_playoff_matches(db, league_id) == []
    assert fetch_league(db, league_id)["playoffs_started"] == 0


def test_three_checks_after_last_week_create_two_semifinals(db, make_league):
    league_id = make_league(["a", "b", "c", "d"], season_length_weeks=6)
    for week in range(1, 6):
        finalize_week(db, league_id, week)
    now = week_end(6)

    for _ in range(3):
        check_and_finalize_if_due(db, league_id, now=now, grace_hours=0)

    league = fetch_league(db, league_id)
    assert league["current_week"] == 7
    assert league["playoffs_started"] == 1
    matches = fetch_playoff_matches(db, league_id)
    assert len(matches) == 2
    assert all(m["round"] == 1 and not m["is_finalized"] for m in matches)


def test_higher_score_wins_and_loser_is_eliminated(db, seeded_league):
    set_points(db, seeded_league, "D", 7, 60)
    set_points(db, seeded_league, "A", 7, 55)

    assert finalize_playoff_match(db, seeded_league, 1, 1) is True
    assert finalize_playoff_match(db, seeded_league, 1, 1) is False

    semi = fetch_playoff_matches(db, seeded_league)[0]
    assert semi["winner_id"] == "D"
    assert (semi["player1_score"], semi["player2_score"]) == (55.0, 60.0)
    assert fetch_member(db, seeded_league, "A")["eliminated"] == 1
    assert fetch_member(db, seeded_league, "D")["eliminated"] == 0


def test_tie_goes_to_more_regular_season_points(db, make_league):
    league_id = make_league(["A", "B", "C", "D", "E"])
    # D is seeded fourth on wins but scored more than A all season
    end_regular_season(
        db,
        league_id,
        [("A", 6, 600.0), ("B", 5, 750.0), ("C", 5, 700.0), ("D", 4, 900.0), ("E", 3, 500.0)],
    )
    start_playoffs(db, league_id)
    set_points(db, league_id, "A", 7, 40)
    set_points(db, league_id, "D", 7, 40)
    # Only the points frozen at seeding count
    db.execute(
        "UPDATE league_members SET cumulative_points = 9999 WHERE user_id = %s", ("A",)
    )

    finalize_playoff_match(db, league_id, 1, 1)

    semi = fetch_playoff_matches(db, league_id)[0]
    assert (semi["player1_id"], semi["player2_id"]) == ("A", "D")
    assert semi["winner_id"] == "D"
    assert fetch_member(db, league_id, "A")["eliminated"] == 1


def test_tie_on_points_goes_to_better_seed():
    match = {"player1_id": "low", "player2_id": "high"}
    members = {
        "low": {"cumulative_points": 700.0, "playoff_tiebreaker_points": 700.0, "playoff_seed": 3},
        "high": {"cumulative_points": 700.0, "playoff_tiebreaker_points": 700.0, "playoff_seed": 2},
    }

    assert decide_playoff_winner(match, 0.0, 0.0, members) == ("high", "low")
    assert decide_playoff_winner(match, 10.0, 0.0, members) == ("low", "high")


def test_final_created_after_both_semifinals(db, seeded_league):
    set_points(db, seeded_league, "A", 7, 90)
    set_points(db, seeded_league, "C", 7, 70)

    finalize_playoff_match(db, seeded_league, 1, 1)
    assert len(fetch_playoff_matches(db, seeded_league)) == 2
    assert build_bracket(db, seeded_league)["state"] == SEMIFINALS

    finalize_playoff_match(db, seeded_league, 1, 2)
    final = fetch_playoff_matches(db, seeded_league)[2]
    assert (final["round"], final["player1_id"], final["player2_id"]) == (2, "A", "C")
    assert final["week_number"] == 8
    assert build_bracket(db, seeded_league)["state"] == FINALS


def test_racing_semifinals_create_one_final(db, db_path, seeded_league):
    barrier = threading.Barrier(2)
    errors = []

    def finish(match_index):
        conn = connect(db_path)
        try:
            barrier.wait()
            finalize_playoff_match(conn, seeded_league, 1, match_index)
        except Exception as exc:
            errors.append(exc)
        finally:
            conn.close()

    threads = [threading.Thread(target=finish, args=(i,)) for i in (1, 2)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert errors == []
    finals = [m for m in fetch_playoff_matches(db, seeded_league) if m["round"] == 2]
    assert len(finals) == 1


def test_final_crowns_champion(db, seeded_league):
    crowned = []
    events.subscribe(events.CHAMPION_CROWNED, lambda event, **payload: crowned.append(payload))
    set_points(db, seeded_league, "A", 7, 90)
    set_points(db, seeded_league, "B", 7, 80)
    finalize_playoff_match(db, seeded_league, 1, 1)
    finalize_playoff_match(db, seeded_league, 1, 2)
    set_points(db, seeded_league, "B", 8, 75)
    set_points(db, seeded_league, "A", 8, 74)

    assert finalize_playoff_match(db, seeded_league, 2, 1) is True
    assert finalize_playoff_match(db, seeded_league, 2, 1) is False

    league = fetch_league(db, seeded_league)
    assert league["champion_id"] == "B"
    assert league["is_active"] == 0
    assert crowned == [{"league_id": seeded_league, "champion_id": "B"}]
    bracket = build_bracket(db, seeded_league)
    assert bracket["state"] == COMPLETE
    assert bracket["champion_id"] == "B"
    assert bracket["final"]["player1_seed"] == 1
    assert fetch_member(db, seeded_league, "A")["eliminated"] == 1


def test_unknown_match_is_rejected(db, seeded_league):
    with pytest.raises(ValidationError):
        finalize_playoff_match(db, seeded_league, 2, 1)


def test_bracket_before_playoffs(db, make_league):
    league_id = make_league(["a", "b", "c", "d"])

    bracket = build_bracket(db, league_id)

    assert bracket == {
        "state": NOT_STARTED,
        "semifinals": [],
        "final": None,
        "champion_id": None,
    }
