import logging

from flask import Flask, g, jsonify, request

import config
from db_adapter import DatabaseError, get_db_connection, init_schema
from errors import LeagueNotFound, ValidationError
from leagues import (
    create_league,
    fetch_league,
    fetch_matchups,
    human,
    join_league,
    join_league_by_code,
    leave_league,
    synthetic,
)
from playoffs import build_bracket
from schedule import bye_players, start_season
from standings import format_record, league_standings
from sync import (
    check_and_finalize_if_due,
    days_remaining_in_week,
    matchup_detail,
    record_weekly_metrics,
)

app = Flask(__name__)
app.config["DATABASE_URL"] = config.DATABASE_URL
app.config["SQLITE_PATH"] = config.SQLITE_PATH

BOOLEAN_COLUMNS = ("playoffs_started", "is_active", "is_tie", "is_finalized", "eliminated")


def get_db():
    if "db" not in g:
        try:
            g.db = get_db_connection(
                database_url=app.config["DATABASE_URL"] or "",
                sqlite_path=app.config["SQLITE_PATH"],
            )
        except DatabaseError as e:
            app.logger.error("Database connection error: %s", e)
            raise RuntimeError(f"Unable to connect to database. Error: {e}") from e
    return g.db


def close_db(error=None):
    db = g.pop("db", None)
    if db is not None:
        db.close()


app.teardown_appcontext(close_db)


def init_db():
    db = get_db()
    init_schema(db)


# (DATABASE_URL, SQLITE_PATH) pairs whose schema this process has created
_ready_databases = set()


@app.before_request
def ensure_db_ready():
    target = (app.config["DATABASE_URL"], app.config["SQLITE_PATH"])
    if target not in _ready_databases:
        init_db()
        _ready_databases.add(target)


def serialize(row):
    payload = dict(row)
    for column in BOOLEAN_COLUMNS:
        if column in payload:
            payload[column] = bool(payload[column])
    return payload


def serialize_league(league):
    payload = serialize(league)
    payload.pop("scoring_config", None)
    return payload


@app.errorhandler(ValidationError)
def handle_validation_error(error):
    return jsonify({"error": str(error)}), 400


@app.errorhandler(LeagueNotFound)
def handle_not_found(error):
    return jsonify({"error": str(error)}), 404


def handle_database_error(error):
    app.logger.warning("Store unavailable: %s", error)
    return jsonify({"error": "Store unavailable, try again later"}), 503


for _error_class in DatabaseError:
    app.register_error_handler(_error_class, handle_database_error)


def request_json():
    payload = request.get_json(silent=True)
    if not isinstance(payload, dict):
        raise ValidationError("Expected a JSON object")
    return payload


@app.route("/leagues", methods=["POST"])
def create_league_route():
    payload = request_json()
    league = create_league(
        get_db(),
        payload.get("name"),
        payload.get("roster_size"),
        payload.get("season_length_weeks"),
        payload.get("start_date"),
        scoring_config=payload.get("scoring_config"),
    )
    return jsonify(serialize_league(league)), 201


@app.route("/leagues/<league_id>")
def league_detail(league_id):
    db = get_db()
    league = fetch_league(db, league_id)
    payload = serialize_league(league)
    if league["current_week"] and league["current_week"] <= league["season_length_weeks"]:
        payload["days_remaining"] = days_remaining_in_week(
            league["start_date"], league["current_week"]
        )
    return jsonify(payload)


def participant_from(payload):
    if payload.get("user_id"):
        return human(payload["user_id"])
    if payload.get("test_id"):
        return synthetic(payload["test_id"])
    raise ValidationError("Provide a user_id or test_id")


@app.route("/leagues/<league_id>/members", methods=["POST"])
def add_member(league_id):
    participant = participant_from(request_json())
    added = join_league(get_db(), league_id, participant)
    return jsonify({"user_id": participant.key, "added": added}), 201 if added else 200


@app.route("/join", methods=["POST"])
def join_by_code():
    payload = request_json()
    participant = participant_from(payload)
    league, added = join_league_by_code(get_db(), payload.get("join_code"), participant)
    body = {"league_id": league["id"], "user_id": participant.key, "added": added}
    return jsonify(body), 201 if added else 200


@app.route("/leagues/<league_id>/members/<user_id>", methods=["DELETE"])
def remove_member(league_id, user_id):
    removed = leave_league(get_db(), league_id, user_id)
    return jsonify({"user_id": user_id, "removed": removed})


@app.route("/leagues/<league_id>/start", methods=["POST"])
def start_league(league_id):
    db = get_db()
    started = start_season(db, league_id)
    return jsonify({"started": started, "league": serialize_league(fetch_league(db, league_id))})


@app.route("/leagues/<league_id>/scores/<user_id>/<int:week>", methods=["PUT"])
def put_weekly_score(league_id, user_id, week):
    result = record_weekly_metrics(get_db(), league_id, user_id, week, request_json())
    return jsonify(result)


@app.route("/leagues/<league_id>/sync", methods=["POST"])
def sync_league(league_id):
    snapshot = check_and_finalize_if_due(get_db(), league_id)
    if snapshot["finalized_weeks"]:
        app.logger.info(
            "League %s finalized weeks %s", league_id, snapshot["finalized_weeks"]
        )
    return jsonify(
        {
            "league": serialize_league(snapshot["league"]),
            "standings": [serialize(row) for row in snapshot["standings"]],
            "matchups": [serialize(row) for row in snapshot["matchups"]],
            "playoffs": snapshot["playoffs"],
            "finalized_weeks": snapshot["finalized_weeks"],
            "deferred": snapshot["deferred"],
        }
    )


@app.route("/leagues/<league_id>/standings")
def standings(league_id):
    db = get_db()
    fetch_league(db, league_id)
    rows = []
    for row in league_standings(db, league_id):
        payload = serialize(row)
        payload["record"] = format_record(row)
        rows.append(payload)
    return jsonify(rows)


@app.route("/leagues/<league_id>/matchups/<int:week>")
def week_matchups(league_id, week):
    db = get_db()
    fetch_league(db, league_id)
    matchups = fetch_matchups(db, league_id, week)
    member_ids = [
        row["user_id"]
        for row in db.execute(
            "SELECT user_id FROM league_members WHERE league_id = %s ORDER BY join_order",
            (league_id,),
        ).fetchall()
    ]
    return jsonify(
        {
            "week": week,
            "matchups": [serialize(row) for row in matchups],
            "byes": bye_players(member_ids, week) if matchups else [],
        }
    )


@app.route("/leagues/<league_id>/matchups/<int:week>/<user_id>")
def player_matchup(league_id, week, user_id):
    detail = matchup_detail(get_db(), league_id, user_id, week=week)
    return jsonify({"week": week, "user_id": user_id, "matchup": detail})


@app.route("/leagues/<league_id>/playoffs")
def playoffs(league_id):
    return jsonify(build_bracket(get_db(), league_id))


if __name__ == "__main__":
    logging.basicConfig(
        level=config.LOG_LEVEL,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    app.run(debug=False)
