import json
import math
from collections import namedtuple

from config import DAYS_PER_WEEK, SCORE_DECIMALS
from errors import ValidationError

# Typical day-to-day spread in a player's points
AVERAGE_DAILY_SWING = 15.0

# (metric, config field, unit, cap) -- a metric earns (value / unit) * weight
METRICS = (
    ("steps", "points_per_1000_steps", 1000.0, 100000.0),
    ("sleep_hours", "points_per_sleep_hour", 1.0, 24.0),
    ("calories", "points_per_100_calories", 100.0, 10000.0),
    ("workout_minutes", "points_per_workout_minute", 1.0, 1440.0),
    ("distance_miles", "points_per_mile", 1.0, 150.0),
)
METRIC_NAMES = tuple(metric for metric, _, _, _ in METRICS)

LEGACY_CONFIG_KEYS = {
    "points_per_100_active_cal": "points_per_100_calories",
    "points_per_workout": "points_per_workout_minute",
}


class ScoringConfig(
    namedtuple("ScoringConfig", [field for _, field, _, _ in METRICS])
):
    """Per-league scoring weights.

    Immutable so a league keeps the weights it was created with; the value is
    stored as JSON on the league row and read back with ``from_json``.
    """

    __slots__ = ()

    @classmethod
    def from_dict(cls, payload=None):
        if payload is None:
            payload = {}
        if not isinstance(payload, dict):
            raise ValidationError("Scoring config must be an object of weights")
        values = DEFAULT_SCORING_CONFIG._asdict()
        for key, raw in payload.items():
            key = LEGACY_CONFIG_KEYS.get(key, key)
            if key not in values:
                raise ValidationError(f"Unknown scoring config key '{key}'")
            if isinstance(raw, bool):
                raise ValidationError(f"Scoring weight '{key}' must be a number")
            try:
                weight = float(raw)
            except (TypeError, ValueError) as exc:
                raise ValidationError(
                    f"Scoring weight '{key}' must be a number"
                ) from exc
            if not math.isfinite(weight) or weight < 0:
                raise ValidationError(
                    f"Scoring weight '{key}' must be a finite, non-negative number"
                )
            values[key] = weight
        return cls(**values)

    @classmethod
    def from_json(cls, text):
        return cls.from_dict(json.loads(text))

    def to_json(self):
        return json.dumps(self._asdict(), sort_keys=True)


DEFAULT_SCORING_CONFIG = ScoringConfig(
    points_per_1000_steps=1.0,
    points_per_sleep_hour=2.0,
    points_per_100_calories=5.0,
    points_per_workout_minute=0.2,
    points_per_mile=3.0,
)


def sanitize_value(value, cap):
    """Clamp a raw metric to [0, cap]; anything non-finite or non-numeric is 0."""
    if isinstance(value, bool):
        return 0.0
    try:
        number = float(value)
    except (TypeError, ValueError):
        return 0.0
    if not math.isfinite(number) or number < 0:
        return 0.0
    return min(number, cap)


def sanitize_metrics(metrics):
    metrics = metrics or {}
    return {
        metric: sanitize_value(metrics.get(metric), cap)
        for metric, _, _, cap in METRICS
    }


def score(metrics, config=DEFAULT_SCORING_CONFIG):
    """Score one player's weekly metrics.

    Returns ``{"per_metric": [...], "total": float}``. Each per-metric entry
    carries the sanitized value and its rounded points; ``total`` is the sum
    of those rounded points, so the breakdown always adds up to it. It is
    what gets stored on the weekly score row.
    """
    safe = sanitize_metrics(metrics)
    per_metric = []
    for metric, field, unit, _ in METRICS:
        points = (safe[metric] / unit) * getattr(config, field)
        per_metric.append(
            {
                "metric": metric,
                "value": safe[metric],
                "points": round(points, SCORE_DECIMALS),
            }
        )
    total = sum(entry["points"] for entry in per_metric)
    return {"per_metric": per_metric, "total": round(total, SCORE_DECIMALS)}


def recompute_total(score_row, config):
    """Recompute a stored weekly score row's total from its raw metrics."""
    return score({metric: score_row[metric] for metric in METRIC_NAMES}, config)[
        "total"
    ]


def compare_scores(score1, score2):
    """Return ``(winner, is_tie, margin)`` where winner is 1, 2 or None."""
    margin = round(abs(score1 - score2), SCORE_DECIMALS)
    if score1 > score2:
        return 1, False, margin
    if score2 > score1:
        return 2, False, margin
    return None, True, 0.0


def project_weekly_score(metrics, days_completed, config=DEFAULT_SCORING_CONFIG):
    """Extrapolate a full week's points from the metrics logged so far."""
    if days_completed <= 0:
        return 0.0
    daily = score(metrics, config)["total"] / days_completed
    return round(daily * DAYS_PER_WEEK, SCORE_DECIMALS)


def win_probability(current_score, opponent_score, days_remaining):
    """Rough chance (0-100) of winning a matchup that is still in progress.

    The lead is measured against how far scores typically swing over the
    days left; once the week is over it's 100, 0 or 50 for a tie.
    """
    lead = current_score - opponent_score
    if days_remaining <= 0:
        if lead > 0:
            return 100
        if lead < 0:
            return 0
        return 50
    max_swing = AVERAGE_DAILY_SWING * days_remaining
    probability = 50 + (lead / max_swing) * 50
    return max(0, min(100, round(probability)))
