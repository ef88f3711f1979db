import logging
from collections import defaultdict

logger = logging.getLogger(__name__)

WEEK_FINALIZED = "week_finalized"
PLAYOFFS_STARTED = "playoffs_started"
CHAMPION_CROWNED = "champion_crowned"

_subscribers = defaultdict(list)


def subscribe(event, callback):
    _subscribers[event].append(callback)


def unsubscribe(event, callback):
    if callback in _subscribers[event]:
        _subscribers[event].remove(callback)


def clear():
    _subscribers.clear()


def emit(event, **payload):
    """Call every subscriber of ``event``.

    Only called after the transition has committed; a failing subscriber is
    logged and the rest still run.
    """
    for callback in list(_subscribers[event]):
        try:
            callback(event, **payload)
        except Exception:
            logger.exception("Subscriber %r failed handling %s", callback, event)
