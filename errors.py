class LeagueError(Exception):
    """Base class for errors raised by the league engine."""


class ValidationError(LeagueError, ValueError):
    """Rejected input: bad roster size, malformed scoring config, etc."""


class LeagueNotFound(LeagueError, LookupError):
    def __init__(self, league_id):
        super().__init__(f"League {league_id} not found")
        self.league_id = league_id
