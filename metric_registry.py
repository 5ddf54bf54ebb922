"""Static table of the statistics the chatbot knows about.

Each entry carries the display wording (singular/plural label, verb, zero
phrase), the formatting rules (decimal places, percentage) and the phrases a
user might type for it. Query semantics live in ``query_planner.METRIC_RULES``.
"""
from __future__ import annotations
import re
from dataclasses import dataclass


@dataclass(frozen=True)
class MetricSpec:
    key: str
    singular: str
    plural: str
    verb: str
    zero_phrase: str            # without the auxiliary: "not scored any goals"
    aliases: tuple[str, ...]
    decimal_places: int = 0
    is_percentage: bool = False
    icon_id: str = "stat"
    team_verb: str | None = None
    team_plural: str | None = None

    @property
    def display_name(self) -> str:
        return self.plural

    def label(self, value) -> str:
        try:
            return self.singular if float(value) == 1 else self.plural
        except (TypeError, ValueError):
            return self.plural


METRICS: dict[str, MetricSpec] = {}


def _register(*specs: MetricSpec) -> None:
    for s in specs:
        METRICS[s.key] = s


_register(
    MetricSpec("APP", "appearance", "appearances", "made", "not made an appearance",
               ("appearances", "appearance", "apps", "app", "caps", "games played",
                "matches played", "games", "matches"),
               icon_id="appearances", team_verb="played", team_plural="games"),
    MetricSpec("MIN", "minute", "minutes", "played", "not played any minutes",
               ("minutes played", "minutes", "mins", "time on the pitch"),
               icon_id="minutes"),
    MetricSpec("MOM", "Man of the Match award", "Man of the Match awards", "won",
               "not won a Man of the Match award",
               ("man of the match awards", "man of the match", "player of the match",
                "mom awards", "motm", "mom"),
               icon_id="mom"),
    MetricSpec("G", "goal", "goals", "scored", "not scored any goals",
               ("goals scored", "goals", "goal", "scored", "scoring", "netted",
                "strikes", "finishes"),
               icon_id="goals"),
    MetricSpec("A", "assist", "assists", "provided", "not provided any assists",
               ("assists", "assist", "assisted", "set ups", "setups"),
               icon_id="assists"),
    MetricSpec("GI", "goal involvement", "goal involvements", "had",
               "not had any goal involvements",
               ("goal involvements", "goal involvement", "goal contributions",
                "goals and assists", "goals + assists"),
               icon_id="goal-involvements"),
    MetricSpec("Y", "yellow card", "yellow cards", "received", "not received a yellow card",
               ("yellow cards", "yellow card", "yellows", "bookings", "booked", "cautions"),
               icon_id="yellow-cards"),
    MetricSpec("R", "red card", "red cards", "received", "not received a red card",
               ("red cards", "red card", "reds", "sendings off", "sent off", "dismissals"),
               icon_id="red-cards"),
    MetricSpec("SAVES", "save", "saves", "made", "not made a save",
               ("saves made", "saves", "save"),
               icon_id="saves"),
    MetricSpec("OG", "own goal", "own goals", "scored", "not scored an own goal",
               ("own goals", "own goal", "ogs", "og"),
               icon_id="own-goals"),
    MetricSpec("C", "goal conceded", "goals conceded", "conceded", "not conceded a goal",
               ("goals conceded", "goals against", "conceded", "let in"),
               icon_id="conceded"),
    MetricSpec("CLS", "clean sheet", "clean sheets", "kept", "not kept a clean sheet",
               ("clean sheets", "clean sheet", "shutouts", "shut outs"),
               icon_id="clean-sheets"),
    MetricSpec("PSC", "penalty", "penalties", "scored", "not scored a penalty",
               ("penalties scored", "penalty scored", "penalty goals", "pens scored",
                "penalties converted", "spot kicks scored"),
               icon_id="penalties-scored"),
    MetricSpec("PM", "penalty", "penalties", "missed", "not missed a penalty",
               ("penalties missed", "penalty missed", "missed penalties", "pens missed"),
               icon_id="penalties-missed"),
    MetricSpec("PCO", "penalty", "penalties", "conceded", "not conceded a penalty",
               ("penalties conceded", "penalty conceded", "pens conceded",
                "penalties given away"),
               icon_id="penalties-conceded"),
    MetricSpec("PSV", "penalty", "penalties", "saved", "not saved a penalty",
               ("penalties saved", "penalty saved", "penalty saves", "saved penalties",
                "pens saved"),
               icon_id="penalties-saved"),
    MetricSpec("FTP", "fantasy point", "fantasy points", "earned",
               "not earned any fantasy points",
               ("fantasy points", "fantasy score", "ftp"),
               icon_id="fantasy"),
    MetricSpec("GperAPP", "goal per appearance", "goals per appearance", "averaged",
               "not scored any goals",
               ("goals per appearance", "goals per game", "goals per match",
                "goals per app", "goal rate", "scoring rate"),
               decimal_places=2, icon_id="goals"),
    MetricSpec("CperAPP", "goal conceded per appearance", "goals conceded per appearance",
               "averaged", "not conceded a goal",
               ("goals conceded per appearance", "goals conceded per game",
                "conceded per appearance", "conceded per game", "conceded per match"),
               decimal_places=2, icon_id="conceded"),
    MetricSpec("MperG", "minute per goal", "minutes per goal", "averaged",
               "not scored any goals",
               ("minutes per goal", "mins per goal"),
               icon_id="minutes"),
    MetricSpec("MINperAPP", "minute per appearance", "minutes per appearance", "averaged",
               "not played any minutes",
               ("minutes per appearance", "minutes per game", "mins per game"),
               icon_id="minutes"),
    MetricSpec("FTPperAPP", "fantasy point per appearance", "fantasy points per appearance",
               "averaged", "not earned any fantasy points",
               ("fantasy points per appearance", "fantasy points per game",
                "points per game"),
               decimal_places=1, icon_id="fantasy"),
    MetricSpec("GAMES%WON", "of games played", "of games played", "won", "not won any games",
               ("percentage of games won", "% of games won", "win percentage",
                "winning percentage", "win rate", "win ratio"),
               decimal_places=1, is_percentage=True, icon_id="wins"),
    MetricSpec("HOMEGAMES%WON", "of home games played", "of home games played", "won",
               "not won any home games",
               ("home win percentage", "percentage of home games won", "home win rate"),
               decimal_places=1, is_percentage=True, icon_id="home"),
    MetricSpec("AWAYGAMES%WON", "of away games played", "of away games played", "won",
               "not won any away games",
               ("away win percentage", "percentage of away games won", "away win rate"),
               decimal_places=1, is_percentage=True, icon_id="away"),
    MetricSpec("PEN%", "of penalties taken", "of penalties taken", "converted",
               "not converted any penalties",
               ("penalty conversion rate", "penalty conversion", "penalty success rate"),
               decimal_places=1, is_percentage=True, icon_id="penalties-scored"),
    MetricSpec("HOME", "home game", "home games", "played", "not played a home game",
               ("home games", "home matches", "home appearances"),
               icon_id="home"),
    MetricSpec("AWAY", "away game", "away games", "played", "not played an away game",
               ("away games", "away matches", "away appearances"),
               icon_id="away"),
    MetricSpec("HOMEWINS", "home game", "home games", "won", "not won a home game",
               ("home wins", "home games won", "home victories"),
               icon_id="home"),
    MetricSpec("AWAYWINS", "away game", "away games", "won", "not won an away game",
               ("away wins", "away games won", "away victories"),
               icon_id="away"),
    MetricSpec("WINS", "game", "games", "won", "not won any games",
               ("wins", "games won", "matches won", "victories"),
               icon_id="wins"),
    MetricSpec("DRAWS", "game", "games", "drawn", "not drawn any games",
               ("draws", "games drawn", "matches drawn"),
               icon_id="draws"),
    MetricSpec("LOSSES", "game", "games", "lost", "not lost any games",
               ("losses", "defeats", "games lost", "matches lost"),
               icon_id="losses"),
    MetricSpec("DGW", "double game week", "double game weeks", "played",
               "not played a double game week",
               ("double game weeks", "double game week", "double gameweeks", "double games"),
               icon_id="calendar"),
    MetricSpec("PLAYERS", "player", "players", "used", "not used any players",
               ("different players", "players used", "players"),
               icon_id="players"),
)


def _phrase_key(s: str) -> str:
    s = (s or "").lower().strip()
    s = re.sub(r"\s+", " ", s)
    return s


_TEXT_ALIASES: dict[str, str] = {}
for _spec in METRICS.values():
    for _a in _spec.aliases:
        _TEXT_ALIASES.setdefault(_phrase_key(_a), _spec.key)

# Canonical keys are accepted too ("GperAPP", "MOM")
_ALIAS_INDEX = {_phrase_key(k): k for k in METRICS}
_ALIAS_INDEX.update(_TEXT_ALIASES)


def get_metric(key: str | None) -> MetricSpec | None:
    if not key:
        return None
    return METRICS.get(key)


def resolve_alias(phrase: str) -> MetricSpec | None:
    """Map a typed phrase ("apps", "Penalties Missed") to its metric, or None."""
    key = _ALIAS_INDEX.get(_phrase_key(phrase))
    return METRICS.get(key) if key else None


def aliases_by_specificity() -> list[tuple[str, str]]:
    """All (alias, key) pairs, most specific first.

    Multi-word phrases sort ahead of single words so that "penalties scored"
    is tried before "scored".
    """
    pairs = list(_TEXT_ALIASES.items())
    return sorted(pairs, key=lambda p: (-len(p[0].split()), -len(p[0]), p[0]))
