"""Tolerant parsing of source JSON payloads into transfer objects.

Every field may be missing or null; defaults are substituted instead of
raising so that one malformed event never discards the rest of a payload.
"""

import logging
import re
from typing import Any, Optional

from sofa_worker.etl.base import (
    NOT_STARTED_STATUS,
    UNKNOWN_TEAM,
    EventData,
    IncidentData,
    StandingRowData,
    StatisticItemData,
    normalize_status,
)

logger = logging.getLogger(__name__)

_LEADING_NUMBER = re.compile(r"-?\d+(?:[.,]\d+)?")


def _as_dict(value: Any) -> dict:
    return value if isinstance(value, dict) else {}


def _as_int(value: Any, default: Optional[int] = None) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return default
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def _as_str(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def parse_stat_value(value: Any) -> Optional[float]:
    """
    Extract the numeric part of a statistic value.

    Examples:
        "55%" -> 55.0
        "345/410 (84%)" -> 345.0
        "1.87" -> 1.87
        "-" -> None
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    match = _LEADING_NUMBER.search(str(value))
    if not match:
        return None
    try:
        return float(match.group(0).replace(",", "."))
    except ValueError:
        return None


def _score(raw: Any) -> int:
    score = _as_dict(raw)
    for key in ("current", "display"):
        parsed = _as_int(score.get(key))
        if parsed is not None:
            return parsed
    return 0


def parse_event(raw: Any) -> Optional[EventData]:
    """Parse one event dict; returns None when it has no usable ID."""
    event = _as_dict(raw)
    event_id = _as_int(event.get("id"))
    if event_id is None:
        return None

    home = _as_dict(event.get("homeTeam"))
    away = _as_dict(event.get("awayTeam"))
    status = _as_dict(event.get("status"))
    tournament = _as_dict(event.get("tournament"))
    unique_tournament = _as_dict(tournament.get("uniqueTournament"))
    season = _as_dict(event.get("season"))
    round_info = _as_dict(event.get("roundInfo"))
    venue = _as_dict(event.get("venue"))
    stadium = _as_dict(venue.get("stadium"))
    referee = _as_dict(event.get("referee"))

    status_type = _as_str(status.get("type"))
    description = _as_str(status.get("description")) or NOT_STARTED_STATUS

    return EventData(
        id=event_id,
        tournament_id=_as_int(unique_tournament.get("id")),
        tournament_name=_as_str(tournament.get("name")),
        season_id=_as_int(season.get("id")),
        round=_as_int(round_info.get("round")),
        round_slug=_as_str(round_info.get("slug")),
        home_team_id=_as_int(home.get("id")),
        home_team=_as_str(home.get("name")) or UNKNOWN_TEAM,
        away_team_id=_as_int(away.get("id")),
        away_team=_as_str(away.get("name")) or UNKNOWN_TEAM,
        home_score=_score(event.get("homeScore")),
        away_score=_score(event.get("awayScore")),
        status=normalize_status(description, status_type),
        status_type=status_type,
        start_timestamp=_as_int(event.get("startTimestamp"), 0),
        stadium=_as_str(stadium.get("name")) or _as_str(venue.get("name")),
        referee=_as_str(referee.get("name")),
        attendance=_as_int(event.get("attendance")),
    )


def parse_events(payload: Any) -> list[EventData]:
    """Parse an `{events: [...]}` list payload."""
    events = []
    skipped = 0
    for raw in _as_dict(payload).get("events") or []:
        event = parse_event(raw)
        if event is None:
            skipped += 1
            continue
        events.append(event)
    if skipped:
        logger.debug(f"[PAYLOAD] Skipped {skipped} events without id")
    return events


def parse_event_details(payload: Any) -> Optional[EventData]:
    """Parse the `{event: {...}}` detail payload."""
    return parse_event(_as_dict(payload).get("event"))


def parse_statistics(payload: Any) -> list[StatisticItemData]:
    """Flatten periods -> groups -> items."""
    items = []
    for period in _as_dict(payload).get("statistics") or []:
        period = _as_dict(period)
        period_name = _as_str(period.get("period")) or "ALL"
        for group in period.get("groups") or []:
            group = _as_dict(group)
            group_name = _as_str(group.get("groupName"))
            for item in group.get("statisticsItems") or []:
                item = _as_dict(item)
                name = _as_str(item.get("name"))
                if not name:
                    continue
                home_raw = item.get("home")
                away_raw = item.get("away")
                home_numeric = parse_stat_value(item.get("homeValue"))
                away_numeric = parse_stat_value(item.get("awayValue"))
                items.append(StatisticItemData(
                    period=period_name,
                    group=group_name,
                    name=name,
                    home_value=_as_str(home_raw),
                    away_value=_as_str(away_raw),
                    home_numeric=home_numeric if home_numeric is not None else parse_stat_value(home_raw),
                    away_numeric=away_numeric if away_numeric is not None else parse_stat_value(away_raw),
                    compare_code=_as_int(item.get("compareCode")),
                ))
    return items


def _person_name(raw: Any) -> Optional[str]:
    person = _as_dict(raw)
    return _as_str(person.get("name")) or _as_str(person.get("shortName"))


def parse_incidents(payload: Any) -> list[IncidentData]:
    """Parse incidents ordered by time, then added time."""
    incidents = []
    for raw in _as_dict(payload).get("incidents") or []:
        raw = _as_dict(raw)
        incident_type = _as_str(raw.get("incidentType"))
        if not incident_type:
            continue
        is_home = raw.get("isHome")
        incidents.append(IncidentData(
            incident_type=incident_type,
            incident_class=_as_str(raw.get("incidentClass")),
            time=_as_int(raw.get("time")),
            added_time=_as_int(raw.get("addedTime")),
            is_home=is_home if isinstance(is_home, bool) else None,
            player_name=_person_name(raw.get("player")),
            assist_name=_person_name(raw.get("assist1")),
        ))
    incidents.sort(key=lambda i: (i.time or 0, i.added_time or 0))
    return incidents


def parse_standings(payload: Any) -> list[StandingRowData]:
    """Parse only the table with type == 'total'."""
    total = None
    for table in _as_dict(payload).get("standings") or []:
        table = _as_dict(table)
        if table.get("type") == "total":
            total = table
            break
    if total is None:
        return []

    rows = []
    for raw in total.get("rows") or []:
        raw = _as_dict(raw)
        team = _as_dict(raw.get("team"))
        team_id = _as_int(team.get("id"))
        if team_id is None:
            continue
        promotion = _as_dict(raw.get("promotion"))
        rows.append(StandingRowData(
            team_id=team_id,
            team_name=_as_str(team.get("name")) or UNKNOWN_TEAM,
            position=_as_int(raw.get("position"), 0),
            matches=_as_int(raw.get("matches"), 0),
            wins=_as_int(raw.get("wins"), 0),
            draws=_as_int(raw.get("draws"), 0),
            losses=_as_int(raw.get("losses"), 0),
            goals_for=_as_int(raw.get("scoresFor"), 0),
            goals_against=_as_int(raw.get("scoresAgainst"), 0),
            points=_as_int(raw.get("points"), 0),
            promotion_id=_as_int(promotion.get("id")),
            promotion_text=_as_str(promotion.get("text")),
        ))
    return rows
