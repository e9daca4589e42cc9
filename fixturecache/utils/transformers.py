"""Provider payload -> internal shapes.

API-Football returns deeply nested fixture and odds documents. Everything here
reads them with ``.get()`` and sensible fallbacks: malformed or partial
payloads produce partial output, never an exception.
"""

import re
from datetime import datetime, timezone

from fixturecache.data.leagues import get_league_meta
from fixturecache.services.freshness_policy import map_api_status

DEFAULT_LOGO = 'https://media.api-sports.io/football/teams/5297.png'

# Markets kept in cached odds; everything else is dropped to keep rows small
ALLOWED_BET_TYPES = (
    'Match Winner',
    'Asian Handicap',
    'Goals Over/Under',
    'Exact Score',
    'First Half Winner',
    'Asian Handicap First Half',
    'Odd/Even',
)

BET_TYPE_MAP = {
    'Match Winner': 'match_winner',
    'Asian Handicap': 'asian_handicap',
    'Goals Over/Under': 'goals_over_under',
    'Goals Over/Under First Half': 'goals_over_under_first_half',
    'Both Teams Score': 'both_teams_score',
    'First Half Winner': 'first_half_winner',
    'Asian Handicap First Half': 'asian_handicap_first_half',
    'Odd/Even': 'odd_even',
    'Exact Score': 'exact_score',
    'Home/Away': 'home_away',
}


def _section(data, key) -> dict:
    value = (data or {}).get(key) if isinstance(data, dict) else None
    return value if isinstance(value, dict) else {}


def map_bet_type(bet_name: str | None) -> str:
    if not bet_name:
        return 'unknown'
    return BET_TYPE_MAP.get(bet_name) or re.sub(r'\s+', '_', bet_name.strip().lower())


def parse_kickoff(value) -> datetime | None:
    """Parse an ISO-8601 kickoff (``2024-05-01T19:00:00+00:00``) to UTC."""
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, str) and value:
        try:
            dt = datetime.fromisoformat(value.replace('Z', '+00:00'))
        except ValueError:
            return None
    else:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def transform_odds(odds_data) -> list[dict]:
    """Bookmaker tree for the first odds block, limited to ALLOWED_BET_TYPES.

    Bookmakers left without any allowed market are dropped.
    """
    if not odds_data or not isinstance(odds_data, list):
        return []
    block = odds_data[0] if isinstance(odds_data[0], dict) else {}
    bookmakers = []
    for bookmaker in block.get('bookmakers') or []:
        if not isinstance(bookmaker, dict):
            continue
        bets = []
        for bet in bookmaker.get('bets') or []:
            if not isinstance(bet, dict) or bet.get('name') not in ALLOWED_BET_TYPES:
                continue
            values = [
                {'value': v.get('value'), 'odd': v.get('odd')}
                for v in bet.get('values') or []
                if isinstance(v, dict)
            ]
            bets.append({
                'id': bet.get('id'),
                'name': bet.get('name'),
                'type': map_bet_type(bet.get('name')),
                'values': values,
                'opening': [dict(v) for v in values],
            })
        if bets:
            bookmakers.append({'id': bookmaker.get('id'), 'name': bookmaker.get('name'), 'bets': bets})
    return bookmakers


def _as_int(value) -> int | None:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def filter_bookmakers(bookmakers: list[dict], bookmaker_ids=None) -> list[dict]:
    """Keep only the requested bookmakers; fall back to all when nothing matches.

    Ids that are not integers never match.
    """
    if not bookmaker_ids:
        return bookmakers
    wanted = {_as_int(b) for b in bookmaker_ids} - {None}
    filtered = [b for b in bookmakers if _as_int(b.get('id')) in wanted]
    return filtered or bookmakers


def _team(teams: dict, side: str) -> dict:
    team = _section(teams, side)
    return {
        'id': team.get('id'),
        'name': team.get('name') or '',
        'logo': team.get('logo') or DEFAULT_LOGO,
    }


def extract_fixture_fields(fixture: dict) -> dict:
    """Descriptive columns stored alongside a cached payload."""
    info = _section(fixture, 'fixture')
    league = _section(fixture, 'league')
    teams = _section(fixture, 'teams')
    status_code = _section(info, 'status').get('short') or 'NS'
    return {
        'fixture_id': info.get('id'),
        'league_id': league.get('id'),
        'league_name': league.get('name'),
        'season_year': league.get('season'),
        'home_team': _team(teams, 'home'),
        'away_team': _team(teams, 'away'),
        'match_date': parse_kickoff(info.get('date')),
        'status_code': status_code,
        'match_status': map_api_status(status_code),
    }


def _round_level(round_name: str | None) -> int:
    match = re.search(r'\d+', round_name or '')
    return int(match.group(0)) if match else 1


def _event_half(elapsed: int) -> str:
    if elapsed > 120:
        return 'penalty'
    if elapsed > 90:
        return 'extra'
    if elapsed > 45:
        return 'second'
    return 'first'


_EVENT_TYPES = {
    ('Goal', 'Normal Goal'): 'goal',
    ('Goal', 'Own Goal'): 'own_goal',
    ('Goal', 'Penalty'): 'penalty',
    ('Goal', 'Missed Penalty'): 'missed_penalty',
    ('Card', 'Yellow Card'): 'yellow_card',
    ('Card', 'Red Card'): 'red_card',
    ('Card', 'Yellow - Red Card'): 'yellow_red_card',
}


def transform_events(events, home_team_id=None) -> list[dict]:
    out = []
    for event in events or []:
        if not isinstance(event, dict):
            continue
        time_info = _section(event, 'time')
        elapsed = time_info.get('elapsed') or 0
        kind = event.get('type')
        detail = event.get('detail') or ''
        event_type = _EVENT_TYPES.get((kind, detail), 'unknown')
        if kind == 'subst':
            event_type = 'substitution'
        elif kind == 'Var':
            if 'Goal' in detail:
                event_type = 'var_goal_cancelled'
            elif 'Penalty' in detail:
                event_type = 'var_penalty_confirmed'
        out.append({
            'type': event_type,
            'detail': detail,
            'half': _event_half(elapsed),
            'minute': elapsed,
            'extra': time_info.get('extra') or 0,
            'team_id': _section(event, 'team').get('id'),
            'is_home_team': _section(event, 'team').get('id') == home_team_id,
            'player': _section(event, 'player').get('name') or '',
            'assist': _section(event, 'assist').get('name') or '',
            'comments': event.get('comments'),
        })
    return out


def _team_statistics(stats_data: list, index: int) -> list:
    if index >= len(stats_data) or not isinstance(stats_data[index], dict):
        return []
    return stats_data[index].get('statistics') or []


def transform_statistics(stats_data) -> list[dict]:
    """Pair home/away team statistics by position."""
    if not stats_data or not isinstance(stats_data, list):
        return []
    home = _team_statistics(stats_data, 0)
    away = _team_statistics(stats_data, 1)
    out = []
    for index, stat in enumerate(home):
        if not isinstance(stat, dict):
            continue
        away_value = away[index].get('value') if index < len(away) and isinstance(away[index], dict) else None
        out.append({
            'type': re.sub(r'\s+', '_', (stat.get('type') or '').strip().lower()),
            'home': stat.get('value'),
            'away': away_value,
        })
    return out


def build_competition(fixture: dict) -> dict:
    league = _section(fixture, 'league')
    meta = get_league_meta(league.get('id'))
    return {
        'id': league.get('id'),
        'name': league.get('name') or meta.get('name') or '',
        'country': league.get('country') or meta.get('country') or '',
        'logo': league.get('logo') or DEFAULT_LOGO,
        'flag': league.get('flag'),
        'season': league.get('season'),
        'round': league.get('round') or '',
        'tier': meta['tier'],
        'seq': meta['seq'],
    }


def transform_fixture(fixture: dict, odds_data=None, events=None, stats_data=None) -> dict:
    """Flatten a provider fixture into the summary shape served to consumers."""
    fields = extract_fixture_fields(fixture)
    info = _section(fixture, 'fixture')
    status = _section(info, 'status')
    goals = _section(fixture, 'goals')
    score = _section(fixture, 'score')
    home, away = fields['home_team'], fields['away_team']

    def _side(team, side):
        return {
            **team,
            'goals': goals.get(side),
            'halftime': _section(score, 'halftime').get(side),
            'fulltime': _section(score, 'fulltime').get(side),
            'extratime': _section(score, 'extratime').get(side),
            'penalty': _section(score, 'penalty').get(side),
            'winner': _section(_section(fixture, 'teams'), side).get('winner'),
        }

    score_text = None
    if goals.get('home') is not None and goals.get('away') is not None:
        score_text = f"{goals['home']}-{goals['away']}"

    kickoff = fields['match_date']
    league = _section(fixture, 'league')
    return {
        'id': fields['fixture_id'],
        'name': f"{home['name']} - {away['name']}",
        'date_time': kickoff.isoformat() if kickoff else None,
        'status': fields['match_status'].value,
        'status_code': fields['status_code'],
        'elapsed': status.get('elapsed'),
        'round': league.get('round') or '',
        'round_level': _round_level(league.get('round')),
        'score': score_text,
        'teams': {'home': _side(home, 'home'), 'away': _side(away, 'away')},
        'competition': build_competition(fixture),
        'venue': _section(info, 'venue').get('name'),
        'referee': info.get('referee'),
        'bookmakers': transform_odds(odds_data) if odds_data else [],
        'events': transform_events(events, home.get('id')),
        'stats': transform_statistics(stats_data),
    }
