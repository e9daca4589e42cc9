"""
League reference data for the fixture cache.

Only what the refresh engine needs to decide *what* to fetch and *how to order*
it: the display tier/seq of popular leagues, the hot-league whitelist used for
pre-fetching, and the wider allow-list that scopes live/scheduled snapshots.

League ids are API-Football v3 ids.
"""

# Popular leagues with display tier (1 = most prominent) and in-tier sequence
POPULAR_LEAGUES = {
    # Tier 1
    39: {'name': 'Premier League', 'country': 'England', 'tier': 1, 'seq': 1},
    140: {'name': 'La Liga', 'country': 'Spain', 'tier': 1, 'seq': 2},
    135: {'name': 'Serie A', 'country': 'Italy', 'tier': 1, 'seq': 3},
    78: {'name': 'Bundesliga', 'country': 'Germany', 'tier': 1, 'seq': 4},
    61: {'name': 'Ligue 1', 'country': 'France', 'tier': 1, 'seq': 5},
    2: {'name': 'UEFA Champions League', 'country': 'World', 'tier': 1, 'seq': 6},
    1: {'name': 'World Cup', 'country': 'World', 'tier': 1, 'seq': 7},
    # Tier 2
    3: {'name': 'UEFA Europa League', 'country': 'World', 'tier': 2, 'seq': 1},
    848: {'name': 'Europa Conference League', 'country': 'World', 'tier': 2, 'seq': 2},
    94: {'name': 'Primeira Liga', 'country': 'Portugal', 'tier': 2, 'seq': 3},
    88: {'name': 'Eredivisie', 'country': 'Netherlands', 'tier': 2, 'seq': 4},
    71: {'name': 'Serie A', 'country': 'Brazil', 'tier': 2, 'seq': 5},
    128: {'name': 'Liga Profesional', 'country': 'Argentina', 'tier': 2, 'seq': 6},
    # Tier 3
    144: {'name': 'Jupiler Pro League', 'country': 'Belgium', 'tier': 3, 'seq': 1},
    203: {'name': 'Super Lig', 'country': 'Turkey', 'tier': 3, 'seq': 2},
    253: {'name': 'Major League Soccer', 'country': 'USA', 'tier': 3, 'seq': 3},
    119: {'name': 'Superliga', 'country': 'Denmark', 'tier': 3, 'seq': 4},
    40: {'name': 'Championship', 'country': 'England', 'tier': 3, 'seq': 5},
    141: {'name': 'LaLiga 2', 'country': 'Spain', 'tier': 3, 'seq': 6},
    # Tier 4
    113: {'name': 'Allsvenskan', 'country': 'Sweden', 'tier': 4, 'seq': 1},
    103: {'name': 'Eliteserien', 'country': 'Norway', 'tier': 4, 'seq': 2},
    179: {'name': 'Premiership', 'country': 'Scotland', 'tier': 4, 'seq': 3},
    262: {'name': 'Liga MX', 'country': 'Mexico', 'tier': 4, 'seq': 5},
    340: {'name': 'V.League 1', 'country': 'Vietnam', 'tier': 4, 'seq': 6},
}

DEFAULT_TIER = 4
DEFAULT_SEQ = 1000

# Biggest domestic leagues; warmed with odds ahead of kickoff
TOP_5_LEAGUE_IDS = [39, 140, 135, 78, 61]

# Hot whitelist: top-tier domestic leagues first, then UEFA club competitions
HOT_LEAGUE_IDS = TOP_5_LEAGUE_IDS + [2, 3, 848]

# Competitions whose live/scheduled fixtures are worth snapshotting
ALLOWED_LEAGUE_IDS = sorted(set(POPULAR_LEAGUES) | {
    41, 42, 43, 45, 48,      # England lower tiers and cups
    143, 556,                # Spain cups
    137, 547,                # Italy cups
    81, 529,                 # Germany cups
    66, 526,                 # France cups
    341, 342,                # Vietnam
    4, 5, 9, 10,             # National-team tournaments
})


def get_league_meta(league_id: int) -> dict:
    """Return tier/seq/name metadata for a league, with defaults for unknown ids."""
    meta = POPULAR_LEAGUES.get(league_id)
    if meta:
        return dict(meta)
    return {'name': None, 'country': None, 'tier': DEFAULT_TIER, 'seq': DEFAULT_SEQ}


def get_allowed_live_param() -> str:
    """Dash-joined league ids, the format the fixtures `live` filter accepts."""
    return '-'.join(str(league_id) for league_id in ALLOWED_LEAGUE_IDS)
