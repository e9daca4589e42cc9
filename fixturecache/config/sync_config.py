"""Upstream sync configuration and defaults"""
import os
import dotenv
from typing import Optional

dotenv.load_dotenv(dotenv.find_dotenv())


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == '':
        return default
    try:
        return int(raw)
    except ValueError:
        print(f"WARNING: {name}={raw!r} is not an integer, using {default}")
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == '':
        return default
    try:
        return float(raw)
    except ValueError:
        print(f"WARNING: {name}={raw!r} is not a number, using {default}")
        return default


def _env_int_list(name: str) -> list[int]:
    raw = os.getenv(name, '')
    return [int(part) for part in raw.split(',') if part.strip().isdigit()]


# API-Football credentials / transport
API_FOOTBALL_KEY = os.getenv('API_FOOTBALL_KEY')
API_FOOTBALL_MODE = os.getenv('API_FOOTBALL_MODE', 'direct').lower()
API_USE_STUB_DATA = os.getenv('API_USE_STUB_DATA', 'false').lower() == 'true'
API_REQUEST_TIMEOUT = _env_float('API_REQUEST_TIMEOUT', 10.0)
API_TIMEZONE = os.getenv('API_TIMEZONE', 'UTC')

# Shared token bucket (requests per second / burst size)
API_RATE_LIMIT_PER_SECOND = _env_float('API_RATE_LIMIT_PER_SECOND', 1.0)
API_RATE_LIMIT_BURST = _env_int('API_RATE_LIMIT_BURST', 5)

# Bookmakers kept when filtering odds (comma-separated ids in the env)
DEFAULT_BOOKMAKERS = _env_int_list('DEFAULT_BOOKMAKERS') or [8, 9, 1, 11, 18, 6, 16, 29, 7, 13, 31, 10, 5, 3, 28, 12]

# Sync job
SYNC_EXPIRING_WINDOW_MINUTES = _env_int('SYNC_EXPIRING_WINDOW_MINUTES', 10)
SYNC_MAX_EXPIRING_BATCH = _env_int('SYNC_MAX_EXPIRING_BATCH', 20)
SYNC_UPCOMING_HOURS = _env_int('SYNC_UPCOMING_HOURS', 24)
SYNC_IMMINENT_HOURS = _env_int('SYNC_IMMINENT_HOURS', 2)
PRECACHE_DAYS_AHEAD = _env_int('PRECACHE_DAYS_AHEAD', 7)

# Worker timer periods (seconds)
WORKER_LIVE_INTERVAL = _env_float('WORKER_LIVE_INTERVAL', 30)
WORKER_HOT_INTERVAL = _env_float('WORKER_HOT_INTERVAL', 60)
WORKER_HOT_ODDS_INTERVAL = _env_float('WORKER_HOT_ODDS_INTERVAL', 600)
WORKER_LIVE_SCHEDULED_INTERVAL = _env_float('WORKER_LIVE_SCHEDULED_INTERVAL', 300)
WORKER_SYNC_INTERVAL = _env_float('WORKER_SYNC_INTERVAL', 300)
WORKER_ENABLED = os.getenv('MATCH_CACHE_WORKER_ENABLED', 'false').lower() in ('true', '1', 'yes')

# Aggregator
HOT_WINDOW_DAYS = _env_int('HOT_WINDOW_DAYS', 4)
HOT_MIN_LEAGUES = _env_int('HOT_MIN_LEAGUES', 3)
ODDS_BATCH_SIZE = _env_int('ODDS_BATCH_SIZE', 10)
MAX_FIXTURES_PER_QUERY = _env_int('MAX_FIXTURES_PER_QUERY', 200)

# Result-set cache TTLs (seconds) per cache type
RESULT_SET_TTLS = {
    'live': _env_int('RESULT_SET_TTL_LIVE', 30),
    'hot': _env_int('RESULT_SET_TTL_HOT', 60),
    'live-scheduled': _env_int('RESULT_SET_TTL_LIVE_SCHEDULED', 300),
}
RESULT_SET_MAX_TTL = 600

# Finished-match detail is treated as settled data
MATCH_DETAIL_TTL_DAYS = _env_int('MATCH_DETAIL_TTL_DAYS', 30)


def get_sync_settings() -> dict:
    """Snapshot of the effective sync settings (safe to expose, no secrets)"""
    return {
        'api_mode': 'stub' if API_USE_STUB_DATA else API_FOOTBALL_MODE,
        'api_key_configured': bool(API_FOOTBALL_KEY),
        'request_timeout': API_REQUEST_TIMEOUT,
        'rate_limit_per_second': API_RATE_LIMIT_PER_SECOND,
        'rate_limit_burst': API_RATE_LIMIT_BURST,
        'default_bookmakers': DEFAULT_BOOKMAKERS,
        'expiring_window_minutes': SYNC_EXPIRING_WINDOW_MINUTES,
        'max_expiring_batch': SYNC_MAX_EXPIRING_BATCH,
        'worker_intervals': {
            'live': WORKER_LIVE_INTERVAL,
            'hot': WORKER_HOT_INTERVAL,
            'hot_scheduled_odds': WORKER_HOT_ODDS_INTERVAL,
            'live_scheduled': WORKER_LIVE_SCHEDULED_INTERVAL,
            'sync': WORKER_SYNC_INTERVAL,
        },
        'result_set_ttls': dict(RESULT_SET_TTLS),
    }


def validate_sync_config() -> tuple[bool, Optional[str]]:
    """Validate that the upstream client can be constructed

    Returns:
        Tuple of (is_valid, error_message)
    """
    if not API_FOOTBALL_KEY and not API_USE_STUB_DATA:
        return False, "API_FOOTBALL_KEY not configured (set API_USE_STUB_DATA=true for offline runs)"

    if API_FOOTBALL_MODE not in ('direct', 'rapidapi'):
        return False, f"Unknown API_FOOTBALL_MODE: {API_FOOTBALL_MODE}"

    if API_RATE_LIMIT_PER_SECOND <= 0:
        return False, "API_RATE_LIMIT_PER_SECOND must be positive"

    if API_REQUEST_TIMEOUT <= 0:
        return False, "API_REQUEST_TIMEOUT must be positive"

    return True, None
