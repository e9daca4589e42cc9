"""
Freshness policy for cached fixtures.

Pure functions: given a fixture's match status and kickoff time (and an
explicit ``now``), decide when the cached snapshot stops being valid and how
urgently it should be refreshed. Nothing here touches the network or the
database, so every rule can be unit tested without a clock mock.
"""

import logging
from datetime import datetime, timedelta, timezone
from enum import Enum

logger = logging.getLogger(__name__)


class MatchStatus(str, Enum):
    SCHEDULED = 'scheduled'
    LIVE = 'live'
    FINISHED = 'finished'
    POSTPONED = 'postponed'
    CANCELLED = 'cancelled'

    @classmethod
    def coerce(cls, value) -> 'MatchStatus | None':
        """Accept an enum member or its string value; None for anything else."""
        if isinstance(value, cls):
            return value
        try:
            return cls(value)
        except ValueError:
            return None


class Priority(str, Enum):
    CRITICAL = 'critical'
    HIGH = 'high'
    MEDIUM = 'medium'
    LOW = 'low'

    @property
    def rank(self) -> int:
        return PRIORITY_RANK[self.value]


# Higher rank refreshes first
PRIORITY_RANK = {
    Priority.CRITICAL.value: 4,
    Priority.HIGH.value: 3,
    Priority.MEDIUM.value: 2,
    Priority.LOW.value: 1,
}

SETTLED_STATUSES = frozenset({MatchStatus.FINISHED, MatchStatus.POSTPONED, MatchStatus.CANCELLED})

LIVE_TTL = timedelta(minutes=2)
IMMINENT_TTL = timedelta(minutes=5)
SAME_DAY_TTL = timedelta(minutes=30)
DISTANT_TTL = timedelta(minutes=60)
SETTLED_TTL = timedelta(hours=24)
DEFAULT_TTL = timedelta(minutes=30)

IMMINENT_HOURS = 2
SAME_DAY_HOURS = 24

# API-Football `fixture.status.short` codes
API_STATUS_MAP = {
    'TBD': MatchStatus.SCHEDULED,
    'NS': MatchStatus.SCHEDULED,
    '1H': MatchStatus.LIVE,
    'HT': MatchStatus.LIVE,
    '2H': MatchStatus.LIVE,
    'ET': MatchStatus.LIVE,
    'BT': MatchStatus.LIVE,
    'P': MatchStatus.LIVE,
    'SUSP': MatchStatus.LIVE,
    'INT': MatchStatus.LIVE,
    'LIVE': MatchStatus.LIVE,
    'FT': MatchStatus.FINISHED,
    'AET': MatchStatus.FINISHED,
    'PEN': MatchStatus.FINISHED,
    'AWD': MatchStatus.FINISHED,
    'WO': MatchStatus.FINISHED,
    'PST': MatchStatus.POSTPONED,
    'CANC': MatchStatus.CANCELLED,
    'ABD': MatchStatus.CANCELLED,
}

FALLBACK_STATUS = MatchStatus.SCHEDULED

FINISHED_STATUS_CODES = frozenset({'FT', 'AET', 'PEN'})


def map_api_status(short_code: str | None) -> MatchStatus:
    """Translate an upstream short status code; unknown codes fall back to scheduled."""
    code = (short_code or '').strip().upper()
    status = API_STATUS_MAP.get(code)
    if status is None:
        logger.debug(f"Unmapped upstream status {short_code!r}, treating as {FALLBACK_STATUS.value}")
        return FALLBACK_STATUS
    return status


def _as_utc(dt: datetime | None) -> datetime | None:
    """Normalize naive datetimes to UTC-aware values."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def hours_until(match_date: datetime | None, now: datetime) -> float | None:
    """Hours from ``now`` until kickoff (negative once kickoff has passed)."""
    if match_date is None:
        return None
    return (_as_utc(match_date) - _as_utc(now)).total_seconds() / 3600


def compute_expiry(match_status, match_date: datetime | None, now: datetime,
                   settled_ttl: timedelta = SETTLED_TTL) -> datetime:
    """Return the timestamp after which a snapshot of this fixture is stale.

    Args:
        match_status: MatchStatus (or its string value)
        match_date: Kickoff time
        now: Reference time; the result is always later than ``now``
        settled_ttl: Retention for finished/postponed/cancelled fixtures

    Returns:
        UTC-aware expiry timestamp
    """
    now = _as_utc(now)
    status = MatchStatus.coerce(match_status)

    if status is MatchStatus.LIVE:
        ttl = LIVE_TTL
    elif status is MatchStatus.SCHEDULED:
        h = hours_until(match_date, now)
        if h is None:
            ttl = DEFAULT_TTL
        elif h < IMMINENT_HOURS:
            ttl = IMMINENT_TTL
        elif h < SAME_DAY_HOURS:
            ttl = SAME_DAY_TTL
        else:
            ttl = DISTANT_TTL
    elif status in SETTLED_STATUSES:
        ttl = settled_ttl
    else:
        ttl = DEFAULT_TTL

    return now + ttl


def compute_priority(match_status, match_date: datetime | None, now: datetime) -> Priority:
    """Refresh priority; live is always critical regardless of kickoff time."""
    status = MatchStatus.coerce(match_status)
    if status is MatchStatus.LIVE:
        return Priority.CRITICAL
    if status in SETTLED_STATUSES:
        return Priority.LOW

    h = hours_until(match_date, now)
    if h is None or h < 0:
        return Priority.LOW
    if h < IMMINENT_HOURS:
        return Priority.HIGH
    if h < SAME_DAY_HOURS:
        return Priority.MEDIUM
    return Priority.LOW


def priority_rank(priority) -> int:
    value = priority.value if isinstance(priority, Priority) else priority
    return PRIORITY_RANK.get(value, 0)
