"""
Fixture aggregation: one logical result set from several upstream queries.

A date view is assembled from up to three "query shapes" (live, not started,
finished) issued concurrently, merged and de-duplicated by fixture id, grouped
by competition and ordered so that competitions with live play come first.

Database access stays on the calling thread (which holds the app context);
worker threads in the pool only talk to API-Football.
"""

import logging
from concurrent.futures import ThreadPoolExecutor
from datetime import date, datetime, time, timedelta, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional

from sqlalchemy.exc import SQLAlchemyError

from fixturecache.config import sync_config
from fixturecache.data.leagues import (
    ALLOWED_LEAGUE_IDS,
    HOT_LEAGUE_IDS,
    get_allowed_live_param,
    get_league_meta,
)
from fixturecache.errors import UpstreamRequestError
from fixturecache.models.api_cache import ResultSetCache
from fixturecache.models.fixture_cache import OddsCacheEntry, db
from fixturecache.services.freshness_policy import MatchStatus, _as_utc
from fixturecache.utils.sorting import ASC, DESC, sort_by
from fixturecache.utils.transformers import (
    DEFAULT_LOGO,
    filter_bookmakers,
    transform_fixture,
    transform_odds,
)

logger = logging.getLogger(__name__)

LIVE = 'live'
FINISHED_FILTER = 'FT-AET-PEN'
NOT_STARTED_FILTER = 'NS'

# Competition ordering: live play first, then upcoming, then results
STATUS_RANK = {
    MatchStatus.LIVE.value: 0,
    MatchStatus.SCHEDULED.value: 1,
    MatchStatus.FINISHED.value: 2,
}
OTHER_STATUS_RANK = 3


def current_season(today: date) -> int:
    """European seasons roll over in August."""
    return today.year if today.month >= 8 else today.year - 1


def _coerce_day(requested) -> date:
    if isinstance(requested, datetime):
        return requested.date()
    if isinstance(requested, date):
        return requested
    return date.fromisoformat(str(requested)[:10])


def query_shapes_for(requested, today: date) -> List[tuple[str, Dict[str, Any]]]:
    """Upstream queries needed for ``requested`` ('live' or a calendar day).

    past -> finished; today -> live + not started + finished;
    future -> not started; 'live' -> live only.
    """
    if isinstance(requested, str) and requested.lower() == LIVE:
        return [('live', {'live': 'all'})]

    day = _coerce_day(requested)
    day_str = day.isoformat()
    if day < today:
        return [('finished', {'date': day_str, 'status': FINISHED_FILTER})]
    if day > today:
        return [('not_started', {'date': day_str, 'status': NOT_STARTED_FILTER})]
    return [
        ('live', {'live': 'all'}),
        ('not_started', {'date': day_str, 'status': NOT_STARTED_FILTER}),
        ('finished', {'date': day_str, 'status': FINISHED_FILTER}),
    ]


def _fixture_id(fixture: dict):
    return ((fixture or {}).get('fixture') or {}).get('id')


def dedupe_fixtures(fixtures: Iterable[dict]) -> List[dict]:
    """Drop repeated fixture ids; the first occurrence wins."""
    seen = set()
    unique = []
    for fixture in fixtures:
        fixture_id = _fixture_id(fixture)
        if fixture_id is None or fixture_id in seen:
            continue
        seen.add(fixture_id)
        unique.append(fixture)
    return unique


def group_matches(matches: Iterable[dict]) -> List[dict]:
    """Group match summaries by competition, keeping first-seen competition order."""
    groups: Dict[Any, dict] = {}
    for match in matches:
        competition = match.get('competition') or {}
        league_id = competition.get('id')
        if league_id not in groups:
            groups[league_id] = {**competition, 'matches': []}
        groups[league_id]['matches'].append(match)
    return list(groups.values())


def group_fixtures_by_league(fixtures: Iterable[dict]) -> List[dict]:
    return group_matches(transform_fixture(f) for f in fixtures)


def focus_live(groups: List[dict]) -> List[dict]:
    """Within a competition that has live play, show only the live matches."""
    for group in groups:
        live = [m for m in group['matches'] if m.get('status') == MatchStatus.LIVE.value]
        if live:
            group['matches'] = live
    return groups


def _group_status_rank(group: dict) -> int:
    ranks = [STATUS_RANK.get(m.get('status'), OTHER_STATUS_RANK) for m in group.get('matches', [])]
    return min(ranks, default=OTHER_STATUS_RANK)


def _earliest_kickoff(group: dict) -> Optional[str]:
    kickoffs = [m.get('date_time') for m in group.get('matches', []) if m.get('date_time')]
    return min(kickoffs, default=None)


def _odds_count(group: dict) -> int:
    return sum(1 for m in group.get('matches', []) if m.get('bookmakers'))


def order_competitions(groups: List[dict]) -> List[dict]:
    return sort_by(groups, [(_group_status_rank, ASC), (_earliest_kickoff, ASC)])


def order_hot_competitions(groups: List[dict]) -> List[dict]:
    return sort_by(groups, [('tier', ASC), (_odds_count, DESC), (_earliest_kickoff, ASC)])


def _summary_from_row(row: OddsCacheEntry) -> dict:
    """Match summary built from a cached odds row (no upstream call)."""
    meta = get_league_meta(row.league_id)
    home = row.home_team or {}
    away = row.away_team or {}
    kickoff = _as_utc(row.match_date)
    return {
        'id': row.fixture_id,
        'name': f"{home.get('name') or 'Home'} - {away.get('name') or 'Away'}",
        'date_time': kickoff.isoformat() if kickoff else None,
        'status': row.match_status,
        'status_code': row.status_code,
        'teams': {'home': home, 'away': away},
        'competition': {
            'id': row.league_id,
            'name': row.league_name or meta.get('name') or f"League {row.league_id}",
            'country': meta.get('country') or '',
            'logo': DEFAULT_LOGO,
            'season': row.season_year,
            'tier': meta['tier'],
            'seq': meta['seq'],
        },
        'bookmakers': row.bookmakers,
    }


class FixtureAggregator:
    def __init__(self, client, cache_service, now_fn: Optional[Callable[[], datetime]] = None,
                 batch_size: int = sync_config.ODDS_BATCH_SIZE,
                 max_fixtures: int = sync_config.MAX_FIXTURES_PER_QUERY):
        self.client = client
        self.cache_service = cache_service
        self.now_fn = now_fn or (lambda: datetime.now(timezone.utc))
        self.batch_size = batch_size
        self.max_fixtures = max_fixtures

    # ------------------------------------------------------------------
    # Upstream fan-out
    # ------------------------------------------------------------------

    def _fetch_shapes(self, shapes: List[tuple[str, Dict[str, Any]]]) -> List[dict]:
        """Run every shape concurrently; results are merged in shape order.

        A failed shape is skipped; if every shape fails the last error is raised.
        """
        if not shapes:
            return []
        with ThreadPoolExecutor(max_workers=len(shapes)) as executor:
            futures = [(name, executor.submit(self.client.get_fixtures, params)) for name, params in shapes]
            merged = []
            last_error = None
            failures = 0
            for name, future in futures:
                try:
                    rows = future.result()
                except UpstreamRequestError as e:
                    logger.error(f"❌ Fixture query '{name}' failed: {e}")
                    last_error = e
                    failures += 1
                    continue
                except Exception as e:
                    logger.exception(f"❌ Fixture query '{name}' failed unexpectedly")
                    last_error = UpstreamRequestError('fixtures', str(e))
                    failures += 1
                    continue
                logger.debug(f"Query '{name}' returned {len(rows)} fixtures")
                merged.extend(rows)
        if last_error is not None and failures == len(shapes):
            raise last_error
        return merged

    def _assemble(self, fixtures: List[dict], league_ids, include_odds: bool) -> List[dict]:
        fixtures = dedupe_fixtures(fixtures)
        if league_ids:
            allowed = {int(league_id) for league_id in league_ids}
            fixtures = [f for f in fixtures if ((f.get('league') or {}).get('id')) in allowed]

        if len(fixtures) > self.max_fixtures:
            logger.warning(f"⚠️ {len(fixtures)} fixtures exceeds cap {self.max_fixtures}, truncating")
            fixtures = fixtures[:self.max_fixtures]

        groups = order_competitions(focus_live(group_fixtures_by_league(fixtures)))

        if include_odds and groups:
            self.attach_odds(groups, {_fixture_id(f): f for f in fixtures})
        return groups

    def fetch_fixtures_for_date(self, requested, league_ids: Optional[Iterable[int]] = None,
                                include_odds: bool = False) -> List[dict]:
        """Competitions (with their matches) for a day or for 'live'."""
        today = self.now_fn().date()
        fixtures = self._fetch_shapes(query_shapes_for(requested, today))
        return self._assemble(fixtures, league_ids, include_odds)

    def fetch_live_scheduled(self, day: Optional[date] = None,
                             league_ids: Optional[Iterable[int]] = None) -> List[dict]:
        """Live fixtures plus the day's not-started ones (no results)."""
        day = day or self.now_fn().date()
        shapes = [
            ('live', {'live': 'all'}),
            ('not_started', {'date': day.isoformat(), 'status': NOT_STARTED_FILTER}),
        ]
        return self._assemble(self._fetch_shapes(shapes), league_ids, include_odds=False)

    def attach_odds(self, groups: List[dict], raw_fixtures: Dict[int, dict]) -> dict:
        """Fill ``bookmakers`` on every match: cache first, then upstream in small parallel groups."""
        matches = [m for g in groups for m in g['matches']]
        ids = [m['id'] for m in matches if m.get('id') is not None]
        cached = self.cache_service.get_bulk_odds(ids)
        counts = {'cache_hits': 0, 'fetched': 0, 'missing': 0, 'errors': 0}

        misses = []
        for match in matches:
            bookmakers = cached.get(match.get('id'))
            if bookmakers:
                match['bookmakers'] = bookmakers
                counts['cache_hits'] += 1
            else:
                misses.append(match)

        for start in range(0, len(misses), self.batch_size):
            batch = misses[start:start + self.batch_size]
            with ThreadPoolExecutor(max_workers=len(batch)) as executor:
                futures = [(m, executor.submit(self.client.get_fixture_odds, m['id'])) for m in batch]
                results = []
                for match, future in futures:
                    try:
                        results.append((match, future.result()))
                    except UpstreamRequestError as e:
                        counts['errors'] += 1
                        logger.warning(f"Odds fetch failed for fixture {match['id']}: {e}")
                    except Exception:
                        counts['errors'] += 1
                        logger.exception(f"Odds fetch failed for fixture {match['id']}")

            # Writes happen here, on the thread holding the app context
            for match, odds_data in results:
                if not odds_data:
                    counts['missing'] += 1
                    continue
                raw = raw_fixtures.get(match['id'])
                try:
                    match['bookmakers'] = filter_bookmakers(
                        transform_odds(odds_data), self.cache_service.default_bookmakers
                    )
                    counts['fetched'] += 1
                    if raw is not None:
                        self.cache_service.save_odds(raw, odds_data)
                except SQLAlchemyError as e:
                    counts['errors'] += 1
                    db.session.rollback()
                    logger.error(f"Failed to cache odds for fixture {match['id']}: {e}")
                except Exception:
                    counts['errors'] += 1
                    logger.exception(f"Failed to attach odds for fixture {match['id']}")

        logger.info(
            f"🎲 Odds attached: {counts['cache_hits']} cache hits, {counts['fetched']} fetched, "
            f"{counts['missing']} unavailable, {counts['errors']} errors"
        )
        return counts

    # ------------------------------------------------------------------
    # Hot matches
    # ------------------------------------------------------------------

    def _day_bounds(self, day: date) -> tuple[datetime, datetime]:
        start = datetime.combine(day, time.min, tzinfo=timezone.utc)
        return start, start + timedelta(days=1)

    def fetch_league_window(self, league_ids: Iterable[int], today: date, days: int,
                            status: Optional[str] = None) -> List[dict]:
        """Season-scoped fixtures for each league from ``today`` over ``days`` days, de-duplicated.

        Leagues are queried one at a time; a failing league is logged and skipped.
        """
        params_base = {
            'season': current_season(today),
            'from': today.isoformat(),
            'to': (today + timedelta(days=days)).isoformat(),
        }
        if status:
            params_base['status'] = status
        fixtures = []
        for league_id in league_ids:
            try:
                fixtures.extend(self.client.get_fixtures({**params_base, 'league': league_id}))
            except UpstreamRequestError as e:
                logger.warning(f"❌ Fixture query failed for league {league_id}: {e}")
        return dedupe_fixtures(fixtures)

    def fetch_live(self, league_param: str = 'all') -> List[dict]:
        """Competitions currently in play; ``league_param`` is 'all' or dash-joined ids."""
        fixtures = self.client.get_fixtures({'live': league_param})
        return self._assemble(fixtures, None, include_odds=False)

    def _hot_from_upstream(self, today: date, max_days: int) -> List[dict]:
        fixtures = self.fetch_league_window(HOT_LEAGUE_IDS, today, max_days, status=NOT_STARTED_FILTER)
        return group_fixtures_by_league(fixtures)

    def get_hot_matches(self, min_leagues: int = sync_config.HOT_MIN_LEAGUES,
                        max_days: int = sync_config.HOT_WINDOW_DAYS) -> List[dict]:
        """Hot-league competitions with cached odds, widening day by day.

        Walks forward from today until ``min_leagues`` distinct leagues have
        cached fixtures or ``max_days`` days have been searched. With nothing
        cached across the window, falls back to querying upstream directly.
        """
        now = self.now_fn()
        today = now.date()
        rows: List[OddsCacheEntry] = []
        leagues = set()
        for offset in range(max_days):
            start, end = self._day_bounds(today + timedelta(days=offset))
            day_rows = OddsCacheEntry.find_for_leagues_between(HOT_LEAGUE_IDS, start, end, now=now)
            rows.extend(day_rows)
            leagues.update(row.league_id for row in day_rows)
            if len(leagues) >= min_leagues:
                break

        if not rows:
            logger.info("🔥 No hot fixtures cached in window, querying upstream")
            groups = self._hot_from_upstream(today, max_days)
            return order_hot_competitions(groups)

        matches = [_summary_from_row(row) for row in rows]

        # Finished fixtures carry richer detail in the match-detail cache
        finished_ids = [m['id'] for m in matches if m['status'] == MatchStatus.FINISHED.value]
        if finished_ids:
            detail = self.cache_service.get_bulk_cached_matches(finished_ids)
            for index, match in enumerate(matches):
                cached = detail.get(match['id'])
                if cached:
                    matches[index] = {**cached, 'bookmakers': match['bookmakers'] or cached.get('bookmakers') or []}

        return order_hot_competitions(focus_live(group_matches(matches)))

    # ------------------------------------------------------------------
    # Result-set reads
    # ------------------------------------------------------------------

    def get_or_fetch_result_set(self, cache_type: str, cache_key: str,
                                fetch_fn: Callable[[], Any]) -> dict:
        """Serve a cached result set, refreshing it through ``fetch_fn`` on a miss.

        When the refresh fails, an expired-but-unswept copy is served instead.
        """
        cached = ResultSetCache.get_cached(cache_type, cache_key)
        if cached is not None:
            return {'data': cached, 'from_cache': True, 'stale': False}
        try:
            data = fetch_fn()
        except UpstreamRequestError as e:
            stale = ResultSetCache.get_cached(cache_type, cache_key, allow_stale=True)
            if stale is not None:
                logger.warning(f"⚠️ Serving stale {cache_type}/{cache_key} after fetch error: {e}")
                return {'data': stale, 'from_cache': True, 'stale': True}
            raise
        ResultSetCache.set_cached(cache_type, cache_key, data)
        return {'data': data, 'from_cache': False, 'stale': False}

    def result_payload(self, items: List[dict]) -> dict:
        """Envelope stored in the result-set cache."""
        return {
            'items': items,
            'count': len(items),
            'has_more': False,
            'fetched_at': self.now_fn().isoformat(),
        }

    def get_live(self) -> dict:
        return self.get_or_fetch_result_set(
            'live', 'live_all',
            lambda: self.result_payload(self.fetch_live(get_allowed_live_param())),
        )

    def get_hot(self) -> dict:
        return self.get_or_fetch_result_set(
            'hot', 'hot_all', lambda: self.result_payload(self.get_hot_matches()),
        )

    def get_live_scheduled(self, day: Optional[date] = None) -> dict:
        day = day or self.now_fn().date()
        return self.get_or_fetch_result_set(
            'live-scheduled', f"live-scheduled_{day.isoformat()}",
            lambda: self.result_payload(self.fetch_live_scheduled(day, league_ids=ALLOWED_LEAGUE_IDS)),
        )
