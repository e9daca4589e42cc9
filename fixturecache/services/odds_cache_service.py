"""
Cache-aside read path for odds and finished-match detail.

Reads hit the database first; a miss (or an expired row) falls back to a live
API-Football fetch whose result is written back through the store's ``upsert``.
Every public read swallows upstream and persistence failures and reports them
as "no data" (``None`` / empty) so callers never have to guard the cache.

All methods expect to run inside a Flask app context.
"""

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy.exc import SQLAlchemyError

from fixturecache.config import sync_config
from fixturecache.errors import UpstreamRequestError
from fixturecache.models.fixture_cache import MatchDetailCache, OddsCacheEntry
from fixturecache.services.freshness_policy import FINISHED_STATUS_CODES
from fixturecache.utils.transformers import filter_bookmakers, transform_fixture, transform_odds

logger = logging.getLogger(__name__)

# How long a second caller waits for an in-flight fetch of the same fixture
INFLIGHT_WAIT_SECONDS = 30.0


class OddsCacheService:
    """Accessor over ``OddsCacheEntry`` and ``MatchDetailCache``."""

    def __init__(self, client=None, default_bookmakers: Optional[List[int]] = None,
                 coalesce: bool = True):
        self.client = client
        self.default_bookmakers = list(
            default_bookmakers if default_bookmakers is not None else sync_config.DEFAULT_BOOKMAKERS
        )
        self.coalesce = coalesce
        self._inflight: Dict[int, threading.Event] = {}
        self._inflight_lock = threading.Lock()

    # ------------------------------------------------------------------
    # In-flight coalescing
    # ------------------------------------------------------------------

    def _claim(self, key) -> tuple[bool, threading.Event]:
        """Return (owner, event). Only the owner fetches; others wait on the event."""
        with self._inflight_lock:
            event = self._inflight.get(key)
            if event is not None:
                return False, event
            event = threading.Event()
            self._inflight[key] = event
            return True, event

    def _release(self, key, event: threading.Event) -> None:
        with self._inflight_lock:
            self._inflight.pop(key, None)
        event.set()

    # ------------------------------------------------------------------
    # Odds: reads
    # ------------------------------------------------------------------

    def get_odds(self, fixture_id: int) -> Optional[List[Dict[str, Any]]]:
        """Cached bookmakers for a fixture, or None on miss/expiry/store error."""
        try:
            row = OddsCacheEntry.get(fixture_id, include_expired=True)
            if row is None:
                return None
            if row.is_expired():
                logger.debug(f"[OddsCache] Expired entry for fixture {fixture_id}, dropping")
                self.delete_odds(fixture_id)
                return None
            return row.bookmakers
        except SQLAlchemyError as e:
            logger.error(f"[OddsCache] Error reading fixture {fixture_id}: {e}")
            return None

    def _cached_bookmakers(self, fixture_id: int, bookmaker_ids) -> Optional[List[Dict[str, Any]]]:
        cached = self.get_odds(fixture_id)
        if cached is None:
            return None
        return filter_bookmakers(cached, bookmaker_ids)

    def get_or_fetch_odds(self, fixture_id: int, fixture_data: Optional[dict] = None,
                          bookmaker_ids: Optional[Iterable[int]] = None) -> Optional[List[Dict[str, Any]]]:
        """Cached odds, or fetch them from API-Football and cache them.

        Args:
            fixture_id: API-Football fixture id
            fixture_data: Provider fixture document, when the caller already has it
                (saves the fixture lookup)
            bookmaker_ids: Bookmakers to keep; all bookmakers are returned when
                none of them is present

        Returns:
            Transformed bookmaker list, or None when nothing is available
        """
        wanted = list(bookmaker_ids) if bookmaker_ids is not None else self.default_bookmakers

        cached = self._cached_bookmakers(fixture_id, wanted)
        if cached is not None:
            logger.debug(f"[OddsCache] Hit for fixture {fixture_id}")
            return cached

        if self.client is None:
            return None

        if not self.coalesce:
            return self._fetch_and_cache_odds(fixture_id, fixture_data, wanted)

        owner, event = self._claim(('odds', fixture_id))
        if not owner:
            logger.debug(f"[OddsCache] Waiting for in-flight fetch of fixture {fixture_id}")
            event.wait(INFLIGHT_WAIT_SECONDS)
            return self._cached_bookmakers(fixture_id, wanted)
        try:
            return self._fetch_and_cache_odds(fixture_id, fixture_data, wanted)
        finally:
            self._release(('odds', fixture_id), event)

    def _fetch_and_cache_odds(self, fixture_id: int, fixture_data: Optional[dict],
                              bookmaker_ids: List[int]) -> Optional[List[Dict[str, Any]]]:
        try:
            odds_data = self.client.get_fixture_odds(fixture_id)
            if not odds_data:
                logger.info(f"[OddsCache] No odds available upstream for fixture {fixture_id}")
                return None

            bookmakers = filter_bookmakers(transform_odds(odds_data), bookmaker_ids)

            if fixture_data is None:
                fixture_data = self.client.get_fixture(fixture_id)
                if not fixture_data:
                    logger.warning(f"[OddsCache] Could not fetch fixture details for {fixture_id}; not caching")
                    return bookmakers

            OddsCacheEntry.upsert(fixture_data, bookmakers)
            logger.info(f"[OddsCache] ✓ Cached fixture {fixture_id} ({len(bookmakers)} bookmakers)")
            return bookmakers
        except UpstreamRequestError as e:
            logger.error(f"[OddsCache] Error in get_or_fetch_odds for fixture {fixture_id}: {e}")
            return None
        except Exception:
            logger.exception(f"[OddsCache] Unexpected error in get_or_fetch_odds for fixture {fixture_id}")
            return None

    def get_bulk_odds(self, fixture_ids: Iterable[int]) -> Dict[int, List[Dict[str, Any]]]:
        try:
            return OddsCacheEntry.get_many(fixture_ids)
        except SQLAlchemyError as e:
            logger.error(f"[OddsCache] Error in get_bulk_odds: {e}")
            return {}

    # ------------------------------------------------------------------
    # Odds: writes
    # ------------------------------------------------------------------

    def save_odds(self, fixture_data: dict, odds_data: list, api_calls: int = 1):
        """Transform provider odds and upsert them. Raises on persistence errors."""
        bookmakers = filter_bookmakers(transform_odds(odds_data), self.default_bookmakers)
        return OddsCacheEntry.upsert(fixture_data, bookmakers, api_calls=api_calls)

    def bulk_save_odds(self, items: Iterable[dict]) -> int:
        """Save ``[{'fixture': ..., 'odds': ...}, ...]``; returns how many were saved."""
        saved = 0
        total = 0
        for item in items:
            total += 1
            try:
                self.save_odds(item.get('fixture'), item.get('odds'))
                saved += 1
            except Exception:
                logger.exception("[OddsCache] Failed to save odds in bulk")
        logger.info(f"[OddsCache] Bulk save: {saved}/{total} successful")
        return saved

    def delete_odds(self, fixture_id: int) -> bool:
        try:
            return OddsCacheEntry.delete_fixture(fixture_id)
        except SQLAlchemyError as e:
            logger.error(f"[OddsCache] Error deleting fixture {fixture_id}: {e}")
            return False

    def clear_expired(self) -> int:
        try:
            count = OddsCacheEntry.delete_all_expired()
        except SQLAlchemyError as e:
            logger.error(f"[OddsCache] Error clearing expired odds: {e}")
            return 0
        if count:
            logger.info(f"[OddsCache] 🧹 Cleared {count} expired odds entries")
        return count

    # ------------------------------------------------------------------
    # Odds: queries
    # ------------------------------------------------------------------

    def find_fixtures_needing_update(self, minutes: int = sync_config.SYNC_EXPIRING_WINDOW_MINUTES) -> list:
        return OddsCacheEntry.find_expiring_within(minutes)

    def find_live_fixtures(self) -> list:
        return OddsCacheEntry.find_by_status('live')

    def find_upcoming_fixtures(self, hours: int = sync_config.SYNC_UPCOMING_HOURS) -> list:
        return OddsCacheEntry.find_upcoming_within(hours)

    def get_cache_stats(self) -> dict:
        try:
            return {
                'odds': OddsCacheEntry.stats(),
                'match_detail': MatchDetailCache.stats(),
            }
        except SQLAlchemyError as e:
            logger.error(f"[OddsCache] Error computing stats: {e}")
            return {'odds': None, 'match_detail': None, 'error': str(e)}

    # ------------------------------------------------------------------
    # Finished-match detail
    # ------------------------------------------------------------------

    def get_cached_match(self, fixture_id: int) -> Optional[dict]:
        try:
            row = MatchDetailCache.get(fixture_id, include_expired=True)
            if row is None:
                return None
            if row.is_expired():
                MatchDetailCache.delete_fixture(fixture_id)
                return None
            return row.payload
        except SQLAlchemyError as e:
            logger.error(f"[MatchCache] Error reading fixture {fixture_id}: {e}")
            return None

    def get_bulk_cached_matches(self, fixture_ids: Iterable[int]) -> Dict[int, dict]:
        try:
            return MatchDetailCache.get_many(fixture_ids)
        except SQLAlchemyError as e:
            logger.error(f"[MatchCache] Error in get_bulk_cached_matches: {e}")
            return {}

    def cache_finished_match(self, fixture_data: dict, events: Optional[list] = None,
                             statistics: Optional[list] = None, odds: Optional[list] = None):
        """Cache the full detail of a finished match; returns None when not finished.

        Raises on persistence errors.
        """
        short = (((fixture_data or {}).get('fixture') or {}).get('status') or {}).get('short')
        fixture_id = ((fixture_data or {}).get('fixture') or {}).get('id')
        if short not in FINISHED_STATUS_CODES:
            logger.debug(f"[MatchCache] Skipping fixture {fixture_id}: not finished ({short})")
            return None
        detail = transform_fixture(fixture_data, odds_data=odds, events=events, stats_data=statistics)
        row = MatchDetailCache.upsert(fixture_data, detail)
        logger.info(f"[MatchCache] ✓ Cached finished match {fixture_id}")
        return row

    def clear_expired_matches(self) -> int:
        try:
            return MatchDetailCache.delete_all_expired()
        except SQLAlchemyError as e:
            logger.error(f"[MatchCache] Error clearing expired matches: {e}")
            return 0

    def get_or_fetch_finished_match(self, fixture_id: int) -> Optional[dict]:
        """Cached finished-match detail, or fetch fixture + events + statistics."""
        cached = self.get_cached_match(fixture_id)
        if cached is not None:
            return cached
        if self.client is None:
            return None

        try:
            fixture_data = self.client.get_fixture(fixture_id)
            if not fixture_data:
                logger.info(f"[MatchCache] Fixture {fixture_id} not found upstream")
                return None
            short = ((fixture_data.get('fixture') or {}).get('status') or {}).get('short')
            if short not in FINISHED_STATUS_CODES:
                logger.info(f"[MatchCache] Fixture {fixture_id} not finished yet ({short})")
                return None

            with ThreadPoolExecutor(max_workers=2) as executor:
                events_future = executor.submit(self.client.get_fixture_events, fixture_id)
                stats_future = executor.submit(self.client.get_fixture_statistics, fixture_id)
                events = events_future.result()
                statistics = stats_future.result()

            row = self.cache_finished_match(fixture_data, events, statistics)
            if row is not None:
                return row.payload
            return transform_fixture(fixture_data, events=events, stats_data=statistics)
        except UpstreamRequestError as e:
            logger.error(f"[MatchCache] Error in get_or_fetch_finished_match for {fixture_id}: {e}")
            return None
        except Exception:
            logger.exception(f"[MatchCache] Unexpected error in get_or_fetch_finished_match for {fixture_id}")
            return None
