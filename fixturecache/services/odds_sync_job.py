"""Periodic odds refresh.

One run walks the cache in four passes, most urgent first:

1. live fixtures
2. scheduled fixtures kicking off within the imminent window
3. rows expired or about to expire, highest priority first, capped per run
4. eviction of expired rows

Every upstream call goes through the shared client, so pacing comes from its
token bucket rather than sleeps here. A failure on one fixture is counted and
the pass moves on.
"""

import logging
import threading
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from sqlalchemy.exc import SQLAlchemyError

from fixturecache.config import sync_config
from fixturecache.errors import UpstreamRequestError
from fixturecache.models.fixture_cache import OddsCacheEntry
from fixturecache.services.freshness_policy import hours_until
from fixturecache.utils.sorting import sort_by_priority

logger = logging.getLogger(__name__)


class OddsSyncJob:
    def __init__(self, client, cache_service, now_fn=None,
                 expiring_window_minutes: int = sync_config.SYNC_EXPIRING_WINDOW_MINUTES,
                 max_expiring_batch: int = sync_config.SYNC_MAX_EXPIRING_BATCH,
                 upcoming_hours: int = sync_config.SYNC_UPCOMING_HOURS,
                 imminent_hours: int = sync_config.SYNC_IMMINENT_HOURS):
        self.client = client
        self.cache_service = cache_service
        self.now_fn = now_fn or (lambda: datetime.now(timezone.utc))
        self.expiring_window_minutes = expiring_window_minutes
        self.max_expiring_batch = max_expiring_batch
        self.upcoming_hours = upcoming_hours
        self.imminent_hours = imminent_hours

        self._run_lock = threading.Lock()
        self._is_running = False
        self.started_at = self.now_fn()
        self.reset_stats()

    @property
    def is_running(self) -> bool:
        return self._is_running

    def reset_stats(self) -> None:
        self.last_run: Optional[datetime] = None
        self.last_run_summary: Dict[str, Any] = {}
        self.stats = {
            'total_runs': 0,
            'successful_updates': 0,
            'failed_updates': 0,
            'api_calls_saved': 0,
            'failed_passes': 0,
        }

    def _try_start(self) -> bool:
        with self._run_lock:
            if self._is_running:
                return False
            self._is_running = True
            return True

    # ------------------------------------------------------------------
    # Refresh one fixture
    # ------------------------------------------------------------------

    def _refresh_fixture(self, fixture_id: int) -> str:
        """Fetch odds then fixture detail, then upsert. Returns 'updated' | 'no_data'."""
        odds_data = self.client.get_fixture_odds(fixture_id)
        if not odds_data:
            return 'no_data'
        fixture_data = self.client.get_fixture(fixture_id)
        if not fixture_data:
            return 'no_data'
        self.cache_service.save_odds(fixture_data, odds_data, api_calls=2)
        return 'updated'

    def _refresh_many(self, pass_name: str, fixture_ids, seen: set) -> dict:
        summary = {'candidates': 0, 'updated': 0, 'no_data': 0, 'failed': 0}
        for fixture_id in fixture_ids:
            if fixture_id in seen:
                continue
            seen.add(fixture_id)
            summary['candidates'] += 1
            try:
                outcome = self._refresh_fixture(fixture_id)
            except (UpstreamRequestError, SQLAlchemyError) as e:
                summary['failed'] += 1
                self.stats['failed_updates'] += 1
                logger.error(f"   ✗ [{pass_name}] Failed to update fixture {fixture_id}: {e}")
                continue
            except Exception:
                summary['failed'] += 1
                self.stats['failed_updates'] += 1
                logger.exception(f"   ✗ [{pass_name}] Unexpected error updating fixture {fixture_id}")
                continue
            summary[outcome] += 1
            if outcome == 'updated':
                self.stats['successful_updates'] += 1
        logger.info(f"   [{pass_name}] Updated {summary['updated']}/{summary['candidates']} fixtures")
        return summary

    # ------------------------------------------------------------------
    # Passes
    # ------------------------------------------------------------------

    def _live_pass(self, seen: set) -> dict:
        live = OddsCacheEntry.find_by_status('live')
        return self._refresh_many('live', [row.fixture_id for row in live], seen)

    def _imminent_pass(self, seen: set, now: datetime) -> dict:
        upcoming = OddsCacheEntry.find_upcoming_within(self.upcoming_hours, now=now)
        imminent = [
            row.fixture_id for row in upcoming
            if (hours_until(row.match_date, now) or 0) < self.imminent_hours
        ]
        return self._refresh_many('imminent', imminent, seen)

    def _expiring_pass(self, seen: set, now: datetime) -> dict:
        needing = OddsCacheEntry.find_expiring_within(self.expiring_window_minutes, now=now)
        ordered = [row for row in sort_by_priority(needing) if row.fixture_id not in seen]
        batch = ordered[:self.max_expiring_batch]
        summary = self._refresh_many('expiring', [row.fixture_id for row in batch], seen)
        summary['deferred'] = len(ordered) - len(batch)
        return summary

    def run(self) -> dict:
        """Run one sync cycle. Returns the run summary (``skipped`` if one is in progress)."""
        if not self._try_start():
            logger.info("[OddsSyncJob] Already running, skipping...")
            return {'skipped': True}

        started = self.now_fn()
        summary: Dict[str, Any] = {'skipped': False, 'started_at': started.isoformat()}
        logger.info("=== Odds Sync Job Started ===")
        try:
            seen: set = set()
            for name, step in (
                ('live', lambda: self._live_pass(seen)),
                ('imminent', lambda: self._imminent_pass(seen, started)),
                ('expiring', lambda: self._expiring_pass(seen, started)),
            ):
                try:
                    summary[name] = step()
                except Exception as e:
                    logger.exception(f"[OddsSyncJob] {name} pass failed")
                    summary[name] = {'error': str(e)}
                    self.stats['failed_passes'] += 1
            try:
                summary['evicted'] = OddsCacheEntry.delete_all_expired(now=self.now_fn())
            except Exception:
                logger.exception("[OddsSyncJob] Eviction failed")
                summary['evicted'] = 0

            finished = self.now_fn()
            summary['duration_seconds'] = round((finished - started).total_seconds(), 3)
            self.last_run = finished
            self.last_run_summary = summary
            self.stats['total_runs'] += 1
            logger.info(f"=== Sync Job Completed in {summary['duration_seconds']}s ===")
            return summary
        finally:
            with self._run_lock:
                self._is_running = False

    # ------------------------------------------------------------------
    # Pre-cache
    # ------------------------------------------------------------------

    def pre_cache_league(self, league_id: int, season: int,
                         days_ahead: int = sync_config.PRECACHE_DAYS_AHEAD) -> dict:
        """Warm the odds cache for a league's not-started fixtures in the next ``days_ahead`` days."""
        today = self.now_fn().date()
        params = {
            'league': league_id,
            'season': season,
            'from': today.isoformat(),
            'to': (today + timedelta(days=days_ahead)).isoformat(),
            'status': 'NS',
        }
        result = {'league_id': league_id, 'season': season, 'fixtures': 0,
                  'cached': 0, 'already_cached': 0, 'no_odds': 0, 'failed': 0}
        logger.info(f"=== Pre-caching league {league_id} season {season} ===")
        try:
            fixtures = self.client.get_fixtures(params)
        except UpstreamRequestError as e:
            logger.error(f"[OddsSyncJob] Pre-cache fixture lookup failed for league {league_id}: {e}")
            result['error'] = str(e)
            return result

        result['fixtures'] = len(fixtures)
        for fixture in fixtures:
            fixture_id = (fixture.get('fixture') or {}).get('id')
            if fixture_id is None:
                continue
            if self.cache_service.get_odds(fixture_id) is not None:
                result['already_cached'] += 1
                self.stats['api_calls_saved'] += 1
                continue
            try:
                odds_data = self.client.get_fixture_odds(fixture_id)
                if not odds_data:
                    result['no_odds'] += 1
                    continue
                self.cache_service.save_odds(fixture, odds_data)
                result['cached'] += 1
            except (UpstreamRequestError, SQLAlchemyError) as e:
                result['failed'] += 1
                logger.error(f"   ✗ Failed to cache fixture {fixture_id}: {e}")
            except Exception:
                result['failed'] += 1
                logger.exception(f"   ✗ Unexpected error caching fixture {fixture_id}")

        logger.info(f"Pre-cached {result['cached']}/{result['fixtures']} fixtures for league {league_id}")
        return result

    def get_stats(self) -> dict:
        now = self.now_fn()
        return {
            **self.stats,
            'is_running': self._is_running,
            'last_run': self.last_run.isoformat() if self.last_run else None,
            'last_run_summary': self.last_run_summary,
            'uptime_seconds': round((now - self.started_at).total_seconds(), 1),
        }

    get_job_stats = get_stats
