"""Background worker that keeps result sets and hot odds warm.

Four routines run once at startup and then as APScheduler interval jobs:

- live matches (30 s)
- hot matches (60 s)
- hot scheduled odds (10 min), which also sweeps expired rows
- live + scheduled matches (5 min)

When a sync job is supplied it gets a fifth job. Each routine runs inside
an app context and logs its own failures, so one broken routine never stops
the others.
"""

import logging
import threading
import time
from datetime import datetime, timezone
from typing import Callable, Dict, Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

from fixturecache.config import sync_config
from fixturecache.data.leagues import ALLOWED_LEAGUE_IDS, HOT_LEAGUE_IDS, TOP_5_LEAGUE_IDS, get_allowed_live_param
from fixturecache.models.api_cache import ResultSetCache
from fixturecache.services.fixture_aggregator import (
    NOT_STARTED_FILTER,
    group_fixtures_by_league,
    order_hot_competitions,
)

logger = logging.getLogger(__name__)

DEFAULT_INTERVALS = {
    'live': sync_config.WORKER_LIVE_INTERVAL,
    'hot': sync_config.WORKER_HOT_INTERVAL,
    'hot_scheduled_odds': sync_config.WORKER_HOT_ODDS_INTERVAL,
    'live_scheduled': sync_config.WORKER_LIVE_SCHEDULED_INTERVAL,
    'sync': sync_config.WORKER_SYNC_INTERVAL,
}


class MatchCacheWorker:
    def __init__(self, app, client, cache_service, aggregator, sync_job=None,
                 intervals: Optional[Dict[str, float]] = None,
                 hot_window_days: int = sync_config.HOT_WINDOW_DAYS):
        self.app = app
        self.client = client
        self.cache_service = cache_service
        self.aggregator = aggregator
        self.sync_job = sync_job
        self.intervals = {**DEFAULT_INTERVALS, **(intervals or {})}
        self.hot_window_days = hot_window_days

        self._lock = threading.Lock()
        self._scheduler: Optional[BackgroundScheduler] = None
        self.is_running = False
        self.started_at: Optional[datetime] = None
        self.routine_stats: Dict[str, dict] = {}

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def _routines(self) -> Dict[str, Callable[[], None]]:
        routines = {
            'live': self.refresh_live_matches,
            'hot': self.refresh_hot_matches,
            'hot_scheduled_odds': self.refresh_hot_scheduled_odds,
            'live_scheduled': self.refresh_live_scheduled_matches,
        }
        if self.sync_job is not None:
            routines['sync'] = self.sync_job.run
        return routines

    def start(self) -> bool:
        """Run every routine once, then schedule them. Returns False if already running."""
        with self._lock:
            if self.is_running:
                logger.info("[MatchCacheWorker] Already running")
                return False
            self.is_running = True
            self.started_at = datetime.now(timezone.utc)

        logger.info("🚀 [MatchCacheWorker] Starting, initial refresh of all caches")
        routines = self._routines()
        for name, routine in routines.items():
            if name == 'sync':
                continue
            self._run_routine(name, routine)

        with self._lock:
            # stop() may have been called while the initial refresh ran
            if not self.is_running:
                return False
            scheduler = BackgroundScheduler(timezone=timezone.utc, daemon=True)
            for name, routine in routines.items():
                scheduler.add_job(
                    self._run_routine,
                    trigger=IntervalTrigger(seconds=self.intervals[name], timezone=timezone.utc),
                    args=[name, routine],
                    id=f"match_cache_{name}",
                    name=f"Match cache: {name}",
                    max_instances=1,
                    coalesce=True,
                    replace_existing=True,
                )
            scheduler.start()
            self._scheduler = scheduler
        logger.info(
            "✅ [MatchCacheWorker] Jobs scheduled: "
            + ", ".join(f"{name}={self.intervals[name]:g}s" for name in routines)
        )
        return True

    def stop(self, wait: bool = True) -> None:
        """Shut the scheduler down; with ``wait`` the call blocks until running jobs finish."""
        with self._lock:
            if not self.is_running:
                return
            self.is_running = False
            scheduler, self._scheduler = self._scheduler, None

        if scheduler is not None and scheduler.running:
            scheduler.shutdown(wait=wait)
        logger.info("🛑 [MatchCacheWorker] Stopped")

    def _run_routine(self, name: str, routine: Callable[[], None]) -> None:
        stats = self.routine_stats.setdefault(name, {'runs': 0, 'errors': 0, 'last_run': None,
                                                     'last_duration_seconds': None, 'last_error': None})
        started = time.monotonic()
        try:
            with self.app.app_context():
                routine()
        except Exception as e:
            stats['errors'] += 1
            stats['last_error'] = str(e)
            logger.error(f"❌ [MatchCacheWorker] Routine {name} failed: {e}")
        finally:
            stats['runs'] += 1
            stats['last_run'] = datetime.now(timezone.utc).isoformat()
            stats['last_duration_seconds'] = round(time.monotonic() - started, 3)

    # ------------------------------------------------------------------
    # Routines (caller holds an app context)
    # ------------------------------------------------------------------

    def refresh_live_matches(self) -> int:
        """Live fixtures in allowed leagues -> ``live/live_all``. Nothing is written when idle."""
        competitions = self.aggregator.fetch_live(get_allowed_live_param())
        if not competitions:
            logger.debug("[MatchCacheWorker] No live matches")
            return 0
        ResultSetCache.set_cached('live', 'live_all', self.aggregator.result_payload(competitions))
        logger.info(f"⚡ [MatchCacheWorker] Cached {len(competitions)} live competitions")
        return len(competitions)

    def refresh_hot_matches(self) -> int:
        """Hot-league fixtures over the window -> ``hot/hot_all``."""
        today = self.aggregator.now_fn().date()
        fixtures = self.aggregator.fetch_league_window(HOT_LEAGUE_IDS, today, self.hot_window_days)
        if not fixtures:
            logger.debug("[MatchCacheWorker] No hot fixtures in window")
            return 0
        competitions = order_hot_competitions(group_fixtures_by_league(fixtures))
        ResultSetCache.set_cached('hot', 'hot_all', self.aggregator.result_payload(competitions))
        logger.info(f"🔥 [MatchCacheWorker] Cached {len(fixtures)} hot fixtures in {len(competitions)} competitions")
        return len(competitions)

    def refresh_hot_scheduled_odds(self) -> dict:
        """Warm odds for top-5 league fixtures not yet started, then sweep expired rows."""
        today = self.aggregator.now_fn().date()
        fixtures = self.aggregator.fetch_league_window(
            TOP_5_LEAGUE_IDS, today, self.hot_window_days, status=NOT_STARTED_FILTER
        )
        summary = {'fixtures': len(fixtures), 'with_odds': 0, 'without_odds': 0, 'errors': 0}
        for fixture in fixtures:
            fixture_id = (fixture.get('fixture') or {}).get('id')
            if fixture_id is None:
                continue
            try:
                bookmakers = self.cache_service.get_or_fetch_odds(fixture_id, fixture_data=fixture)
            except Exception:
                summary['errors'] += 1
                logger.exception(f"[MatchCacheWorker] Hot odds failed for fixture {fixture_id}")
                continue
            if bookmakers:
                summary['with_odds'] += 1
            else:
                summary['without_odds'] += 1

        summary['expired_odds'] = self.cache_service.clear_expired()
        summary['expired_matches'] = self.cache_service.clear_expired_matches()
        summary['expired_result_sets'] = ResultSetCache.cleanup_expired()
        logger.info(
            f"🎲 [MatchCacheWorker] Hot odds: {summary['with_odds']}/{summary['fixtures']} fixtures with odds; "
            f"swept {summary['expired_odds']} odds, {summary['expired_matches']} matches, "
            f"{summary['expired_result_sets']} result sets"
        )
        return summary

    def refresh_live_scheduled_matches(self) -> int:
        """Live + today's not-started fixtures -> ``live-scheduled/live-scheduled_<date>``.

        Written even when empty so readers see an up-to-date "nothing on".
        """
        today = self.aggregator.now_fn().date()
        competitions = self.aggregator.fetch_live_scheduled(today, league_ids=ALLOWED_LEAGUE_IDS)
        ResultSetCache.set_cached(
            'live-scheduled', f"live-scheduled_{today.isoformat()}", self.aggregator.result_payload(competitions)
        )
        logger.info(f"📅 [MatchCacheWorker] Cached {len(competitions)} live/scheduled competitions")
        return len(competitions)

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def status(self) -> dict:
        return {
            'is_running': self.is_running,
            'started_at': self.started_at.isoformat() if self.started_at else None,
            'intervals': {name: self.intervals[name] for name in self._routines()},
            'jobs': self._job_status(),
        }

    def _job_status(self) -> Dict[str, dict]:
        scheduler = self._scheduler
        if scheduler is None:
            return {}
        jobs = {}
        for job in scheduler.get_jobs():
            name = job.id[len('match_cache_'):]
            jobs[name] = {
                'next_run': job.next_run_time.isoformat() if job.next_run_time else None,
                'runs': self.routine_stats.get(name, {}).get('runs', 0),
            }
        return jobs

    def get_stats(self) -> dict:
        """Worker status plus per-routine counters and result-set cache stats (needs app context)."""
        return {
            **self.status(),
            'routines': {name: dict(stats) for name, stats in self.routine_stats.items()},
            'result_sets': ResultSetCache.stats(),
            'upstream': self.client.get_request_stats() if self.client is not None else None,
        }

    def clear_cache(self, cache_type: Optional[str] = None) -> int:
        count = ResultSetCache.invalidate(cache_type)
        logger.info(f"🧹 [MatchCacheWorker] Cleared {count} result sets ({cache_type or 'all'})")
        return count
