import time
from datetime import datetime, timedelta, timezone
from unittest.mock import Mock

import pytest

from conftest import NOW, build_fixture, build_odds
from fixturecache.data.leagues import get_allowed_live_param
from fixturecache.models.api_cache import ResultSetCache
from fixturecache.models.fixture_cache import OddsCacheEntry
from fixturecache.services.fixture_aggregator import FixtureAggregator
from fixturecache.services.match_cache_worker import MatchCacheWorker
from fixturecache.services.odds_cache_service import OddsCacheService

FAST = {'live': 0.05, 'hot': 0.05, 'hot_scheduled_odds': 0.05, 'live_scheduled': 0.05, 'sync': 0.05}


@pytest.fixture
def api():
    api = Mock()
    api.get_fixtures.return_value = []
    api.get_request_stats.return_value = {'total_requests': 0}
    return api


@pytest.fixture
def worker(app, api):
    cache_service = OddsCacheService(api, default_bookmakers=[8])
    aggregator = FixtureAggregator(api, cache_service, now_fn=lambda: NOW)
    worker = MatchCacheWorker(app, api, cache_service, aggregator, intervals=FAST, hot_window_days=2)
    yield worker
    worker.stop()


class TestRoutines:
    def test_live_matches_cached_when_present(self, worker, api):
        api.get_fixtures.return_value = [build_fixture(1, short='1H')]

        assert worker.refresh_live_matches() == 1

        api.get_fixtures.assert_called_once_with({'live': get_allowed_live_param()})
        data = ResultSetCache.get_cached('live', 'live_all')
        assert data['count'] == 1
        assert data['items'][0]['matches'][0]['id'] == 1

    def test_no_live_matches_writes_nothing(self, worker):
        assert worker.refresh_live_matches() == 0
        assert ResultSetCache.query.count() == 0

    def test_live_scheduled_written_even_when_empty(self, worker):
        assert worker.refresh_live_scheduled_matches() == 0
        data = ResultSetCache.get_cached('live-scheduled', 'live-scheduled_2024-05-01')
        assert data['items'] == []

    def test_hot_matches_cover_hot_leagues(self, worker, api):
        def by_league(params):
            if params['league'] in (39, 2):
                return [build_fixture(params['league'] * 100, league_id=params['league'],
                                      kickoff=NOW + timedelta(days=1))]
            return []

        api.get_fixtures.side_effect = by_league

        assert worker.refresh_hot_matches() == 2
        data = ResultSetCache.get_cached('hot', 'hot_all')
        assert {g['id'] for g in data['items']} == {39, 2}

    def test_hot_scheduled_odds_warms_top_leagues_and_sweeps(self, worker, api):
        OddsCacheEntry.upsert(build_fixture(99, short='1H'), [], now=datetime.now(timezone.utc) - timedelta(hours=1))
        api.get_fixtures.side_effect = lambda params: (
            [build_fixture(5, league_id=39, kickoff=NOW + timedelta(days=1))] if params['league'] == 39 else []
        )
        api.get_fixture_odds.side_effect = lambda fixture_id: build_odds(fixture_id)

        summary = worker.refresh_hot_scheduled_odds()

        assert summary['fixtures'] == 1
        assert summary['with_odds'] == 1
        assert summary['expired_odds'] == 1
        assert all(c.args[0]['status'] == 'NS' for c in api.get_fixtures.call_args_list)
        assert OddsCacheEntry.get(5) is not None
        api.get_fixture.assert_not_called()

    def test_hot_scheduled_odds_isolates_a_failing_fixture(self, worker, api, monkeypatch):
        api.get_fixtures.side_effect = lambda params: (
            [build_fixture(5, league_id=39, kickoff=NOW + timedelta(days=1)),
             build_fixture(6, league_id=39, kickoff=NOW + timedelta(days=1))] if params['league'] == 39 else []
        )

        def odds(fixture_id, fixture_data=None):
            if fixture_id == 5:
                raise TypeError("unhashable type: 'list'")
            return [{'id': 8}]

        monkeypatch.setattr(worker.cache_service, 'get_or_fetch_odds', odds)
        summary = worker.refresh_hot_scheduled_odds()

        assert summary['errors'] == 1
        assert summary['with_odds'] == 1
        assert 'expired_result_sets' in summary

    def test_failing_routine_is_recorded(self, worker):
        def broken():
            raise RuntimeError('boom')

        worker._run_routine('live', broken)

        stats = worker.routine_stats['live']
        assert stats['runs'] == 1
        assert stats['errors'] == 1
        assert stats['last_error'] == 'boom'


class TestLifecycle:
    def _mock_routines(self, worker):
        for name in ('refresh_live_matches', 'refresh_hot_matches', 'refresh_hot_scheduled_odds',
                     'refresh_live_scheduled_matches'):
            setattr(worker, name, Mock(return_value=0))
        worker.sync_job = Mock()

    def test_start_runs_each_routine_once_except_sync(self, worker):
        self._mock_routines(worker)
        worker.intervals = {name: 60 for name in FAST}

        assert worker.start() is True

        worker.refresh_live_matches.assert_called_once()
        worker.refresh_hot_matches.assert_called_once()
        worker.refresh_hot_scheduled_odds.assert_called_once()
        worker.refresh_live_scheduled_matches.assert_called_once()
        worker.sync_job.run.assert_not_called()
        assert worker.routine_stats['live']['runs'] == 1

    def test_jobs_keep_routines_running(self, worker):
        self._mock_routines(worker)

        assert worker.start() is True
        time.sleep(0.3)

        assert worker.refresh_live_matches.call_count > 1
        assert worker.sync_job.run.call_count >= 1
        assert set(worker.status()['jobs']) == set(FAST)

    def test_jobs_never_overlap(self, worker):
        self._mock_routines(worker)
        worker.intervals = {name: 60 for name in FAST}
        worker.start()

        jobs = worker._scheduler.get_jobs()

        assert len(jobs) == len(FAST)
        assert all(job.max_instances == 1 and job.coalesce for job in jobs)

    def test_start_twice_is_refused(self, worker):
        self._mock_routines(worker)
        assert worker.start() is True
        assert worker.start() is False

    def test_no_ticks_after_stop(self, worker):
        self._mock_routines(worker)
        worker.start()
        time.sleep(0.15)

        worker.stop()
        calls = worker.refresh_hot_matches.call_count
        syncs = worker.sync_job.run.call_count
        time.sleep(0.2)

        assert worker.is_running is False
        assert worker.refresh_hot_matches.call_count == calls
        assert worker.sync_job.run.call_count == syncs
        assert worker.status()['jobs'] == {}

    def test_stop_before_start_is_a_no_op(self, worker):
        worker.stop()
        assert worker.is_running is False

    def test_stats_and_clear_cache(self, worker):
        ResultSetCache.set_cached('live', 'live_all', {'items': []})
        ResultSetCache.set_cached('hot', 'hot_all', {'items': []})
        worker._run_routine('live', lambda: None)

        stats = worker.get_stats()
        assert stats['routines']['live']['errors'] == 0
        assert stats['result_sets']['total_entries'] == 2
        assert stats['upstream'] == {'total_requests': 0}

        assert worker.clear_cache('live') == 1
        assert worker.clear_cache() == 1
