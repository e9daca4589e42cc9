"""Tests for query-shape fan-out, grouping/ordering and the hot-match view."""
from datetime import date, datetime, timedelta, timezone
from unittest.mock import Mock

import pytest

from conftest import NOW, build_fixture, build_odds
from fixturecache.errors import UpstreamRequestError
from fixturecache.models.api_cache import ResultSetCache
from fixturecache.models.fixture_cache import OddsCacheEntry
from fixturecache.services.fixture_aggregator import (
    FINISHED_FILTER,
    NOT_STARTED_FILTER,
    FixtureAggregator,
    current_season,
    dedupe_fixtures,
    query_shapes_for,
)
from fixturecache.services.odds_cache_service import OddsCacheService

TODAY = NOW.date()


@pytest.fixture
def api():
    return Mock()


@pytest.fixture
def aggregator(app, api):
    return FixtureAggregator(api, OddsCacheService(api, default_bookmakers=[8]), now_fn=lambda: NOW)


class TestQueryShapes:
    def test_past_day_is_finished_only(self):
        assert query_shapes_for(TODAY - timedelta(days=1), TODAY) == [
            ('finished', {'date': '2024-04-30', 'status': FINISHED_FILTER}),
        ]

    def test_future_day_is_not_started_only(self):
        assert query_shapes_for('2024-05-03', TODAY) == [
            ('not_started', {'date': '2024-05-03', 'status': NOT_STARTED_FILTER}),
        ]

    def test_today_needs_three_shapes(self):
        names = [name for name, _ in query_shapes_for(TODAY, TODAY)]
        assert names == ['live', 'not_started', 'finished']

    def test_live_keyword(self):
        assert query_shapes_for('LIVE', TODAY) == [('live', {'live': 'all'})]


def test_current_season_rolls_over_in_august():
    assert current_season(date(2024, 7, 31)) == 2023
    assert current_season(date(2024, 8, 1)) == 2024
    assert current_season(date(2025, 1, 15)) == 2024


def test_dedupe_keeps_first_occurrence():
    first = build_fixture(1, short='1H')
    again = build_fixture(1, short='FT')
    assert dedupe_fixtures([first, build_fixture(2), again, {'fixture': {}}]) == [first, build_fixture(2)]


class TestFetchFixturesForDate:
    def _by_shape(self, params):
        if 'live' in params:
            return [
                build_fixture(1, league_id=39, short='1H', kickoff=NOW - timedelta(minutes=30)),
                build_fixture(2, league_id=140, short='2H', kickoff=NOW - timedelta(minutes=60)),
            ]
        if params.get('status') == NOT_STARTED_FILTER:
            return [
                build_fixture(3, league_id=39, kickoff=NOW + timedelta(hours=3)),
                build_fixture(4, league_id=61, kickoff=NOW + timedelta(hours=5)),
            ]
        return [
            build_fixture(5, league_id=61, short='FT', kickoff=NOW - timedelta(hours=3)),
            build_fixture(1, league_id=39, short='FT', kickoff=NOW - timedelta(minutes=30)),
        ]

    def test_today_merges_dedupes_groups_and_orders(self, aggregator, api):
        api.get_fixtures.side_effect = self._by_shape

        groups = aggregator.fetch_fixtures_for_date(TODAY)

        assert api.get_fixtures.call_count == 3
        assert [g['id'] for g in groups] == [140, 39, 61]
        # live play hides the rest of that competition
        assert [m['id'] for m in groups[1]['matches']] == [1]
        assert [m['id'] for m in groups[2]['matches']] == [4, 5]
        assert groups[1]['matches'][0]['status'] == 'live'

    def test_league_filter_and_cap(self, aggregator, api):
        api.get_fixtures.side_effect = self._by_shape
        aggregator.max_fixtures = 1
        groups = aggregator.fetch_fixtures_for_date(TODAY, league_ids=[61])
        assert [m['id'] for g in groups for m in g['matches']] == [4]

    def test_one_failed_shape_is_skipped(self, aggregator, api):
        def shapes(params):
            if 'live' in params:
                raise UpstreamRequestError('fixtures', 'timeout')
            return self._by_shape(params)

        api.get_fixtures.side_effect = shapes
        groups = aggregator.fetch_fixtures_for_date(TODAY)
        assert sorted(m['id'] for g in groups for m in g['matches']) == [1, 3, 4, 5]

    def test_all_shapes_failing_raises(self, aggregator, api):
        api.get_fixtures.side_effect = UpstreamRequestError('fixtures', 'down', 500)
        with pytest.raises(UpstreamRequestError):
            aggregator.fetch_fixtures_for_date(TODAY)

    def test_live_scheduled_skips_results(self, aggregator, api):
        api.get_fixtures.side_effect = self._by_shape
        groups = aggregator.fetch_live_scheduled(TODAY)
        assert api.get_fixtures.call_count == 2
        assert sorted(m['id'] for g in groups for m in g['matches']) == [1, 2, 4]


def test_attach_odds_uses_cache_then_upstream(aggregator, api):
    OddsCacheEntry.upsert(build_fixture(10, kickoff=NOW + timedelta(days=2)), [{'id': 8, 'name': 'Bet365'}])
    api.get_fixtures.return_value = [
        build_fixture(10, kickoff=NOW + timedelta(days=2)),
        build_fixture(11, kickoff=NOW + timedelta(days=2, hours=2)),
        build_fixture(12, kickoff=NOW + timedelta(days=2, hours=4)),
    ]
    api.get_fixture_odds.side_effect = lambda fixture_id: build_odds(fixture_id) if fixture_id == 11 else []

    groups = aggregator.fetch_fixtures_for_date(TODAY + timedelta(days=2), include_odds=True)

    matches = {m['id']: m for g in groups for m in g['matches']}
    assert matches[10]['bookmakers'] == [{'id': 8, 'name': 'Bet365'}]
    assert matches[11]['bookmakers'][0]['id'] == 8
    assert matches[12]['bookmakers'] == []
    assert sorted(c.args[0] for c in api.get_fixture_odds.call_args_list) == [11, 12]
    assert OddsCacheEntry.get(11) is not None


def test_attach_odds_isolates_a_failing_save(aggregator, api, monkeypatch):
    api.get_fixtures.return_value = [
        build_fixture(21, kickoff=NOW + timedelta(days=2)),
        build_fixture(22, kickoff=NOW + timedelta(days=2, hours=2)),
    ]
    api.get_fixture_odds.side_effect = lambda fixture_id: build_odds(fixture_id)
    save = aggregator.cache_service.save_odds

    def flaky_save(fixture_data, odds_data, **kwargs):
        if fixture_data['fixture']['id'] == 21:
            raise KeyError('bookmakers')
        return save(fixture_data, odds_data, **kwargs)

    monkeypatch.setattr(aggregator.cache_service, 'save_odds', flaky_save)
    groups = aggregator.fetch_fixtures_for_date(TODAY + timedelta(days=2), include_odds=True)

    matches = {m['id']: m for g in groups for m in g['matches']}
    assert matches[21]['bookmakers'][0]['id'] == 8
    assert OddsCacheEntry.get(21) is None
    assert OddsCacheEntry.get(22) is not None


def test_fetch_league_window_skips_failing_league(aggregator, api):
    def by_league(params):
        if params['league'] == 140:
            raise UpstreamRequestError('fixtures', 'timeout')
        return [build_fixture(params['league'] * 10, league_id=params['league'])]

    api.get_fixtures.side_effect = by_league
    fixtures = aggregator.fetch_league_window([39, 140, 61], TODAY, 4, status='NS')

    assert [f['fixture']['id'] for f in fixtures] == [390, 610]
    params = api.get_fixtures.call_args_list[0].args[0]
    assert params == {'season': 2023, 'from': '2024-05-01', 'to': '2024-05-05', 'status': 'NS', 'league': 39}


class TestHotMatches:
    def test_from_cache_orders_by_tier_odds_then_kickoff(self, aggregator, api):
        OddsCacheEntry.upsert(build_fixture(1, league_id=39, kickoff=NOW + timedelta(hours=3)), [], now=NOW)
        OddsCacheEntry.upsert(build_fixture(2, league_id=140, kickoff=NOW + timedelta(hours=5)),
                              [{'id': 8}], now=NOW)
        finished = build_fixture(3, league_id=135, short='FT', kickoff=NOW - timedelta(hours=2), goals=(3, 1))
        OddsCacheEntry.upsert(finished, [], now=NOW)
        aggregator.cache_service.cache_finished_match(finished)

        groups = aggregator.get_hot_matches(min_leagues=3, max_days=4)

        assert [g['id'] for g in groups] == [140, 135, 39]
        assert groups[1]['matches'][0]['score'] == '3-1'
        api.get_fixtures.assert_not_called()

    def test_widens_until_enough_leagues(self, aggregator):
        OddsCacheEntry.upsert(build_fixture(1, league_id=39, kickoff=NOW + timedelta(hours=3)), [], now=NOW)
        OddsCacheEntry.upsert(build_fixture(2, league_id=140, kickoff=NOW + timedelta(days=1)), [], now=NOW)
        OddsCacheEntry.upsert(build_fixture(3, league_id=61, kickoff=NOW + timedelta(days=2)), [], now=NOW)

        groups = aggregator.get_hot_matches(min_leagues=2, max_days=4)

        assert sorted(g['id'] for g in groups) == [39, 140]

    def test_falls_back_to_upstream_when_nothing_cached(self, aggregator, api):
        api.get_fixtures.side_effect = lambda params: (
            [build_fixture(7, league_id=39, kickoff=NOW + timedelta(days=1))] if params['league'] == 39 else []
        )
        groups = aggregator.get_hot_matches(min_leagues=3, max_days=2)
        assert [g['id'] for g in groups] == [39]
        assert all(c.args[0]['status'] == NOT_STARTED_FILTER for c in api.get_fixtures.call_args_list)


class TestResultSets:
    def test_miss_fetches_then_serves_from_cache(self, aggregator):
        fetch = Mock(return_value={'items': [1]})
        assert aggregator.get_or_fetch_result_set('live', 'live_all', fetch) == {
            'data': {'items': [1]}, 'from_cache': False, 'stale': False,
        }
        again = aggregator.get_or_fetch_result_set('live', 'live_all', fetch)
        assert again['from_cache'] is True
        fetch.assert_called_once()

    def test_stale_copy_served_when_refresh_fails(self, aggregator):
        ResultSetCache.set_cached('live', 'live_all', {'items': ['old']},
                                  now=datetime.now(timezone.utc) - timedelta(minutes=5))
        fetch = Mock(side_effect=UpstreamRequestError('fixtures', 'down'))
        result = aggregator.get_or_fetch_result_set('live', 'live_all', fetch)
        assert result == {'data': {'items': ['old']}, 'from_cache': True, 'stale': True}

    def test_failure_with_nothing_cached_raises(self, aggregator):
        with pytest.raises(UpstreamRequestError):
            aggregator.get_or_fetch_result_set(
                'hot', 'hot_all', Mock(side_effect=UpstreamRequestError('fixtures', 'down')),
            )

    def test_result_payload_envelope(self, aggregator):
        assert aggregator.result_payload([{'id': 1}]) == {
            'items': [{'id': 1}], 'count': 1, 'has_more': False, 'fetched_at': NOW.isoformat(),
        }
