"""Tests for the API-Football client transport: errors, rate-limit headers, counters."""
from unittest.mock import Mock

import pytest
import requests

from fixturecache.api_football_client import APIFootballClient
from fixturecache.errors import QuotaExceededError, UpstreamRequestError
from fixturecache.utils.rate_limiter import TokenBucket


def _response(status_code=200, payload=None, headers=None, text=''):
    response = Mock()
    response.status_code = status_code
    response.headers = headers or {}
    response.text = text
    if isinstance(payload, Exception):
        response.json.side_effect = payload
    else:
        response.json.return_value = payload
    return response


@pytest.fixture
def bucket():
    return Mock(spec=TokenBucket)


@pytest.fixture
def session():
    return Mock()


@pytest.fixture
def api(bucket, session):
    return APIFootballClient(api_key='test-key', mode='direct', use_stub=False,
                             rate_limiter=bucket, timeout=3, session=session)


def test_requires_key_unless_stubbed(monkeypatch):
    monkeypatch.setattr('fixturecache.config.sync_config.API_FOOTBALL_KEY', None)
    with pytest.raises(RuntimeError):
        APIFootballClient(use_stub=False)
    assert APIFootballClient(use_stub=True).mode == 'stub'


def test_unknown_mode_rejected():
    with pytest.raises(ValueError):
        APIFootballClient(api_key='k', mode='carrier-pigeon', use_stub=False)


def test_rapidapi_headers():
    api = APIFootballClient(api_key='k', mode='rapidapi', use_stub=False)
    assert api.headers['X-RapidAPI-Key'] == 'k'
    assert api.base_url.endswith('/v3')


def test_get_fixtures_acquires_token_and_adds_timezone(api, bucket, session):
    session.get.return_value = _response(payload={'response': [{'fixture': {'id': 1}}], 'errors': [], 'results': 1})

    rows = api.get_fixtures({'date': '2024-05-01', 'status': 'NS'})

    assert rows == [{'fixture': {'id': 1}}]
    bucket.acquire.assert_called_once()
    url = session.get.call_args.args[0]
    kwargs = session.get.call_args.kwargs
    assert url == 'https://v3.football.api-sports.io/fixtures'
    assert kwargs['params']['timezone']
    assert kwargs['headers'] == {'x-apisports-key': 'test-key'}
    assert kwargs['timeout'] == 3


def test_live_query_has_no_timezone(api, session):
    session.get.return_value = _response(payload={'response': [], 'errors': []})
    api.get_fixtures({'live': 'all'})
    assert 'timezone' not in session.get.call_args.kwargs['params']


def test_get_fixture_returns_first_or_none(api, session):
    session.get.return_value = _response(payload={'response': [], 'errors': []})
    assert api.get_fixture(1) is None
    session.get.return_value = _response(payload={'response': [{'fixture': {'id': 1}}], 'errors': []})
    assert api.get_fixture(1) == {'fixture': {'id': 1}}


def test_fixture_odds_params(api, session):
    session.get.return_value = _response(payload={'response': [], 'errors': []})
    api.get_fixture_odds(10, bookmaker=8)
    assert session.get.call_args.kwargs['params'] == {'fixture': 10, 'bookmaker': 8}


@pytest.mark.parametrize('status', [403, 429])
def test_quota_status_codes_raise_quota_error(api, session, status):
    session.get.return_value = _response(status_code=status, text='Too many requests')
    with pytest.raises(QuotaExceededError) as exc:
        api.get_fixtures({'live': 'all'})
    assert exc.value.status_code == status
    assert api.get_request_stats()['quota_errors'] == 1


def test_server_error_raises_upstream_error(api, session):
    session.get.return_value = _response(status_code=500, text='boom')
    with pytest.raises(UpstreamRequestError) as exc:
        api.get_fixtures({'live': 'all'})
    assert not isinstance(exc.value, QuotaExceededError)
    assert 'fixtures' in str(exc.value)


def test_transport_error_wrapped(api, session):
    session.get.side_effect = requests.exceptions.ConnectionError('down')
    with pytest.raises(UpstreamRequestError):
        api.get_fixture_events(1)
    assert api.get_request_stats()['errors_by_endpoint'] == {'fixtures/events': 1}


def test_invalid_json_raises(api, session):
    session.get.return_value = _response(payload=ValueError('not json'))
    with pytest.raises(UpstreamRequestError):
        api.get_odds({'fixture': 1})


def test_error_payload_classified(api, session):
    session.get.return_value = _response(payload={'errors': {'requests': 'You have reached the request limit'}})
    with pytest.raises(QuotaExceededError):
        api.get_fixtures({'live': 'all'})

    session.get.return_value = _response(payload={'errors': {'date': 'Invalid date format'}})
    with pytest.raises(UpstreamRequestError) as exc:
        api.get_fixtures({'date': 'nope'})
    assert not isinstance(exc.value, QuotaExceededError)


@pytest.mark.parametrize('remaining, pause', [('1', 10), ('3', 5), ('7', 2)])
def test_low_remaining_quota_pauses_bucket(api, bucket, session, remaining, pause):
    session.get.return_value = _response(payload={'response': [], 'errors': []},
                                         headers={'X-RateLimit-Remaining': remaining})
    api.get_fixtures({'live': 'all'})
    bucket.pause.assert_called_once_with(pause)


def test_healthy_remaining_quota_does_not_pause(api, bucket, session):
    session.get.return_value = _response(payload={'response': [], 'errors': []},
                                         headers={'X-RateLimit-Remaining': '250'})
    api.get_fixtures({'live': 'all'})
    bucket.pause.assert_not_called()
    assert api.get_request_stats()['last_rate_limit_remaining'] == 250


def test_request_stats_count_by_endpoint(bucket, session):
    bucket.stats.return_value = {}
    api = APIFootballClient(api_key='k', mode='direct', use_stub=False, rate_limiter=bucket, session=session)
    session.get.return_value = _response(payload={'response': [], 'errors': []})
    api.get_fixtures({'live': 'all'})
    api.get_fixture_statistics(1)
    api.get_fixture_statistics(2)

    stats = api.get_request_stats()
    assert stats['total_requests'] == 3
    assert stats['by_endpoint'] == {'fixtures': 1, 'fixtures/statistics': 2}


class TestStubMode:
    def test_stub_never_touches_network(self, stub_api):
        assert stub_api.handshake() is True
        fixtures = stub_api.get_fixtures({'live': 'all'})
        assert [f['fixture']['id'] for f in fixtures] == [900001]

    def test_stub_filters(self, stub_api):
        assert [f['fixture']['id'] for f in stub_api.get_fixtures({'league': 140})] == [900003]
        assert [f['fixture']['id'] for f in stub_api.get_fixtures({'status': 'NS'})] == [900002]
        assert stub_api.get_fixture(900002)['fixture']['status']['short'] == 'NS'
        assert stub_api.get_fixture_odds(900002)[0]['bookmakers'][0]['id'] == 8
