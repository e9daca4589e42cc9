import os
from datetime import datetime, timezone

import pytest

# Offline client for anything that builds one from the environment
os.environ.setdefault('API_USE_STUB_DATA', 'true')

from fixturecache.api_football_client import APIFootballClient
from fixturecache.main import create_app
from fixturecache.models.fixture_cache import db
from fixturecache.utils.rate_limiter import TokenBucket

NOW = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


def build_fixture(fixture_id, league_id=39, short='NS', kickoff=NOW, home=(33, 'Manchester United'),
                  away=(40, 'Liverpool'), league_name='Premier League', goals=(None, None)):
    """Provider-shaped fixture document."""
    return {
        'fixture': {
            'id': fixture_id,
            'date': kickoff.isoformat() if kickoff else None,
            'referee': 'M. Oliver',
            'venue': {'name': 'Old Trafford'},
            'status': {'short': short, 'elapsed': 30 if short == '1H' else None},
        },
        'league': {'id': league_id, 'name': league_name, 'country': 'England', 'season': 2023,
                   'round': 'Regular Season - 35'},
        'teams': {
            'home': {'id': home[0], 'name': home[1], 'logo': f'https://logos.example/{home[0]}.png'},
            'away': {'id': away[0], 'name': away[1], 'logo': f'https://logos.example/{away[0]}.png'},
        },
        'goals': {'home': goals[0], 'away': goals[1]},
        'score': {'halftime': {'home': goals[0], 'away': goals[1]}},
    }


def build_odds(fixture_id, bookmakers=((8, 'Bet365'),)):
    """Provider-shaped odds response (one block) with a Match Winner market per bookmaker."""
    return [{
        'fixture': {'id': fixture_id},
        'bookmakers': [
            {
                'id': bookmaker_id,
                'name': name,
                'bets': [
                    {'id': 1, 'name': 'Match Winner', 'values': [
                        {'value': 'Home', 'odd': '2.10'},
                        {'value': 'Draw', 'odd': '3.30'},
                        {'value': 'Away', 'odd': '3.60'},
                    ]},
                    {'id': 99, 'name': 'Corners 1x2', 'values': [{'value': 'Home', 'odd': '1.80'}]},
                ],
            }
            for bookmaker_id, name in bookmakers
        ],
    }]


@pytest.fixture
def make_fixture():
    return build_fixture


@pytest.fixture
def make_odds():
    return build_odds


@pytest.fixture
def stub_api():
    """Stub-mode client with a bucket generous enough never to block."""
    return APIFootballClient(use_stub=True, rate_limiter=TokenBucket(1000, 1000))


@pytest.fixture
def app(stub_api):
    app = create_app(
        config={
            'TESTING': True,
            'SECRET_KEY': 'test-secret',
            'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
            'SQLALCHEMY_TRACK_MODIFICATIONS': False,
            'RATELIMIT_ENABLED': False,
        },
        client=stub_api,
        start_worker=False,
    )

    ctx = app.app_context()
    ctx.push()

    yield app

    worker = app.extensions['fixturecache']['worker']
    worker.stop()
    db.session.remove()
    db.drop_all()
    ctx.pop()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def services(app):
    return app.extensions['fixturecache']
