"""Cache and sync operations API.

Read endpoints expose cache state; the POST endpoints trigger upstream traffic
and are rate limited and guarded by the admin API key.
"""
from flask import Blueprint, current_app, request, jsonify, make_response
from functools import wraps
from datetime import date
import logging
import os

from fixturecache.config.sync_config import get_sync_settings
from fixturecache.errors import UpstreamRequestError
from fixturecache.extensions import limiter
from fixturecache.models.api_cache import ResultSetCache

cache_bp = Blueprint('cache', __name__)
logger = logging.getLogger(__name__)


def _services() -> dict:
    return current_app.extensions['fixturecache']


def require_api_key(f):
    """Decorator to require the admin API key (``X-API-Key`` or Bearer token)."""
    @wraps(f)
    def decorated_function(*args, **kwargs):
        if request.method == 'OPTIONS':
            return make_response('', 204)

        required_api_key = (os.getenv('ADMIN_API_KEY') or '').strip()
        if not required_api_key:
            logger.warning("ADMIN_API_KEY not configured in environment")
            return jsonify({
                'error': 'API authentication not configured',
                'message': 'Contact administrator'
            }), 500

        provided = request.headers.get('X-API-Key') or ''
        auth_header = request.headers.get('Authorization') or ''
        if not provided and auth_header.startswith('Bearer '):
            provided = auth_header[len('Bearer '):]
        if provided.strip() != required_api_key:
            return jsonify({'error': 'Invalid or missing API key'}), 401
        return f(*args, **kwargs)
    return decorated_function


def _int_arg(name: str, default: int, minimum: int = 0, maximum: int | None = None) -> int:
    try:
        value = int(request.args.get(name, default))
    except (TypeError, ValueError):
        value = default
    value = max(minimum, value)
    if maximum is not None:
        value = min(maximum, value)
    return value


def _date_arg(value: str) -> date | None:
    try:
        return date.fromisoformat(value)
    except ValueError:
        return None


# =============================================================================
# Cache
# =============================================================================

@cache_bp.route('/cache/stats', methods=['GET'])
def cache_stats():
    """Odds/match-detail/result-set stats plus the effective sync settings."""
    services = _services()
    return jsonify({
        **services['cache_service'].get_cache_stats(),
        'result_sets': ResultSetCache.stats(),
        'settings': get_sync_settings(),
    })


@cache_bp.route('/cache/fixtures/<int:fixture_id>/odds', methods=['GET'])
def fixture_odds(fixture_id):
    """Cached odds for a fixture. ``?fetch=true`` falls back to API-Football on a miss."""
    cache_service = _services()['cache_service']
    fetch = request.args.get('fetch', 'false').lower() in ('true', '1', 'yes')
    bookmaker_ids = [int(b) for b in request.args.get('bookmakers', '').split(',') if b.strip().isdigit()]

    if fetch:
        bookmakers = cache_service.get_or_fetch_odds(fixture_id, bookmaker_ids=bookmaker_ids or None)
    else:
        bookmakers = cache_service.get_odds(fixture_id)

    if bookmakers is None:
        return jsonify({'fixture_id': fixture_id, 'error': 'No odds cached for fixture'}), 404
    return jsonify({'fixture_id': fixture_id, 'bookmakers': bookmakers})


@cache_bp.route('/cache/fixtures/<int:fixture_id>/odds', methods=['DELETE'])
@require_api_key
def delete_fixture_odds(fixture_id):
    deleted = _services()['cache_service'].delete_odds(fixture_id)
    if not deleted:
        return jsonify({'fixture_id': fixture_id, 'error': 'No odds cached for fixture'}), 404
    return jsonify({'fixture_id': fixture_id, 'deleted': True})


@cache_bp.route('/cache/needing-update', methods=['GET'])
def needing_update():
    minutes = _int_arg('minutes', 10, minimum=0, maximum=24 * 60)
    rows = _services()['cache_service'].find_fixtures_needing_update(minutes)
    return jsonify({'minutes': minutes, 'count': len(rows), 'fixtures': [r.to_dict() for r in rows]})


@cache_bp.route('/cache/live', methods=['GET'])
def live_fixtures():
    rows = _services()['cache_service'].find_live_fixtures()
    return jsonify({'count': len(rows), 'fixtures': [r.to_dict() for r in rows]})


@cache_bp.route('/cache/upcoming', methods=['GET'])
def upcoming_fixtures():
    hours = _int_arg('hours', 24, minimum=1, maximum=24 * 14)
    rows = _services()['cache_service'].find_upcoming_fixtures(hours)
    return jsonify({'hours': hours, 'count': len(rows), 'fixtures': [r.to_dict() for r in rows]})


@cache_bp.route('/cache/matches/<int:fixture_id>', methods=['GET'])
def finished_match(fixture_id):
    """Finished-match detail (events, statistics), fetched and cached on first request."""
    match = _services()['cache_service'].get_or_fetch_finished_match(fixture_id)
    if match is None:
        return jsonify({'fixture_id': fixture_id, 'error': 'Match not found or not finished'}), 404
    return jsonify(match)


@cache_bp.route('/cache/result-sets/<cache_type>', methods=['GET'])
def result_set(cache_type):
    """Serve the live / hot / live-scheduled board, cache first."""
    aggregator = _services()['aggregator']
    day = None
    if cache_type == 'live-scheduled' and request.args.get('date'):
        day = _date_arg(request.args['date'])
        if day is None:
            return jsonify({'error': 'date must be YYYY-MM-DD'}), 400
    try:
        if cache_type == 'live':
            result = aggregator.get_live()
        elif cache_type == 'hot':
            result = aggregator.get_hot()
        elif cache_type == 'live-scheduled':
            result = aggregator.get_live_scheduled(day)
        else:
            return jsonify({'error': f'Unknown cache type: {cache_type}'}), 404
    except UpstreamRequestError as e:
        logger.error(f"Result set {cache_type} unavailable: {e}")
        return jsonify({'error': 'Upstream unavailable and nothing cached'}), 503
    return jsonify(result)


@cache_bp.route('/cache/result-sets', methods=['DELETE'])
@require_api_key
def clear_result_sets():
    cache_type = request.args.get('type')
    count = _services()['worker'].clear_cache(cache_type) if _services().get('worker') \
        else ResultSetCache.invalidate(cache_type)
    return jsonify({'cleared': count, 'cache_type': cache_type})


# =============================================================================
# Sync job
# =============================================================================

@cache_bp.route('/sync/stats', methods=['GET'])
def sync_stats():
    services = _services()
    return jsonify({
        **services['sync_job'].get_job_stats(),
        'upstream': services['client'].get_request_stats(),
    })


@cache_bp.route('/sync/run', methods=['POST'])
@require_api_key
@limiter.limit("6 per minute")
def sync_run():
    summary = _services()['sync_job'].run()
    if summary.get('skipped'):
        return jsonify({'message': 'Sync already running', **summary}), 409
    return jsonify(summary)


@cache_bp.route('/sync/precache', methods=['POST'])
@require_api_key
@limiter.limit("10 per hour")
def sync_precache():
    payload = request.get_json(silent=True) or {}
    try:
        league_id = int(payload['league_id'])
        season = int(payload['season'])
        days_ahead = int(payload.get('days_ahead', 7))
    except (KeyError, TypeError, ValueError):
        return jsonify({'error': 'league_id and season are required integers'}), 400
    if not 1 <= days_ahead <= 30:
        return jsonify({'error': 'days_ahead must be between 1 and 30'}), 400

    result = _services()['sync_job'].pre_cache_league(league_id, season, days_ahead=days_ahead)
    status = 502 if 'error' in result else 200
    return jsonify(result), status


# =============================================================================
# Worker
# =============================================================================

@cache_bp.route('/worker/status', methods=['GET'])
def worker_status():
    worker = _services().get('worker')
    if worker is None:
        return jsonify({'is_running': False, 'enabled': False})
    return jsonify({'enabled': True, **worker.get_stats()})
