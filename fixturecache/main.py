import os
import atexit
from urllib.parse import quote_plus
import dotenv
from flask import Flask, jsonify
import logging

from fixturecache.api_football_client import APIFootballClient
from fixturecache.config import sync_config
from fixturecache.extensions import limiter
from fixturecache.models.fixture_cache import db
from fixturecache.models import api_cache  # noqa: F401  registers ResultSetCache for create_all()
from fixturecache.routes.cache import cache_bp
from fixturecache.services.fixture_aggregator import FixtureAggregator
from fixturecache.services.match_cache_worker import MatchCacheWorker
from fixturecache.services.odds_cache_service import OddsCacheService
from fixturecache.services.odds_sync_job import OddsSyncJob
from fixturecache.utils.rate_limiter import TokenBucket

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

dotenv.load_dotenv()


def _database_uri() -> str:
    # Check for DATABASE_URL first (e.g. SQLite for local runs), then fall back to PostgreSQL components
    database_url = os.getenv("DATABASE_URL")
    if database_url:
        logger.info("🗄️ Using DATABASE_URL")
        return database_url

    pwd = quote_plus(os.getenv("DB_PASSWORD") or "")   # encodes @, !, :, / …
    user = os.getenv("DB_USER")
    host = os.getenv("DB_HOST")
    port = os.getenv("DB_PORT")
    db_name = os.getenv("DB_NAME")
    logger.info(f"🗄️ Using PostgreSQL components: {host}:{port}/{db_name}")
    return f"postgresql+psycopg://{user}:{pwd}@{host}:{port}/{db_name}"


def build_services(app: Flask, client=None) -> dict:
    """Construct the shared client and the services that depend on it."""
    if client is None:
        client = APIFootballClient(
            rate_limiter=TokenBucket(sync_config.API_RATE_LIMIT_PER_SECOND, sync_config.API_RATE_LIMIT_BURST)
        )
    cache_service = OddsCacheService(client)
    sync_job = OddsSyncJob(client, cache_service)
    aggregator = FixtureAggregator(client, cache_service)
    worker = MatchCacheWorker(app, client, cache_service, aggregator, sync_job=sync_job)
    return {
        'client': client,
        'cache_service': cache_service,
        'sync_job': sync_job,
        'aggregator': aggregator,
        'worker': worker,
    }


def create_app(config: dict | None = None, client=None, start_worker: bool | None = None) -> Flask:
    logger.info("🚀 Starting fixture cache application...")
    app = Flask(__name__)
    app.config['SECRET_KEY'] = os.getenv('SECRET_KEY')
    app.config['SQLALCHEMY_TRACK_MODIFICATIONS'] = False
    if not (config or {}).get('SQLALCHEMY_DATABASE_URI'):
        app.config['SQLALCHEMY_DATABASE_URI'] = _database_uri()
    app.config.update(config or {})

    valid, error = sync_config.validate_sync_config()
    if not valid and client is None:
        logger.warning(f"⚠️ Sync configuration invalid: {error}")

    db.init_app(app)
    limiter.init_app(app)
    app.register_blueprint(cache_bp, url_prefix='/api')

    services = build_services(app, client=client)
    app.extensions['fixturecache'] = services

    @app.route('/api/health', methods=['GET'])
    def health():
        return jsonify({'status': 'ok', 'worker_running': services['worker'].is_running})

    with app.app_context():
        db.create_all()

    if start_worker is None:
        start_worker = sync_config.WORKER_ENABLED
    if start_worker:
        services['worker'].start()
        atexit.register(services['worker'].stop)
    else:
        logger.info("⏸️ Match cache worker disabled (set MATCH_CACHE_WORKER_ENABLED=true to enable)")

    return app


if __name__ == "__main__":
    # Only run when you execute `python -m fixturecache.main`,
    # NOT when a WSGI server imports create_app.
    application = create_app()
    with application.app_context():
        stats = application.extensions['fixturecache']['cache_service'].get_cache_stats()
        logger.info(f"📊 Odds cache holds {(stats.get('odds') or {}).get('total', 0)} fixtures")
    application.run(host='0.0.0.0', port=int(os.getenv('PORT', '5001')))
