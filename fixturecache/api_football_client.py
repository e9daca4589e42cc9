import requests
import threading
from typing import Dict, List, Optional, Any
import logging
from datetime import datetime, timedelta, timezone
from copy import deepcopy

from fixturecache.config import sync_config
from fixturecache.errors import QuotaExceededError, UpstreamRequestError
from fixturecache.utils.rate_limiter import TokenBucket

logger = logging.getLogger(__name__)

# Provider error keys that mean "your plan/quota does not allow this"
QUOTA_ERROR_KEYS = ('requests', 'rateLimit', 'plan', 'access', 'token')


class APIFootballClient:
    """Client for API-Football v3 fixtures and odds.

    Every request acquires a token from the shared ``TokenBucket`` first, so
    the sync job, worker and aggregator never exceed the provider's rate limit
    between them.
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        mode: Optional[str] = None,
        use_stub: Optional[bool] = None,
        rate_limiter: Optional[TokenBucket] = None,
        timeout: Optional[float] = None,
        session: Optional[requests.Session] = None,
    ):
        self.api_key = api_key or sync_config.API_FOOTBALL_KEY
        # ------------------------------------------------------------------
        # 🔧 Stub-data toggle: must be explicitly enabled
        # ------------------------------------------------------------------
        self.use_stub = sync_config.API_USE_STUB_DATA if use_stub is None else use_stub
        if not self.api_key and not self.use_stub:
            raise RuntimeError(
                "API_FOOTBALL_KEY is missing and API_USE_STUB_DATA is not enabled. "
                "Set API_USE_STUB_DATA=true ONLY when you want to run offline tests."
            )

        mode_env = (mode or sync_config.API_FOOTBALL_MODE).lower()
        self.mode = "stub" if self.use_stub else mode_env

        if self.mode == "direct":
            self.base_url = "https://v3.football.api-sports.io"
            self.headers = {"x-apisports-key": self.api_key}
            logger.info("🔗 API-Football mode: DIRECT (v3.football.api-sports.io)")
        elif self.mode == "rapidapi":
            self.base_url = "https://api-football-v1.p.rapidapi.com/v3"
            self.headers = {
                "X-RapidAPI-Key": self.api_key,
                "X-RapidAPI-Host": "api-football-v1.p.rapidapi.com",
            }
            logger.info("🔗 API-Football mode: RAPIDAPI (api-football-v1.p.rapidapi.com)")
        elif self.mode == "stub":
            self.base_url = None
            self.headers = {}
            logger.info("🔗 API-Football mode: STUB (sample data ONLY)")
        else:
            raise ValueError(
                f"Unknown API_FOOTBALL_MODE: {mode_env}. "
                "Use 'direct', 'rapidapi', or set API_USE_STUB_DATA=true for stub mode."
            )

        self.timeout = timeout or sync_config.API_REQUEST_TIMEOUT
        self.rate_limiter = rate_limiter or TokenBucket(
            sync_config.API_RATE_LIMIT_PER_SECOND, sync_config.API_RATE_LIMIT_BURST
        )
        self.session = session or requests

        # In-memory request counters (per endpoint)
        self._stats_lock = threading.Lock()
        self._request_counts: Dict[str, int] = {}
        self._error_counts: Dict[str, int] = {}
        self._quota_errors = 0
        self._last_remaining: Optional[int] = None
        self._last_request_at: Optional[datetime] = None

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    def handshake(self) -> bool:
        """Test API connection with minimal quota cost."""
        logger.info("🤝 Testing API connection...")
        status = self._make_request("status")

        response_data = status.get("response", {})
        if isinstance(response_data, list):
            response_data = response_data[0] if response_data else {}
        if not isinstance(response_data, dict):
            response_data = {}

        account = response_data.get("account") or {}
        subscription = response_data.get("subscription") or {}
        if not account or not subscription:
            raise UpstreamRequestError("status", "no account/subscription data in response")
        if not subscription.get("active", False):
            raise QuotaExceededError("status", f"subscription not active: {subscription}")

        requests_info = response_data.get("requests") or {}
        logger.info(
            f"✅ API handshake successful - Plan: {subscription.get('plan', 'Unknown')} "
            f"({requests_info.get('current', '?')}/{requests_info.get('limit_day', '?')} requests today)"
        )
        return True

    def _record(self, endpoint: str, failed: bool = False, quota: bool = False) -> None:
        with self._stats_lock:
            self._request_counts[endpoint] = self._request_counts.get(endpoint, 0) + 1
            self._last_request_at = datetime.now(timezone.utc)
            if failed:
                self._error_counts[endpoint] = self._error_counts.get(endpoint, 0) + 1
            if quota:
                self._quota_errors += 1

    def _respect_ratelimit(self, headers: Dict[str, Any] | None = None) -> None:
        """Back off the shared bucket based on API-Football rate-limit headers."""
        if not headers:
            return
        raw = headers.get("X-RateLimit-Remaining") or headers.get("x-ratelimit-requests-remaining")
        try:
            remaining = int(raw)
        except (TypeError, ValueError):
            return
        self._last_remaining = remaining
        if remaining < 2:
            self.rate_limiter.pause(10)
        elif remaining < 5:
            self.rate_limiter.pause(5)
        elif remaining < 10:
            self.rate_limiter.pause(2)

    @staticmethod
    def _is_quota_error(errors) -> bool:
        if isinstance(errors, dict):
            return any(key in errors for key in QUOTA_ERROR_KEYS)
        text = str(errors).lower()
        return any(word in text for word in ('limit', 'plan', 'subscription', 'quota'))

    def _make_request(self, endpoint: str, params: Dict[str, Any] = None) -> Dict[str, Any]:
        """Make authenticated, rate-limited request to API-Football.

        Raises:
            QuotaExceededError: HTTP 403/429 or a quota/plan error payload
            UpstreamRequestError: any other transport or payload failure
        """
        if self.mode == "stub":
            logger.debug(f"🔄 Returning sample data for endpoint '{endpoint}' (stub mode)")
            self._record(endpoint)
            return self._get_sample_data(endpoint, params)

        self.rate_limiter.acquire()
        url = f"{self.base_url}/{endpoint}"
        logger.debug(f"🏈 API-Football request: {endpoint} params={params}")

        try:
            response = self.session.get(url, headers=self.headers, params=params or {}, timeout=self.timeout)
        except requests.exceptions.RequestException as e:
            self._record(endpoint, failed=True)
            logger.error(f"❌ API request to {endpoint} failed: {e}")
            raise UpstreamRequestError(endpoint, str(e)) from e

        self._respect_ratelimit(getattr(response, "headers", None))

        if response.status_code in (403, 429):
            self._record(endpoint, failed=True, quota=True)
            logger.error(f"🚫 API-Football quota/plan refusal for {endpoint} (HTTP {response.status_code})")
            raise QuotaExceededError(endpoint, response.text[:200], response.status_code)

        if response.status_code >= 400:
            self._record(endpoint, failed=True)
            logger.error(f"❌ API-Football HTTP {response.status_code} for {endpoint}: {response.text[:200]}")
            raise UpstreamRequestError(endpoint, response.text[:200], response.status_code)

        try:
            data = response.json()
        except ValueError as e:
            self._record(endpoint, failed=True)
            raise UpstreamRequestError(endpoint, f"invalid JSON: {e}", response.status_code) from e

        if not isinstance(data, dict):
            self._record(endpoint, failed=True)
            raise UpstreamRequestError(endpoint, f"unexpected payload type {type(data).__name__}")

        errors = data.get("errors")
        if errors:
            if self._is_quota_error(errors):
                self._record(endpoint, failed=True, quota=True)
                logger.error(f"🚫 API-Football quota/plan error for {endpoint}: {errors}")
                raise QuotaExceededError(endpoint, str(errors), response.status_code)
            self._record(endpoint, failed=True)
            logger.error(f"❌ API-Football error payload for {endpoint}: {errors}")
            raise UpstreamRequestError(endpoint, str(errors), response.status_code)

        self._record(endpoint)
        if data.get("results", 0) == 0:
            logger.debug(f"API returned 0 results for {endpoint} params={params}")
        return data

    def _get_response_list(self, endpoint: str, params: Dict[str, Any] = None) -> List[Dict[str, Any]]:
        data = self._make_request(endpoint, params)
        response = data.get("response")
        return response if isinstance(response, list) else []

    # ------------------------------------------------------------------
    # Endpoints
    # ------------------------------------------------------------------

    def get_fixtures(self, params: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Fixtures matching ``params`` (``date``, ``live``, ``league``, ``status``, ...)."""
        query = dict(params or {})
        if "date" in query or "from" in query:
            query.setdefault("timezone", sync_config.API_TIMEZONE)
        return self._get_response_list("fixtures", query)

    def get_fixture(self, fixture_id: int) -> Optional[Dict[str, Any]]:
        rows = self._get_response_list("fixtures", {"id": fixture_id})
        return rows[0] if rows else None

    def get_odds(self, params: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Pre-match odds blocks (one per fixture) matching ``params``."""
        return self._get_response_list("odds", dict(params or {}))

    def get_fixture_odds(self, fixture_id: int, bookmaker: Optional[int] = None) -> List[Dict[str, Any]]:
        params: Dict[str, Any] = {"fixture": fixture_id}
        if bookmaker:
            params["bookmaker"] = bookmaker
        return self.get_odds(params)

    def get_fixture_events(self, fixture_id: int) -> List[Dict[str, Any]]:
        return self._get_response_list("fixtures/events", {"fixture": fixture_id})

    def get_fixture_statistics(self, fixture_id: int) -> List[Dict[str, Any]]:
        return self._get_response_list("fixtures/statistics", {"fixture": fixture_id})

    def get_request_stats(self) -> Dict[str, Any]:
        """Counters for requests made by this client since startup."""
        with self._stats_lock:
            return {
                "mode": self.mode,
                "total_requests": sum(self._request_counts.values()),
                "by_endpoint": dict(self._request_counts),
                "errors_by_endpoint": dict(self._error_counts),
                "quota_errors": self._quota_errors,
                "last_rate_limit_remaining": self._last_remaining,
                "last_request_at": self._last_request_at.isoformat() if self._last_request_at else None,
                "rate_limiter": self.rate_limiter.stats(),
            }

    # ------------------------------------------------------------------
    # Stub data
    # ------------------------------------------------------------------

    def _get_sample_data(self, endpoint: str, params: Dict[str, Any] = None) -> Dict[str, Any]:
        """Return deterministic sample data for offline runs."""
        params = params or {}
        if endpoint == "status":
            return {"response": {
                "account": {"firstname": "Stub", "lastname": "Account"},
                "subscription": {"plan": "Stub", "active": True},
                "requests": {"current": 0, "limit_day": 100},
            }, "errors": [], "results": 1}

        if endpoint == "fixtures":
            fixtures = [deepcopy(f) for f in _SAMPLE_FIXTURES]
            if "id" in params:
                fixtures = [f for f in fixtures if f["fixture"]["id"] == int(params["id"])]
            if "league" in params:
                fixtures = [f for f in fixtures if f["league"]["id"] == int(params["league"])]
            if "live" in params:
                fixtures = [f for f in fixtures if f["fixture"]["status"]["short"] in ("1H", "HT", "2H")]
            if "status" in params:
                wanted = set(str(params["status"]).split("-"))
                fixtures = [f for f in fixtures if f["fixture"]["status"]["short"] in wanted]
            return {"response": fixtures, "errors": [], "results": len(fixtures)}

        if endpoint == "odds":
            fixture_id = params.get("fixture")
            ids = [int(fixture_id)] if fixture_id else [f["fixture"]["id"] for f in _SAMPLE_FIXTURES]
            blocks = [_sample_odds_block(fid) for fid in ids]
            return {"response": blocks, "errors": [], "results": len(blocks)}

        if endpoint == "fixtures/events":
            return {"response": [
                {"time": {"elapsed": 23, "extra": None}, "team": {"id": 33, "name": "Manchester United"},
                 "player": {"name": "Sample Striker"}, "assist": {"name": None},
                 "type": "Goal", "detail": "Normal Goal", "comments": None},
            ], "errors": [], "results": 1}

        if endpoint == "fixtures/statistics":
            return {"response": [
                {"team": {"id": 33}, "statistics": [{"type": "Shots on Goal", "value": 5},
                                                    {"type": "Ball Possession", "value": "55%"}]},
                {"team": {"id": 40}, "statistics": [{"type": "Shots on Goal", "value": 3},
                                                    {"type": "Ball Possession", "value": "45%"}]},
            ], "errors": [], "results": 2}

        return {"response": [], "errors": [], "results": 0}


def _sample_fixture(fixture_id: int, league_id: int, league_name: str, short: str, kickoff: datetime,
                    home: tuple, away: tuple) -> Dict[str, Any]:
    return {
        "fixture": {"id": fixture_id, "date": kickoff.isoformat(), "referee": None,
                    "venue": {"name": "Sample Stadium"}, "status": {"short": short, "elapsed": None}},
        "league": {"id": league_id, "name": league_name, "country": "England",
                   "season": kickoff.year if kickoff.month >= 7 else kickoff.year - 1, "round": "Regular Season - 1"},
        "teams": {"home": {"id": home[0], "name": home[1], "logo": None},
                  "away": {"id": away[0], "name": away[1], "logo": None}},
        "goals": {"home": None, "away": None},
        "score": {},
    }


def _sample_odds_block(fixture_id: int) -> Dict[str, Any]:
    return {
        "fixture": {"id": fixture_id},
        "bookmakers": [{
            "id": 8, "name": "Bet365",
            "bets": [{"id": 1, "name": "Match Winner", "values": [
                {"value": "Home", "odd": "1.90"}, {"value": "Draw", "odd": "3.40"}, {"value": "Away", "odd": "4.20"},
            ]}],
        }],
    }


_STUB_NOW = datetime.now(timezone.utc).replace(minute=0, second=0, microsecond=0)
_SAMPLE_FIXTURES = [
    _sample_fixture(900001, 39, "Premier League", "1H", _STUB_NOW - timedelta(minutes=30),
                    (33, "Manchester United"), (40, "Liverpool")),
    _sample_fixture(900002, 39, "Premier League", "NS", _STUB_NOW + timedelta(hours=3),
                    (42, "Arsenal"), (49, "Chelsea")),
    _sample_fixture(900003, 140, "La Liga", "FT", _STUB_NOW - timedelta(hours=20),
                    (529, "Barcelona"), (541, "Real Madrid")),
]
