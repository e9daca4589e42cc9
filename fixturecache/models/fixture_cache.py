"""Per-fixture cache tables.

Two flavors share one schema: ``OddsCacheEntry`` holds the latest bookmaker odds
snapshot for a fixture, ``MatchDetailCache`` holds the transformed detail of a
finished match (events, statistics, odds). Each row carries the freshness
policy's verdict (``expires_at`` and ``priority``); ``upsert`` is the only
write path and always recomputes both.
"""

import logging
from datetime import datetime, timedelta, timezone

from flask_sqlalchemy import SQLAlchemy
from sqlalchemy import func
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from fixturecache.config.sync_config import MATCH_DETAIL_TTL_DAYS
from fixturecache.services.freshness_policy import (
    PRIORITY_RANK,
    SETTLED_TTL,
    MatchStatus,
    _as_utc,
    compute_expiry,
    compute_priority,
)
from fixturecache.utils.transformers import extract_fixture_fields

logger = logging.getLogger(__name__)

db = SQLAlchemy()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _iso(dt: datetime | None) -> str | None:
    dt = _as_utc(dt)
    return dt.isoformat() if dt else None


class FixtureCacheMixin:
    """Columns and store operations shared by both cache flavors."""

    # How long finished/postponed/cancelled fixtures stay cached
    settled_ttl = SETTLED_TTL

    id = db.Column(db.Integer, primary_key=True)
    fixture_id = db.Column(db.Integer, nullable=False, unique=True, index=True)
    league_id = db.Column(db.Integer, index=True)
    league_name = db.Column(db.String(200))
    season_year = db.Column(db.Integer)
    home_team = db.Column(db.JSON)  # {id, name, logo}
    away_team = db.Column(db.JSON)
    match_date = db.Column(db.DateTime(timezone=True), index=True)
    match_status = db.Column(db.String(20), nullable=False, default=MatchStatus.SCHEDULED.value, index=True)
    status_code = db.Column(db.String(10))
    payload = db.Column(db.JSON, nullable=False, default=list)
    priority = db.Column(db.String(10), nullable=False, default='low')
    api_call_count = db.Column(db.Integer, nullable=False, default=0)
    last_api_call = db.Column(db.DateTime(timezone=True))
    last_updated = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)
    expires_at = db.Column(db.DateTime(timezone=True), nullable=False, index=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)

    def is_expired(self, now: datetime | None = None) -> bool:
        now = _as_utc(now) or _utcnow()
        return now > _as_utc(self.expires_at)

    def to_dict(self, include_payload: bool = False) -> dict:
        data = {
            'fixture_id': self.fixture_id,
            'league_id': self.league_id,
            'league_name': self.league_name,
            'season_year': self.season_year,
            'home_team': self.home_team,
            'away_team': self.away_team,
            'match_date': _iso(self.match_date),
            'match_status': self.match_status,
            'status_code': self.status_code,
            'priority': self.priority,
            'api_call_count': self.api_call_count,
            'last_api_call': _iso(self.last_api_call),
            'last_updated': _iso(self.last_updated),
            'expires_at': _iso(self.expires_at),
        }
        if include_payload:
            data['payload'] = self.payload
        return data

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    @classmethod
    def _priority_order(cls):
        return db.case(PRIORITY_RANK, value=cls.priority, else_=0).desc()

    @classmethod
    def get(cls, fixture_id: int, now: datetime | None = None, include_expired: bool = False):
        """Return the record for ``fixture_id``; expired rows read as None unless asked for."""
        row = cls.query.filter_by(fixture_id=fixture_id).first()
        if row is None:
            return None
        if not include_expired and row.is_expired(now):
            return None
        return row

    @classmethod
    def get_many(cls, fixture_ids, now: datetime | None = None) -> dict:
        """Map fixture_id -> payload for every requested id with a valid row."""
        ids = {int(f) for f in fixture_ids or [] if f is not None}
        if not ids:
            return {}
        now = _as_utc(now) or _utcnow()
        rows = cls.query.filter(cls.fixture_id.in_(ids), cls.expires_at > now).all()
        return {row.fixture_id: row.payload for row in rows}

    @classmethod
    def find_expiring_within(cls, minutes: int, now: datetime | None = None) -> list:
        """Rows already expired or expiring in the next ``minutes``; most urgent first."""
        now = _as_utc(now) or _utcnow()
        threshold = now + timedelta(minutes=minutes)
        return (
            cls.query.filter(cls.expires_at <= threshold)
            .order_by(cls._priority_order(), cls.match_date.asc())
            .all()
        )

    @classmethod
    def find_by_status(cls, status) -> list:
        value = status.value if isinstance(status, MatchStatus) else status
        return cls.query.filter_by(match_status=value).order_by(cls.last_updated.asc()).all()

    @classmethod
    def find_upcoming_within(cls, hours: int, now: datetime | None = None) -> list:
        now = _as_utc(now) or _utcnow()
        return (
            cls.query.filter(
                cls.match_status == MatchStatus.SCHEDULED.value,
                cls.match_date >= now,
                cls.match_date <= now + timedelta(hours=hours),
            )
            .order_by(cls.match_date.asc())
            .all()
        )

    @classmethod
    def find_for_leagues_between(cls, league_ids, start: datetime, end: datetime,
                                 now: datetime | None = None) -> list:
        """Valid rows for ``league_ids`` kicking off in ``[start, end)``."""
        ids = list(league_ids or [])
        if not ids:
            return []
        now = _as_utc(now) or _utcnow()
        return (
            cls.query.filter(
                cls.league_id.in_(ids),
                cls.match_date >= _as_utc(start),
                cls.match_date < _as_utc(end),
                cls.expires_at > now,
            )
            .order_by(cls.match_date.asc())
            .all()
        )

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    @classmethod
    def _apply(cls, row, fields: dict, payload, now: datetime, api_calls: int) -> None:
        status = fields['match_status']
        row.league_id = fields['league_id']
        row.league_name = fields['league_name']
        row.season_year = fields['season_year']
        row.home_team = fields['home_team']
        row.away_team = fields['away_team']
        row.match_date = fields['match_date']
        row.match_status = status.value
        row.status_code = fields['status_code']
        row.payload = payload
        row.last_updated = now
        row.expires_at = compute_expiry(status, fields['match_date'], now, settled_ttl=cls.settled_ttl)
        row.priority = compute_priority(status, fields['match_date'], now).value
        if api_calls:
            row.last_api_call = now
            row.api_call_count = (row.api_call_count or 0) + api_calls

    @classmethod
    def upsert(cls, fixture: dict, payload, now: datetime | None = None, api_calls: int = 1):
        """Insert or update the row for ``fixture`` (a provider fixture document).

        Raises:
            ValueError: the fixture carries no id
            SQLAlchemyError: persistence failed (session rolled back)
        """
        fields = extract_fixture_fields(fixture)
        fixture_id = fields['fixture_id']
        if fixture_id is None:
            raise ValueError("Fixture payload has no fixture.id")
        now = _as_utc(now) or _utcnow()

        row = cls.query.filter_by(fixture_id=fixture_id).first()
        if row is None:
            row = cls(fixture_id=fixture_id, api_call_count=0, created_at=now)
            db.session.add(row)
        cls._apply(row, fields, payload, now, api_calls)

        try:
            db.session.commit()
        except IntegrityError:
            db.session.rollback()
            # Another writer inserted first; last write wins
            row = cls.query.filter_by(fixture_id=fixture_id).first()
            if row is None:
                raise
            cls._apply(row, fields, payload, now, api_calls)
            db.session.commit()
        except SQLAlchemyError:
            db.session.rollback()
            raise
        return row

    @classmethod
    def delete_fixture(cls, fixture_id: int) -> bool:
        try:
            count = cls.query.filter_by(fixture_id=fixture_id).delete()
            db.session.commit()
        except SQLAlchemyError:
            db.session.rollback()
            raise
        return count > 0

    @classmethod
    def delete_all_expired(cls, now: datetime | None = None) -> int:
        """Delete all expired rows.  Returns count of deleted rows."""
        now = _as_utc(now) or _utcnow()
        try:
            count = cls.query.filter(cls.expires_at < now).delete()
            db.session.commit()
        except SQLAlchemyError:
            db.session.rollback()
            raise
        return count

    @classmethod
    def stats(cls, now: datetime | None = None) -> dict:
        """Return aggregate stats for admin visibility."""
        now = _as_utc(now) or _utcnow()
        by_status = dict(
            db.session.query(cls.match_status, func.count(cls.id)).group_by(cls.match_status).all()
        )
        by_priority = dict(
            db.session.query(cls.priority, func.count(cls.id)).group_by(cls.priority).all()
        )
        oldest, newest = db.session.query(func.min(cls.last_updated), func.max(cls.last_updated)).one()
        expired = cls.query.filter(cls.expires_at < now).count()
        return {
            'total': sum(by_status.values()),
            'by_status': by_status,
            'by_priority': by_priority,
            'expired': expired,
            'oldest_update': _iso(oldest),
            'newest_update': _iso(newest),
        }


class OddsCacheEntry(FixtureCacheMixin, db.Model):
    """Latest bookmaker odds per fixture; payload is the transformed bookmaker list."""

    __tablename__ = 'odds_cache'

    @property
    def bookmakers(self) -> list:
        return self.payload or []


class MatchDetailCache(FixtureCacheMixin, db.Model):
    """Finished-match detail; the payload does not change once cached."""

    __tablename__ = 'match_detail_cache'

    settled_ttl = timedelta(days=MATCH_DETAIL_TTL_DAYS)
