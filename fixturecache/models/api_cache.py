"""Persistent cache for aggregated result sets (live board, hot matches, ...)."""

import logging
from datetime import datetime, timedelta, timezone

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from fixturecache.config.sync_config import RESULT_SET_MAX_TTL, RESULT_SET_TTLS
from fixturecache.models.fixture_cache import db
from fixturecache.services.freshness_policy import _as_utc

logger = logging.getLogger(__name__)

DEFAULT_RESULT_SET_TTL = 60


def ttl_for(cache_type: str) -> int:
    """Seconds a result set of ``cache_type`` stays valid (never above the ceiling)."""
    return min(RESULT_SET_TTLS.get(cache_type, DEFAULT_RESULT_SET_TTL), RESULT_SET_MAX_TTL)


class ResultSetCache(db.Model):
    """DB-backed cache for whole aggregated responses.

    Keyed by (cache_type, cache_key), e.g. ``('live', 'live_all')`` or
    ``('live-scheduled', 'live-scheduled_2024-05-01')``. Rows carry a short
    expiry; expired rows read as a miss and are removed by the periodic sweep.
    """

    __tablename__ = "result_set_cache"

    id = db.Column(db.Integer, primary_key=True)
    cache_type = db.Column(db.String(30), nullable=False)
    cache_key = db.Column(db.String(120), nullable=False)
    data = db.Column(db.JSON, nullable=False)
    hits = db.Column(db.Integer, nullable=False, default=0)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc))
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc))
    last_accessed_at = db.Column(db.DateTime(timezone=True))
    expires_at = db.Column(db.DateTime(timezone=True), nullable=False)

    __table_args__ = (
        db.UniqueConstraint("cache_type", "cache_key", name="uq_result_set_cache_type_key"),
        db.Index("ix_result_set_cache_expires_at", "expires_at"),
    )

    @classmethod
    def get_cached(cls, cache_type: str, cache_key: str, now: datetime | None = None,
                   allow_stale: bool = False):
        """Return cached data if a fresh entry exists, else None. Counts the hit.

        ``allow_stale`` also returns an expired row that has not been swept yet.
        """
        now = _as_utc(now) or datetime.now(timezone.utc)
        row = cls.query.filter_by(cache_type=cache_type, cache_key=cache_key).first()
        if row is None:
            return None
        if not allow_stale and _as_utc(row.expires_at) <= now:
            return None
        row.hits = (row.hits or 0) + 1
        row.last_accessed_at = now
        try:
            db.session.commit()
        except SQLAlchemyError as e:
            db.session.rollback()
            logger.warning(f"Failed to record hit for {cache_type}/{cache_key}: {e}")
        return row.data

    @classmethod
    def set_cached(cls, cache_type: str, cache_key: str, data, ttl_seconds: int | None = None,
                   now: datetime | None = None) -> None:
        """Insert or update the row for the given type+key."""
        now = _as_utc(now) or datetime.now(timezone.utc)
        ttl = min(ttl_seconds if ttl_seconds is not None else ttl_for(cache_type), RESULT_SET_MAX_TTL)
        expires = now + timedelta(seconds=ttl)

        existing = cls.query.filter_by(cache_type=cache_type, cache_key=cache_key).first()
        if existing:
            existing.data = data
            existing.updated_at = now
            existing.expires_at = expires
        else:
            row = cls(
                cache_type=cache_type,
                cache_key=cache_key,
                data=data,
                hits=0,
                created_at=now,
                updated_at=now,
                expires_at=expires,
            )
            db.session.add(row)

        try:
            db.session.commit()
        except IntegrityError:
            db.session.rollback()
            # Race condition: another worker inserted first; update instead
            existing = cls.query.filter_by(cache_type=cache_type, cache_key=cache_key).first()
            if existing:
                existing.data = data
                existing.updated_at = now
                existing.expires_at = expires
                db.session.commit()

    @classmethod
    def invalidate(cls, cache_type: str | None = None) -> int:
        """Drop every row (or every row of one type). Returns count of deleted rows."""
        query = cls.query
        if cache_type:
            query = query.filter_by(cache_type=cache_type)
        try:
            count = query.delete()
            db.session.commit()
        except SQLAlchemyError:
            db.session.rollback()
            raise
        return count

    @classmethod
    def cleanup_expired(cls, now: datetime | None = None) -> int:
        """Delete all expired rows.  Returns count of deleted rows."""
        now = _as_utc(now) or datetime.now(timezone.utc)
        try:
            count = cls.query.filter(cls.expires_at <= now).delete()
            db.session.commit()
        except SQLAlchemyError:
            db.session.rollback()
            raise
        return count

    @classmethod
    def stats(cls) -> dict:
        """Return aggregate stats for admin visibility."""
        rows = (
            db.session.query(
                cls.cache_type,
                func.count(cls.id).label("count"),
                func.sum(cls.hits).label("hits"),
                func.max(cls.updated_at).label("newest"),
            )
            .group_by(cls.cache_type)
            .all()
        )
        by_type = [
            {
                "cache_type": r.cache_type,
                "count": r.count,
                "hits": int(r.hits or 0),
                "newest": _as_utc(r.newest).isoformat() if r.newest else None,
            }
            for r in rows
        ]
        return {"total_entries": sum(r.count for r in rows), "by_type": by_type}
