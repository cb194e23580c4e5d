"""Persistence for bin events, community usage aggregates, profiles and activities.

Two backends share the BinStore protocol: PostgreSQL through an asyncpg pool
for deployments, and a dict-backed store for local runs and tests.
"""
import asyncio
import json
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional, Protocol, Tuple

import asyncpg
import structlog

from binthere.models.dto import (
    ActivityEvent,
    BinEventRecord,
    BinUsageAggregate,
    UserProfileStats,
)

logger = structlog.get_logger(__name__)

ProfileUpdate = Callable[[Optional[UserProfileStats]], UserProfileStats]


class BinStore(Protocol):
    async def insert_bin_event(self, record: BinEventRecord) -> None: ...

    async def increment_bin_usage(self, lat: float, lng: float, name: str, used_at: datetime) -> int: ...

    async def top_bins(self, limit: int, min_usage: int = 1) -> List[BinUsageAggregate]: ...

    async def get_profile(self, user_id: str) -> Optional[UserProfileStats]: ...

    async def update_profile(self, user_id: str, update: ProfileUpdate) -> UserProfileStats: ...

    async def insert_activity(self, event: ActivityEvent) -> None: ...


class InMemoryBinStore:
    """Single-process store; one lock serialises the read-modify-write paths."""

    def __init__(self):
        self.bin_events: List[BinEventRecord] = []
        self.usage: Dict[Tuple[float, float], BinUsageAggregate] = {}
        self.profiles: Dict[str, UserProfileStats] = {}
        self.activities: List[ActivityEvent] = []
        self._lock = asyncio.Lock()

    async def insert_bin_event(self, record: BinEventRecord) -> None:
        self.bin_events.append(record)

    async def increment_bin_usage(self, lat: float, lng: float, name: str, used_at: datetime) -> int:
        async with self._lock:
            key = (lat, lng)
            existing = self.usage.get(key)
            if existing:
                row = existing.model_copy(update={
                    "usage_count": existing.usage_count + 1,
                    "bin_name": name,
                    "last_used_at": used_at,
                })
            else:
                row = BinUsageAggregate(
                    id=len(self.usage) + 1,
                    bin_lat=lat,
                    bin_lng=lng,
                    bin_name=name,
                    usage_count=1,
                    last_used_at=used_at,
                )
            self.usage[key] = row
            return row.usage_count

    async def top_bins(self, limit: int, min_usage: int = 1) -> List[BinUsageAggregate]:
        rows = [row for row in self.usage.values() if row.usage_count >= min_usage]
        rows.sort(key=lambda row: row.usage_count, reverse=True)
        return rows[:limit]

    async def get_profile(self, user_id: str) -> Optional[UserProfileStats]:
        return self.profiles.get(user_id)

    async def update_profile(self, user_id: str, update: ProfileUpdate) -> UserProfileStats:
        async with self._lock:
            current = self.profiles.get(user_id)
            updated = update(current)
            if updated.created_at is None:
                created_at = current.created_at if current and current.created_at else datetime.now(timezone.utc)
                updated = updated.model_copy(update={"created_at": created_at})
            self.profiles[user_id] = updated
            return updated

    async def insert_activity(self, event: ActivityEvent) -> None:
        self.activities.append(event)


SCHEMA = """
CREATE TABLE IF NOT EXISTS bin_events (
    id BIGSERIAL PRIMARY KEY,
    user_id TEXT,
    bin_lat DOUBLE PRECISION NOT NULL,
    bin_lng DOUBLE PRECISION NOT NULL,
    bin_name TEXT NOT NULL,
    route_distance DOUBLE PRECISION,
    route_duration DOUBLE PRECISION,
    arrival_lat DOUBLE PRECISION,
    arrival_lng DOUBLE PRECISION,
    created_at TIMESTAMPTZ NOT NULL DEFAULT now()
);

CREATE TABLE IF NOT EXISTS bin_usage_stats (
    id BIGSERIAL PRIMARY KEY,
    bin_lat DOUBLE PRECISION NOT NULL,
    bin_lng DOUBLE PRECISION NOT NULL,
    bin_name TEXT NOT NULL,
    usage_count INTEGER NOT NULL DEFAULT 1 CHECK (usage_count >= 1),
    last_used_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    UNIQUE (bin_lat, bin_lng)
);

CREATE TABLE IF NOT EXISTS profiles (
    id TEXT PRIMARY KEY,
    total_bins INTEGER NOT NULL DEFAULT 0,
    streak_days INTEGER NOT NULL DEFAULT 0,
    last_binned_at TIMESTAMPTZ,
    created_at TIMESTAMPTZ NOT NULL DEFAULT now()
);

CREATE TABLE IF NOT EXISTS user_activities (
    id BIGSERIAL PRIMARY KEY,
    user_id TEXT,
    activity_type TEXT NOT NULL,
    location_lat DOUBLE PRECISION,
    location_lng DOUBLE PRECISION,
    metadata JSONB NOT NULL DEFAULT '{}'::jsonb,
    user_agent TEXT,
    ip_address TEXT,
    created_at TIMESTAMPTZ NOT NULL DEFAULT now()
);
"""


class PostgresBinStore:
    """asyncpg-backed store. Counters are updated with single statements or row locks."""

    def __init__(self, database_url: str):
        self.database_url = database_url
        self.pool: Optional[asyncpg.Pool] = None

    async def start(self) -> None:
        logger.info("database_pool_starting")
        self.pool = await asyncpg.create_pool(
            self.database_url,
            min_size=1,
            max_size=10,
            command_timeout=30,
            server_settings={"application_name": "binthere"},
        )
        async with self.pool.acquire() as conn:
            await conn.execute(SCHEMA)
        logger.info("database_pool_started")

    async def stop(self) -> None:
        if self.pool:
            await self.pool.close()
            self.pool = None
        logger.info("database_pool_stopped")

    def _require_pool(self) -> asyncpg.Pool:
        if not self.pool:
            raise RuntimeError("database_not_connected")
        return self.pool

    async def insert_bin_event(self, record: BinEventRecord) -> None:
        await self._require_pool().execute(
            """
            INSERT INTO bin_events (user_id, bin_lat, bin_lng, bin_name, route_distance,
                                    route_duration, arrival_lat, arrival_lng, created_at)
            VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9)
            """,
            record.user_id, record.bin_lat, record.bin_lng, record.bin_name,
            record.route_distance, record.route_duration,
            record.arrival_lat, record.arrival_lng, record.created_at,
        )

    async def increment_bin_usage(self, lat: float, lng: float, name: str, used_at: datetime) -> int:
        return await self._require_pool().fetchval(
            """
            INSERT INTO bin_usage_stats (bin_lat, bin_lng, bin_name, usage_count, last_used_at)
            VALUES ($1, $2, $3, 1, $4)
            ON CONFLICT (bin_lat, bin_lng) DO UPDATE
               SET usage_count = bin_usage_stats.usage_count + 1,
                   bin_name = EXCLUDED.bin_name,
                   last_used_at = EXCLUDED.last_used_at
            RETURNING usage_count
            """,
            lat, lng, name, used_at,
        )

    async def top_bins(self, limit: int, min_usage: int = 1) -> List[BinUsageAggregate]:
        rows = await self._require_pool().fetch(
            """
            SELECT id, bin_lat, bin_lng, bin_name, usage_count, last_used_at
              FROM bin_usage_stats
             WHERE usage_count >= $1
             ORDER BY usage_count DESC
             LIMIT $2
            """,
            min_usage, limit,
        )
        return [BinUsageAggregate(**dict(row)) for row in rows]

    async def get_profile(self, user_id: str) -> Optional[UserProfileStats]:
        row = await self._require_pool().fetchrow(
            "SELECT total_bins, streak_days, last_binned_at, created_at FROM profiles WHERE id = $1",
            user_id,
        )
        return UserProfileStats(**dict(row)) if row else None

    async def update_profile(self, user_id: str, update: ProfileUpdate) -> UserProfileStats:
        async with self._require_pool().acquire() as conn:
            async with conn.transaction():
                # FOR UPDATE needs an existing row to lock
                await conn.execute(
                    "INSERT INTO profiles (id) VALUES ($1) ON CONFLICT (id) DO NOTHING",
                    user_id,
                )
                row = await conn.fetchrow(
                    """
                    SELECT total_bins, streak_days, last_binned_at, created_at
                      FROM profiles WHERE id = $1 FOR UPDATE
                    """,
                    user_id,
                )
                updated = update(UserProfileStats(**dict(row)))
                await conn.execute(
                    """
                    UPDATE profiles
                       SET total_bins = $2, streak_days = $3, last_binned_at = $4
                     WHERE id = $1
                    """,
                    user_id, updated.total_bins, updated.streak_days, updated.last_binned_at,
                )
        return updated

    async def insert_activity(self, event: ActivityEvent) -> None:
        await self._require_pool().execute(
            """
            INSERT INTO user_activities (user_id, activity_type, location_lat, location_lng,
                                         metadata, user_agent, ip_address, created_at)
            VALUES ($1, $2, $3, $4, $5::jsonb, $6, $7, $8)
            """,
            event.user_id, event.activity_type.value, event.location_lat, event.location_lng,
            json.dumps(event.metadata), event.user_agent, event.ip_address, event.created_at,
        )
