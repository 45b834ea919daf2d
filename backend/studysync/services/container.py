from dataclasses import dataclass
from typing import Optional

from studysync.cache.leaderboard import InMemoryLeaderboardCache, RedisLeaderboardCache
from studysync.core.clock import Clock, SystemClock
from studysync.core.config import Settings, settings as default_settings
from studysync.crud.base import LeaderboardCache, SessionStore, UserStore
from studysync.crud.sessions import MongoSessionStore
from studysync.crud.users import MongoUserStore
from studysync.services.analytics import UserAnalyticsUpdater
from studysync.services.anomaly import AnomalyScorer
from studysync.services.leaderboard import LeaderboardAggregator
from studysync.services.sessions import SessionLifecycleManager
from studysync.services.sweeper import StaleSessionSweeper


@dataclass
class Services:
    sessions: SessionLifecycleManager
    leaderboard: LeaderboardAggregator
    analytics: UserAnalyticsUpdater
    scorer: AnomalyScorer
    sweeper: StaleSessionSweeper
    session_store: SessionStore
    user_store: UserStore
    cache: LeaderboardCache


def build_services(
    session_store: SessionStore,
    user_store: UserStore,
    cache: LeaderboardCache,
    clock: Optional[Clock] = None,
    config: Optional[Settings] = None,
) -> Services:
    config = config or default_settings
    clock = clock or SystemClock()

    scorer = AnomalyScorer(max_session_duration=config.MAX_SESSION_DURATION, clock=clock)
    analytics = UserAnalyticsUpdater(
        user_store,
        session_store,
        clock=clock,
        window_days=config.ANALYTICS_WINDOW_DAYS,
        max_retries=config.ANALYTICS_MAX_RETRIES,
    )
    leaderboard = LeaderboardAggregator(
        session_store, user_store, cache, clock=clock, size=config.LEADERBOARD_SIZE
    )
    lifecycle = SessionLifecycleManager(
        session_store,
        user_store,
        scorer,
        analytics,
        leaderboard,
        clock=clock,
        max_session_duration=config.MAX_SESSION_DURATION,
        stale_after_hours=config.STALE_SESSION_HOURS,
        anomaly_threshold=config.ANOMALY_THRESHOLD,
    )
    sweeper = StaleSessionSweeper(
        lifecycle, session_store, clock=clock, interval_seconds=config.SWEEP_INTERVAL_SECONDS
    )
    return Services(
        sessions=lifecycle,
        leaderboard=leaderboard,
        analytics=analytics,
        scorer=scorer,
        sweeper=sweeper,
        session_store=session_store,
        user_store=user_store,
        cache=cache,
    )


def build_default_services(redis_client=None, config: Optional[Settings] = None) -> Services:
    """Mongo stores plus Redis cache when a client is available."""
    cache: LeaderboardCache
    if redis_client is not None:
        cache = RedisLeaderboardCache(redis_client)
    else:
        cache = InMemoryLeaderboardCache()
    clock = SystemClock()
    return build_services(
        MongoSessionStore(clock=clock),
        MongoUserStore(),
        cache,
        clock=clock,
        config=config,
    )
