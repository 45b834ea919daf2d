from datetime import timedelta
from typing import Optional

from studysync.core.clock import Clock, SystemClock, ensure_aware_utc
from studysync.core.exceptions import ConcurrentModificationLost
from studysync.core.logging import get_logger
from studysync.crud.base import SessionStore, UserStore
from studysync.models.session import COUNTED_STATUSES, SessionInDB
from studysync.models.user import UserAnalytics, UserInDB

logger = get_logger(__name__)


class UserAnalyticsUpdater:
    """
    Folds one finished session into the owner's rolling analytics.

    Runs after the session itself is persisted. Writes are guarded by the
    user's version; a lost write re-reads the user and tries again.
    """

    def __init__(
        self,
        users: UserStore,
        sessions: SessionStore,
        clock: Optional[Clock] = None,
        window_days: int = 30,
        max_retries: int = 3,
    ):
        self.users = users
        self.sessions = sessions
        self.clock = clock or SystemClock()
        self.window = timedelta(days=window_days)
        self.max_retries = max_retries

    async def update(self, user_id: str, session: SessionInDB) -> Optional[UserInDB]:
        if session.status not in COUNTED_STATUSES:
            return None

        for attempt in range(1, self.max_retries + 1):
            user = await self.users.find_by_id(user_id)
            if user is None:
                logger.warning("analytics skipped, user not found", extra={"user_id": user_id})
                return None

            now = self.clock.now()
            count = await self.sessions.count_by_user_in_range(
                user_id, now - self.window, now, statuses=COUNTED_STATUSES
            )
            analytics = self.recompute(user.analytics, session.duration_seconds or 0, count)

            saved = await self.users.save(
                user.model_copy(update={"analytics": analytics}), expected_version=user.version
            )
            if saved is not None:
                return saved

            logger.info(
                f"analytics write conflict, retrying ({attempt}/{self.max_retries})",
                extra={"user_id": user_id},
            )

        raise ConcurrentModificationLost(f"analytics for user {user_id} kept losing version checks")

    def recompute(self, analytics: UserAnalytics, duration_seconds: int, window_count: int) -> UserAnalytics:
        now = self.clock.now()
        total = analytics.total_study_time + duration_seconds

        average = analytics.average_session_duration
        if window_count > 0:
            average = total // window_count

        current_streak = self._next_streak(analytics, now)
        return analytics.model_copy(
            update={
                "total_study_time": total,
                "average_session_duration": average,
                "current_streak": current_streak,
                "longest_streak": max(analytics.longest_streak, current_streak),
                "last_activity_date": now,
            }
        )

    @staticmethod
    def _next_streak(analytics: UserAnalytics, now) -> int:
        if analytics.last_activity_date is None:
            return 1
        last_day = ensure_aware_utc(analytics.last_activity_date).date()
        today = ensure_aware_utc(now).date()
        if last_day == today:
            return max(analytics.current_streak, 1)
        if last_day == today - timedelta(days=1):
            return analytics.current_streak + 1
        return 1
