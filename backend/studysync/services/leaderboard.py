"""Weekly group leaderboards.

Cache-aside: reads go to the cache first and recompute from completed
sessions on a miss; session completions call `invalidate(group_id)` and the
next read repopulates. Concurrent misses may recompute the same board; the
result only depends on the stored sessions, so the last write wins. A board
computed across an invalidation is returned but not cached.
"""
import re
from datetime import date, datetime, time, timedelta, timezone
from typing import Dict, List, Optional, Tuple

from pydantic import ValidationError

from studysync.cache.leaderboard import leaderboard_key
from studysync.core.clock import Clock, SystemClock, ensure_aware_utc
from studysync.core.exceptions import InvalidWeekKey
from studysync.core.logging import get_logger
from studysync.crud.base import LeaderboardCache, SessionStore, UserStore
from studysync.models.session import SessionInDB
from studysync.schemas.leaderboard import LeaderboardEntry, WeeklyLeaderboard

logger = get_logger(__name__)

WEEK_KEY_RE = re.compile(r"^(\d{4})-W(\d{1,2})$")


def week_key_for(moment: datetime) -> str:
    year, week, _ = ensure_aware_utc(moment).isocalendar()
    return f"{year}-W{week:02d}"


def parse_week_key(week: str) -> Tuple[str, date]:
    """'2025-W03' -> ('2025-W03', Monday of that ISO week)."""
    match = WEEK_KEY_RE.match(week.strip())
    if not match:
        raise InvalidWeekKey(f"Invalid week key: {week!r}")
    year, number = int(match.group(1)), int(match.group(2))
    try:
        monday = date.fromisocalendar(year, number, 1)
    except ValueError as e:
        raise InvalidWeekKey(f"Invalid week key: {week!r}") from e
    return f"{year}-W{number:02d}", monday


def week_bounds(monday: date) -> Tuple[datetime, datetime]:
    start = datetime.combine(monday, time.min, tzinfo=timezone.utc)
    return start, start + timedelta(days=7)


def rank_sessions(sessions: List[SessionInDB], limit: int) -> Tuple[List[dict], int]:
    """
    Per-user totals, highest first. Ties on total are ordered by user_id
    and share a dense rank. Returns (top `limit` rows, participant count).
    """
    per_user: Dict[str, List[int]] = {}
    for s in sessions:
        per_user.setdefault(s.user_id, []).append(s.duration_seconds or 0)

    rows = [
        {
            "user_id": user_id,
            "total_seconds": sum(durations),
            "session_count": len(durations),
            "average_duration": sum(durations) / len(durations),
            "longest_session": max(durations),
        }
        for user_id, durations in per_user.items()
    ]
    rows.sort(key=lambda r: (-r["total_seconds"], r["user_id"]))

    rank = 0
    previous_total = None
    for row in rows:
        if row["total_seconds"] != previous_total:
            rank += 1
            previous_total = row["total_seconds"]
        row["rank"] = rank

    return rows[:limit], len(rows)


class LeaderboardAggregator:
    def __init__(
        self,
        sessions: SessionStore,
        users: UserStore,
        cache: LeaderboardCache,
        clock: Optional[Clock] = None,
        size: int = 50,
    ):
        self.sessions = sessions
        self.users = users
        self.cache = cache
        self.clock = clock or SystemClock()
        self.size = size

    async def get_weekly_leaderboard(
        self,
        group_id: str,
        week: Optional[str] = "",
        current_user_id: Optional[str] = None,
    ) -> WeeklyLeaderboard:
        if not week:
            week = week_key_for(self.clock.now())
        week, monday = parse_week_key(week)
        key = leaderboard_key(group_id, week)

        board = await self._cached(key)
        if board is None:
            # read before computing: an invalidation during the compute bumps it
            generation = await self.cache.generation(group_id)
            board = await self._compute(group_id, week, monday)
            stored = await self.cache.set_if_generation(key, board.model_dump_json(), group_id, generation)
            if not stored:
                logger.info(
                    "leaderboard changed while computing, not cached",
                    extra={"group_id": group_id, "week": week},
                )

        return self._personalize(board, current_user_id)

    async def invalidate(self, group_id: str) -> int:
        await self.cache.bump_generation(group_id)
        evicted = await self.cache.evict_prefix(leaderboard_key(group_id))
        logger.info("leaderboard invalidated", extra={"group_id": group_id, "count": evicted})
        return evicted

    async def _cached(self, key: str) -> Optional[WeeklyLeaderboard]:
        raw = await self.cache.get(key)
        if raw is None:
            return None
        try:
            return WeeklyLeaderboard.model_validate_json(raw)
        except ValidationError as e:
            logger.warning(f"Discarding unreadable cached leaderboard {key}: {e}")
            return None

    async def _compute(self, group_id: str, week: str, monday: date) -> WeeklyLeaderboard:
        week_start, week_end = week_bounds(monday)
        sessions = await self.sessions.find_completed_by_group_in_range(group_id, week_start, week_end)

        # users without a profile are dropped before ranking so ranks stay dense
        user_ids = sorted({s.user_id for s in sessions})
        users = {u.id: u for u in await self.users.find_many(user_ids)}
        sessions = [s for s in sessions if s.user_id in users]
        rows, participants = rank_sessions(sessions, self.size)

        entries: List[LeaderboardEntry] = []
        for row in rows:
            user = users[row["user_id"]]
            entries.append(
                LeaderboardEntry(
                    **row,
                    display_name=user.display_name,
                    avatar_url=user.avatar_url,
                    streak_days=user.analytics.current_streak,
                )
            )

        group_average = 0.0
        if entries:
            group_average = sum(e.total_seconds for e in entries) / len(entries)

        logger.info(
            "leaderboard recomputed",
            extra={"group_id": group_id, "week": week, "count": len(entries)},
        )
        return WeeklyLeaderboard(
            group_id=group_id,
            week=week,
            week_start=week_start,
            week_end=week_end,
            entries=entries,
            total_participants=participants,
            group_average=group_average,
        )

    @staticmethod
    def _personalize(board: WeeklyLeaderboard, current_user_id: Optional[str]) -> WeeklyLeaderboard:
        if current_user_id is None:
            return board
        entries = [
            e.model_copy(update={"is_current_user": e.user_id == current_user_id})
            for e in board.entries
        ]
        mine = next((e for e in entries if e.is_current_user), None)
        return board.model_copy(
            update={
                "entries": entries,
                "my_entry": mine,
                "my_rank": mine.rank if mine else None,
            }
        )
