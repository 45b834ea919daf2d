# backend/studysync/schemas/leaderboard.py

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel


class LeaderboardEntry(BaseModel):
    user_id: str
    display_name: str = ""
    avatar_url: Optional[str] = None
    total_seconds: int
    session_count: int
    average_duration: float
    longest_session: int
    rank: int
    streak_days: int = 0
    is_current_user: bool = False


class WeeklyLeaderboard(BaseModel):
    """
    Ranked totals for one group over one ISO week, [week_start, week_end) UTC.
    Recomputable from the sessions collection at any time; only ever cached.
    """
    group_id: str
    week: str  # "2025-W03"
    week_start: datetime
    week_end: datetime
    entries: List[LeaderboardEntry]
    total_participants: int
    group_average: float = 0.0

    # filled per reader, never cached
    my_rank: Optional[int] = None
    my_entry: Optional[LeaderboardEntry] = None
