"""Shared fixtures: a hand-driven clock and in-memory stores honouring the
same contracts as the Mongo adapters (atomic insert-if-no-active and
version-checked transitions)."""
import asyncio
import uuid
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional, Sequence, Tuple

import pytest

from studysync.cache.leaderboard import InMemoryLeaderboardCache
from studysync.core.config import Settings
from studysync.core.exceptions import ActiveSessionExists
from studysync.models.session import SessionInDB, SessionSource, SessionStatus
from studysync.models.user import DeviceFingerprint, UserAnalytics, UserInDB
from studysync.services.container import build_services

# Monday 2026-01-05 09:00 UTC, ISO week 2026-W02
MONDAY_9AM = datetime(2026, 1, 5, 9, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, start: datetime = MONDAY_9AM):
        self.current = start

    def now(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> datetime:
        self.current = self.current + timedelta(**kwargs)
        return self.current

    def set(self, moment: datetime) -> None:
        self.current = moment


class InMemorySessionStore:
    def __init__(self, clock: FakeClock):
        self.clock = clock
        self.docs: Dict[str, SessionInDB] = {}
        self._lock = asyncio.Lock()

    async def ensure_indexes(self) -> None:
        return None

    async def insert_active(self, session: SessionInDB) -> SessionInDB:
        async with self._lock:
            if any(
                s.user_id == session.user_id and s.status == SessionStatus.ACTIVE
                for s in self.docs.values()
            ):
                raise ActiveSessionExists()
            now = self.clock.now()
            stored = session.model_copy(
                update={"status": SessionStatus.ACTIVE, "version": 0, "created_at": now, "updated_at": now}
            )
            self.docs[stored.id] = stored
            return stored

    async def transition(self, session, expected_status, expected_version):
        async with self._lock:
            current = self.docs.get(session.id)
            if current is None or current.status != expected_status or current.version != expected_version:
                return None
            stored = session.model_copy(
                update={"version": expected_version + 1, "updated_at": self.clock.now()}
            )
            self.docs[stored.id] = stored
            return stored

    async def find_by_id(self, session_id: str) -> Optional[SessionInDB]:
        return self.docs.get(session_id)

    async def find_active_by_user(self, user_id: str) -> Optional[SessionInDB]:
        # yield so concurrent callers interleave between read and insert
        await asyncio.sleep(0)
        for s in self.docs.values():
            if s.user_id == user_id and s.status == SessionStatus.ACTIVE:
                return s
        return None

    def _in_range(self, s: SessionInDB, start: datetime, end: datetime) -> bool:
        return start <= s.start_time < end

    async def find_completed_by_user_in_range(self, user_id, start, end) -> List[SessionInDB]:
        found = [
            s for s in self.docs.values()
            if s.user_id == user_id and s.status == SessionStatus.COMPLETED and self._in_range(s, start, end)
        ]
        return sorted(found, key=lambda s: s.start_time, reverse=True)

    async def find_completed_by_group_in_range(self, group_id, start, end) -> List[SessionInDB]:
        return [
            s for s in self.docs.values()
            if s.group_id == group_id and s.status == SessionStatus.COMPLETED and self._in_range(s, start, end)
        ]

    async def find_all_stale_active(self, before: datetime) -> List[SessionInDB]:
        return [
            s for s in self.docs.values()
            if s.status == SessionStatus.ACTIVE and s.start_time <= before
        ]

    async def count_by_user_in_range(self, user_id, start, end, statuses: Sequence[SessionStatus] = ()) -> int:
        return sum(
            1 for s in self.docs.values()
            if s.user_id == user_id
            and self._in_range(s, start, end)
            and (not statuses or s.status in statuses)
        )

    async def find_by_user_order_by_start_desc(
        self, user_id, page, size, statuses: Sequence[SessionStatus] = ()
    ) -> Tuple[List[SessionInDB], int]:
        found = sorted(
            (s for s in self.docs.values() if s.user_id == user_id and (not statuses or s.status in statuses)),
            key=lambda s: s.start_time,
            reverse=True,
        )
        return found[page * size:(page + 1) * size], len(found)

    async def find_suspicious(self, threshold: float, limit: int = 100) -> List[SessionInDB]:
        found = [s for s in self.docs.values() if s.validation.anomaly_score >= threshold]
        return sorted(found, key=lambda s: s.start_time, reverse=True)[:limit]

    # test helpers

    def add(self, session: SessionInDB) -> SessionInDB:
        self.docs[session.id] = session
        return session

    def active_for(self, user_id: str) -> List[SessionInDB]:
        return [s for s in self.docs.values() if s.user_id == user_id and s.status == SessionStatus.ACTIVE]


class InMemoryUserStore:
    def __init__(self):
        self.users: Dict[str, UserInDB] = {}
        self.saves = 0

    async def find_by_id(self, user_id: str) -> Optional[UserInDB]:
        return self.users.get(user_id)

    async def find_many(self, user_ids: Sequence[str]) -> List[UserInDB]:
        return [self.users[u] for u in user_ids if u in self.users]

    async def save(self, user: UserInDB, expected_version: int) -> Optional[UserInDB]:
        current = self.users.get(user.id)
        if current is None or current.version != expected_version:
            return None
        stored = user.model_copy(update={"version": expected_version + 1})
        self.users[user.id] = stored
        self.saves += 1
        return stored

    def add(self, user_id: str, display_name: str = "", devices=(), **analytics) -> UserInDB:
        user = UserInDB(
            id=user_id,
            display_name=display_name or user_id,
            device_fingerprints=[DeviceFingerprint(device_id=d) for d in devices],
            analytics=UserAnalytics(**analytics),
        )
        self.users[user_id] = user
        return user


def make_session(
    user_id: str,
    start: datetime,
    duration_seconds: Optional[int] = None,
    status: SessionStatus = SessionStatus.COMPLETED,
    group_id: Optional[str] = None,
    device_id: Optional[str] = None,
    session_id: Optional[str] = None,
) -> SessionInDB:
    end = start + timedelta(seconds=duration_seconds) if duration_seconds is not None else None
    return SessionInDB(
        id=session_id or uuid.uuid4().hex,
        user_id=user_id,
        group_id=group_id,
        start_time=start,
        end_time=end,
        duration_seconds=duration_seconds,
        status=status,
        source=SessionSource(device_id=device_id),
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def session_store(clock):
    return InMemorySessionStore(clock)


@pytest.fixture
def user_store():
    return InMemoryUserStore()


@pytest.fixture
def cache():
    return InMemoryLeaderboardCache()


@pytest.fixture
def test_settings():
    return Settings(
        MONGO_URI="mongodb://unused",
        MAX_SESSION_DURATION=14400,
        STALE_SESSION_HOURS=8,
        ANOMALY_THRESHOLD=0.7,
        SWEEP_INTERVAL_SECONDS=300,
        LEADERBOARD_SIZE=50,
    )


@pytest.fixture
def services(session_store, user_store, cache, clock, test_settings):
    return build_services(session_store, user_store, cache, clock=clock, config=test_settings)
