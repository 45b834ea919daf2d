"""Session lifecycle: start / end / queries and the single-active invariant."""
import asyncio
from datetime import timedelta

import pytest

from studysync.cache.leaderboard import leaderboard_key
from studysync.core.exceptions import ActiveSessionExists, NoActiveSession, UserNotFound
from studysync.models.session import SessionStatus
from studysync.schemas.session import SessionEndRequest, SessionStartRequest
from studysync.services.anomaly import FLAG_AUTO_CLOSED_STALE, FLAG_ROUND_NUMBER

from conftest import MONDAY_9AM, make_session


@pytest.fixture
def lifecycle(services, user_store):
    user_store.add("u1", "Aisha", devices=["phone-1"])
    user_store.add("u2", "Adam")
    return services.sessions


class TestStart:
    async def test_start_creates_active_session(self, lifecycle, session_store, clock):
        read = await lifecycle.start(
            "u1",
            SessionStartRequest(group_id="g1", study_subject="Algebra", device_id="phone-1", app_version="1.2.0"),
        )

        assert read.status == SessionStatus.ACTIVE
        assert read.start_time == clock.now()
        assert read.group_id == "g1"
        assert read.study_subject == "Algebra"
        assert read.current_duration == 0

        stored = await session_store.find_by_id(read.id)
        assert stored.source.platform == "mobile"
        assert stored.source.device_id == "phone-1"
        assert stored.source.app_version == "1.2.0"
        assert stored.version == 0

    async def test_unknown_user_rejected(self, lifecycle):
        with pytest.raises(UserNotFound):
            await lifecycle.start("ghost")

    async def test_second_start_rejected(self, lifecycle, clock):
        await lifecycle.start("u1")
        clock.advance(minutes=30)
        with pytest.raises(ActiveSessionExists):
            await lifecycle.start("u1")

    async def test_other_users_are_independent(self, lifecycle, session_store):
        await lifecycle.start("u1")
        await lifecycle.start("u2")
        assert len(session_store.active_for("u1")) == 1
        assert len(session_store.active_for("u2")) == 1

    async def test_concurrent_starts_leave_one_active(self, lifecycle, session_store):
        results = await asyncio.gather(*(lifecycle.start("u1") for _ in range(5)), return_exceptions=True)

        started = [r for r in results if not isinstance(r, Exception)]
        rejected = [r for r in results if isinstance(r, ActiveSessionExists)]
        assert len(started) == 1
        assert len(rejected) == 4
        assert len(session_store.active_for("u1")) == 1

    async def test_stale_active_session_is_closed_first(self, lifecycle, session_store, clock):
        old = await lifecycle.start("u1")
        clock.advance(hours=8)

        new = await lifecycle.start("u1")

        closed = await session_store.find_by_id(old.id)
        assert closed.status == SessionStatus.INVALID
        assert closed.duration_seconds == 14400
        assert closed.validation.flags == [FLAG_AUTO_CLOSED_STALE]
        assert new.status == SessionStatus.ACTIVE
        assert session_store.active_for("u1")[0].id == new.id

    async def test_just_under_stale_still_blocks(self, lifecycle, clock):
        await lifecycle.start("u1")
        clock.advance(hours=7, minutes=59, seconds=59)
        with pytest.raises(ActiveSessionExists):
            await lifecycle.start("u1")


class TestEnd:
    async def test_end_without_active_session(self, lifecycle):
        with pytest.raises(NoActiveSession):
            await lifecycle.end("u1")

    async def test_clean_session_completes(self, lifecycle, session_store, clock):
        started = await lifecycle.start("u1", SessionStartRequest(device_id="phone-1"))
        clock.advance(minutes=25, seconds=13)

        ended = await lifecycle.end("u1", SessionEndRequest(mood="focused", notes="ch. 3", productivity=4))

        assert ended.id == started.id
        assert ended.status == SessionStatus.COMPLETED
        assert ended.duration_seconds == 1513
        assert ended.end_time == clock.now()
        assert ended.current_duration is None
        assert ended.mood == "focused"
        assert ended.notes == "ch. 3"
        assert ended.productivity == 4
        assert ended.validation.anomaly_score == pytest.approx(0.0)
        assert ended.validation.flags == []

        stored = await session_store.find_by_id(started.id)
        assert stored.version == 1
        assert stored.validation.rules.device_consistent

    async def test_metadata_merge_keeps_start_fields(self, lifecycle, clock):
        await lifecycle.start("u1", SessionStartRequest(study_subject="Physics", location="library"))
        clock.advance(minutes=20, seconds=1)
        ended = await lifecycle.end("u1", SessionEndRequest(productivity=2))

        assert ended.study_subject == "Physics"
        assert ended.location == "library"
        assert ended.productivity == 2
        assert ended.mood is None

    async def test_any_flag_makes_session_suspicious(self, lifecycle, clock):
        # 00:00 UTC, exactly one hour, no device id, no history
        clock.set(MONDAY_9AM.replace(hour=0))
        await lifecycle.start("u2")
        clock.advance(seconds=3600)

        ended = await lifecycle.end("u2")

        assert ended.validation.anomaly_score == pytest.approx(0.05)
        assert ended.validation.flags == [FLAG_ROUND_NUMBER]
        assert ended.status == SessionStatus.SUSPICIOUS

    async def test_high_score_makes_session_suspicious(self, lifecycle, session_store, clock):
        await lifecycle.start("u2")
        clock.advance(hours=4, seconds=1)

        ended = await lifecycle.end("u2")

        assert ended.status == SessionStatus.SUSPICIOUS
        assert "excessive_duration" in ended.validation.flags
        assert ended.validation.anomaly_score > 0.4

    async def test_start_right_after_end_succeeds(self, lifecycle, clock):
        await lifecycle.start("u1")
        clock.advance(minutes=10, seconds=3)
        await lifecycle.end("u1")

        again = await lifecycle.start("u1")
        assert again.status == SessionStatus.ACTIVE

    async def test_end_updates_analytics(self, lifecycle, user_store, clock):
        await lifecycle.start("u1", SessionStartRequest(device_id="phone-1"))
        clock.advance(minutes=25, seconds=13)
        await lifecycle.end("u1")

        analytics = user_store.users["u1"].analytics
        assert analytics.total_study_time == 1513
        assert analytics.average_session_duration == 1513
        assert analytics.last_activity_date == clock.now()
        assert analytics.current_streak == 1

    async def test_end_invalidates_group_leaderboard(self, lifecycle, cache, clock):
        await cache.set(leaderboard_key("g1", "2026-W02"), "{}")
        await cache.set(leaderboard_key("g1", "2026-W01"), "{}")
        await cache.set(leaderboard_key("g2", "2026-W02"), "{}")

        await lifecycle.start("u1", SessionStartRequest(group_id="g1"))
        clock.advance(minutes=15, seconds=2)
        await lifecycle.end("u1")

        assert await cache.get(leaderboard_key("g1", "2026-W02")) is None
        assert await cache.get(leaderboard_key("g1", "2026-W01")) is None
        assert await cache.get(leaderboard_key("g2", "2026-W02")) == "{}"

    async def test_downstream_failure_does_not_undo_completion(self, lifecycle, services, session_store, clock):
        async def boom(*args, **kwargs):
            raise RuntimeError("analytics down")

        services.analytics.update = boom
        services.leaderboard.invalidate = boom

        started = await lifecycle.start("u1", SessionStartRequest(group_id="g1", device_id="phone-1"))
        clock.advance(minutes=25, seconds=13)
        ended = await lifecycle.end("u1")

        assert ended.status == SessionStatus.COMPLETED
        assert (await session_store.find_by_id(started.id)).status == SessionStatus.COMPLETED

    async def test_end_loses_to_concurrent_close(self, lifecycle, session_store, clock):
        started = await lifecycle.start("u1")
        clock.advance(hours=9)
        snapshot = await session_store.find_by_id(started.id)

        # sweeper lands between end's read and its write
        await lifecycle.force_close(snapshot)

        async def stale_read(user_id):
            return snapshot

        session_store.find_active_by_user = stale_read

        with pytest.raises(NoActiveSession):
            await lifecycle.end("u1")
        stored = await session_store.find_by_id(started.id)
        assert stored.status == SessionStatus.INVALID
        assert stored.validation.flags == [FLAG_AUTO_CLOSED_STALE]


class TestQueries:
    async def test_get_active_reports_live_duration(self, lifecycle, clock):
        assert await lifecycle.get_active("u1") is None

        await lifecycle.start("u1")
        clock.advance(minutes=12)

        active = await lifecycle.get_active("u1")
        assert active.current_duration == 720
        assert active.duration_seconds is None

    async def test_history_is_newest_first_and_paged(self, lifecycle, session_store):
        for hours in (1, 2, 3, 4, 5):
            session_store.add(make_session("u1", MONDAY_9AM - timedelta(hours=hours), 600))
        session_store.add(make_session("u1", MONDAY_9AM, status=SessionStatus.ACTIVE))

        first = await lifecycle.get_history("u1", page=0, size=2)
        second = await lifecycle.get_history("u1", page=1, size=2)

        assert first.total == 5
        assert [s.start_time for s in first.items] == [
            MONDAY_9AM - timedelta(hours=1),
            MONDAY_9AM - timedelta(hours=2),
        ]
        assert [s.start_time for s in second.items] == [
            MONDAY_9AM - timedelta(hours=3),
            MONDAY_9AM - timedelta(hours=4),
        ]
        assert all(s.status != SessionStatus.ACTIVE for s in first.items + second.items)

    async def test_history_lists_every_terminal_status(self, lifecycle, session_store):
        for hours, status in ((1, SessionStatus.COMPLETED), (2, SessionStatus.SUSPICIOUS), (3, SessionStatus.INVALID)):
            session_store.add(make_session("u1", MONDAY_9AM - timedelta(hours=hours), 600, status=status))
        session_store.add(make_session("u1", MONDAY_9AM, status=SessionStatus.ACTIVE))

        page = await lifecycle.get_history("u1")

        assert [s.status for s in page.items] == [
            SessionStatus.COMPLETED,
            SessionStatus.SUSPICIOUS,
            SessionStatus.INVALID,
        ]

    async def test_date_range_returns_completed_only(self, lifecycle, session_store):
        day = MONDAY_9AM - timedelta(days=1)
        session_store.add(make_session("u1", day, 600))
        session_store.add(make_session("u1", day + timedelta(hours=2), 600))
        session_store.add(make_session("u1", day + timedelta(hours=3), 600, status=SessionStatus.SUSPICIOUS))
        session_store.add(make_session("u1", day - timedelta(days=3), 600))

        found = await lifecycle.get_by_date_range("u1", day, day + timedelta(days=1))

        assert [s.start_time for s in found] == [day + timedelta(hours=2), day]

    async def test_list_suspicious(self, lifecycle, clock):
        await lifecycle.start("u2")
        clock.advance(hours=5)
        ended = await lifecycle.end("u2")

        suspicious = await lifecycle.list_suspicious(threshold=0.4)
        assert [s.id for s in suspicious] == [ended.id]
