"""Study session state machine.

    active --end--------> completed | suspicious
    active --force_close-> invalid

Every transition is a compare-and-set on (status, version) through the
session store, so a user's `end` and the sweeper's forced close can race on
the same session and exactly one of them lands. `start` relies on the store's
atomic insert-if-no-active to keep at most one active session per user.
"""
import uuid
from datetime import datetime, timedelta
from typing import List, Optional

from studysync.core.clock import Clock, SystemClock, ensure_aware_utc
from studysync.core.exceptions import (
    ActiveSessionExists,
    ConcurrentModificationLost,
    NoActiveSession,
    UserNotFound,
)
from studysync.core.logging import get_logger
from studysync.crud.base import SessionStore, UserStore
from studysync.models.session import (
    TERMINAL_STATUSES,
    SessionInDB,
    SessionMetadata,
    SessionSource,
    SessionStatus,
    SessionValidation,
)
from studysync.schemas.session import (
    SessionEndRequest,
    SessionPage,
    SessionRead,
    SessionStartRequest,
    serialize_session,
)
from studysync.services.analytics import UserAnalyticsUpdater
from studysync.services.anomaly import FLAG_AUTO_CLOSED_STALE, RAPID_SUCCESSION_WINDOW, AnomalyScorer
from studysync.services.leaderboard import LeaderboardAggregator

logger = get_logger(__name__)


class SessionLifecycleManager:
    def __init__(
        self,
        sessions: SessionStore,
        users: UserStore,
        scorer: AnomalyScorer,
        analytics: UserAnalyticsUpdater,
        leaderboard: LeaderboardAggregator,
        clock: Optional[Clock] = None,
        max_session_duration: int = 14400,
        stale_after_hours: int = 8,
        anomaly_threshold: float = 0.7,
        start_retries: int = 3,
    ):
        self.sessions = sessions
        self.users = users
        self.scorer = scorer
        self.analytics = analytics
        self.leaderboard = leaderboard
        self.clock = clock or SystemClock()
        self.max_session_duration = max_session_duration
        self.stale_after = timedelta(hours=stale_after_hours)
        self.anomaly_threshold = anomaly_threshold
        self.start_retries = start_retries

    # --- staleness ---

    def is_stale(self, session: SessionInDB, now: Optional[datetime] = None) -> bool:
        now = now or self.clock.now()
        return ensure_aware_utc(now) - ensure_aware_utc(session.start_time) >= self.stale_after

    def stale_cutoff(self, now: Optional[datetime] = None) -> datetime:
        """Sessions started at or before this instant are stale."""
        return (now or self.clock.now()) - self.stale_after

    # START
    async def start(self, user_id: str, request: Optional[SessionStartRequest] = None) -> SessionRead:
        request = request or SessionStartRequest()

        user = await self.users.find_by_id(user_id)
        if user is None:
            raise UserNotFound(f"User {user_id} not found")

        for attempt in range(1, self.start_retries + 1):
            # 1) an existing active session blocks the start unless abandoned
            active = await self.sessions.find_active_by_user(user_id)
            if active is not None:
                if not self.is_stale(active):
                    raise ActiveSessionExists()
                await self.force_close(active)

            # 2) insert; the store rejects it if another start got there first
            now = self.clock.now()
            candidate = SessionInDB(
                id=uuid.uuid4().hex,
                user_id=user_id,
                group_id=request.group_id,
                start_time=now,
                status=SessionStatus.ACTIVE,
                source=SessionSource(
                    platform=request.platform or "mobile",
                    app_version=request.app_version,
                    device_id=request.device_id,
                ),
                metadata=SessionMetadata(
                    study_subject=request.study_subject,
                    location=request.location,
                ),
            )
            try:
                session = await self.sessions.insert_active(candidate)
            except ActiveSessionExists:
                logger.info(
                    f"start lost insert race, re-reading ({attempt}/{self.start_retries})",
                    extra={"user_id": user_id},
                )
                continue

            logger.info(
                "Session started",
                extra={"user_id": user_id, "session_id": session.id, "group_id": session.group_id},
            )
            return serialize_session(session, now)

        raise ConcurrentModificationLost(f"Could not start a session for user {user_id}")

    # END
    async def end(self, user_id: str, request: Optional[SessionEndRequest] = None) -> SessionRead:
        session = await self.sessions.find_active_by_user(user_id)
        if session is None:
            raise NoActiveSession()

        now = self.clock.now()
        start = ensure_aware_utc(session.start_time)
        duration = max(0, int((ensure_aware_utc(now) - start).total_seconds()))

        finished = session.model_copy(
            update={
                "end_time": now,
                "duration_seconds": duration,
                "metadata": self._merge_metadata(session.metadata, request),
            }
        )

        # everything the scorer needs is fetched here; the scorer itself does no I/O
        user = await self.users.find_by_id(user_id)
        lookback = max(timedelta(seconds=self.max_session_duration), RAPID_SUCCESSION_WINDOW)
        history = await self.sessions.find_completed_by_user_in_range(user_id, start - lookback, now)
        validation = self.scorer.validate(
            finished,
            user.analytics if user else None,
            history,
            user.known_device_ids if user else (),
        )

        status = SessionStatus.COMPLETED
        if validation.anomaly_score > self.anomaly_threshold or validation.flags:
            status = SessionStatus.SUSPICIOUS
            logger.warning(
                f"Suspicious session detected, anomaly score: {validation.anomaly_score:.3f}, flags: {validation.flags}",
                extra={"user_id": user_id, "session_id": session.id},
            )

        finished = finished.model_copy(update={"validation": validation, "status": status})
        saved = await self.sessions.transition(finished, SessionStatus.ACTIVE, session.version)
        if saved is None:
            # the sweeper (or a parallel end) closed it between our read and write
            raise NoActiveSession("Session was closed concurrently")

        logger.info(
            "Session ended",
            extra={"user_id": user_id, "session_id": saved.id, "duration_seconds": duration},
        )
        await self._after_completion(saved)
        return serialize_session(saved, now)

    @staticmethod
    def _merge_metadata(metadata: SessionMetadata, request: Optional[SessionEndRequest]) -> SessionMetadata:
        if request is None:
            return metadata
        provided = request.model_dump(exclude_none=True)
        if not provided:
            return metadata
        return metadata.model_copy(update=provided)

    async def _after_completion(self, session: SessionInDB) -> None:
        """
        Downstream refresh. The session is already persisted; failures here
        are logged and never undo it.
        """
        try:
            await self.analytics.update(session.user_id, session)
        except Exception:
            logger.exception(
                "User analytics update failed",
                extra={"user_id": session.user_id, "session_id": session.id},
            )

        if session.group_id:
            try:
                await self.leaderboard.invalidate(session.group_id)
            except Exception:
                logger.exception(
                    "Leaderboard invalidation failed",
                    extra={"group_id": session.group_id, "session_id": session.id},
                )

    # FORCED CLOSE (stale)
    async def force_close(self, session: SessionInDB) -> Optional[SessionInDB]:
        """
        Close an abandoned session as invalid. The recorded duration is the
        configured maximum, not the elapsed time. Returns None when the
        session was no longer active at the observed version.
        """
        now = self.clock.now()
        closed = session.model_copy(
            update={
                "end_time": now,
                "duration_seconds": self.max_session_duration,
                "status": SessionStatus.INVALID,
                "validation": SessionValidation(
                    server_validated=True,
                    anomaly_score=1.0,
                    flags=[FLAG_AUTO_CLOSED_STALE],
                    validated_at=now,
                ),
            }
        )
        saved = await self.sessions.transition(closed, SessionStatus.ACTIVE, session.version)
        if saved is None:
            logger.debug("Stale session already closed", extra={"session_id": session.id})
            return None

        logger.info("Auto-closed stale session", extra={"user_id": session.user_id, "session_id": session.id})
        return saved

    # READ CURRENT
    async def get_active(self, user_id: str) -> Optional[SessionRead]:
        session = await self.sessions.find_active_by_user(user_id)
        if session is None:
            return None
        return serialize_session(session, self.clock.now())

    # READ HISTORY
    async def get_history(self, user_id: str, page: int = 0, size: int = 20) -> SessionPage:
        page = max(0, page)
        size = max(1, min(size, 100))
        items, total = await self.sessions.find_by_user_order_by_start_desc(
            user_id, page, size, statuses=TERMINAL_STATUSES
        )
        return SessionPage(
            items=[serialize_session(s) for s in items],
            page=page,
            size=size,
            total=total,
        )

    async def get_by_date_range(self, user_id: str, start: datetime, end: datetime) -> List[SessionRead]:
        sessions = await self.sessions.find_completed_by_user_in_range(
            user_id, ensure_aware_utc(start), ensure_aware_utc(end)
        )
        sessions = sorted(sessions, key=lambda s: ensure_aware_utc(s.start_time), reverse=True)
        return [serialize_session(s) for s in sessions]

    async def list_suspicious(self, threshold: Optional[float] = None, limit: int = 100) -> List[SessionRead]:
        threshold = self.anomaly_threshold if threshold is None else threshold
        return [serialize_session(s) for s in await self.sessions.find_suspicious(threshold, limit)]
