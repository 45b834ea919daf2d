"""Anti-cheat scoring for finished study sessions.

`AnomalyScorer.validate` is a pure function of the session, the owner's
rolling analytics, the owner's recent completed sessions and the owner's
known device ids. It does no I/O; the caller fetches everything up front.
The only ambient input is the clock used for `validated_at`.

Composite score::

    0.4 * duration + 0.2 * time_of_day + 0.3 * pattern + 0.1 * device

Flags are raised independently of the score. Anything flagged is still a
finished session; the lifecycle manager only tags it `suspicious`.
"""
from datetime import datetime, time, timedelta
from typing import Iterable, List, Optional, Sequence

from studysync.core.clock import Clock, SystemClock, ensure_aware_utc
from studysync.models.session import SessionInDB, SessionValidation, ValidationRules
from studysync.models.user import UserAnalytics

DURATION_WEIGHT = 0.4
TIME_WEIGHT = 0.2
PATTERN_WEIGHT = 0.3
DEVICE_WEIGHT = 0.1

# start times strictly inside this UTC window are unusual
UNUSUAL_HOURS_START = time(2, 0)
UNUSUAL_HOURS_END = time(5, 0)
NIGHT_OWL_MARKERS = ("00:00", "01:00", "02:00", "03:00")

RAPID_SUCCESSION_WINDOW = timedelta(hours=1)
RAPID_SUCCESSION_LIMIT = 3

WEEKEND_MARATHON_SECONDS = 28800  # 8h
VERY_SHORT_SECONDS = 60
ROUND_NUMBER_SECONDS = 3600

FLAG_EXCESSIVE_DURATION = "excessive_duration"
FLAG_ROUND_NUMBER = "round_number_duration"
FLAG_VERY_SHORT = "very_short_session"
FLAG_OVERNIGHT = "overnight_session"
FLAG_WEEKEND_MARATHON = "weekend_marathon"
FLAG_AUTO_CLOSED_STALE = "auto_closed_stale"


def in_unusual_hours(start_time: datetime) -> bool:
    t = ensure_aware_utc(start_time).time()
    return UNUSUAL_HOURS_START < t < UNUSUAL_HOURS_END


def is_round_number(seconds: int) -> bool:
    return seconds >= ROUND_NUMBER_SECONDS and seconds % ROUND_NUMBER_SECONDS == 0


def is_night_owl(analytics: UserAnalytics) -> bool:
    return any(
        marker in label
        for label in analytics.preferred_study_times or []
        for marker in NIGHT_OWL_MARKERS
    )


class AnomalyScorer:
    def __init__(self, max_session_duration: int = 14400, clock: Optional[Clock] = None):
        self.max_session_duration = max_session_duration
        self.clock = clock or SystemClock()

    def validate(
        self,
        session: SessionInDB,
        analytics: Optional[UserAnalytics],
        history: Sequence[SessionInDB],
        known_device_ids: Iterable[str] = (),
    ) -> SessionValidation:
        analytics = analytics or UserAnalytics()
        known = set(known_device_ids)
        others = [s for s in history if s.id != session.id]
        now = self.clock.now()

        return SessionValidation(
            server_validated=True,
            anomaly_score=self.anomaly_score(session, analytics, others, known),
            flags=self.flags(session),
            rules=self.rules(session, others, now),
            validated_at=now,
        )

    # --- composite score ---

    def anomaly_score(
        self,
        session: SessionInDB,
        analytics: UserAnalytics,
        history: Sequence[SessionInDB],
        known_device_ids: set,
    ) -> float:
        return (
            self.duration_score(session, analytics) * DURATION_WEIGHT
            + self.time_score(session, analytics) * TIME_WEIGHT
            + self.pattern_score(session, history) * PATTERN_WEIGHT
            + self.device_score(session, known_device_ids) * DEVICE_WEIGHT
        )

    def duration_score(self, session: SessionInDB, analytics: UserAnalytics) -> float:
        duration = session.duration_seconds
        if duration is None:
            return 0.0
        if duration > self.max_session_duration:
            return 1.0

        avg = analytics.average_session_duration
        if avg > 0:
            relative_deviation = abs(duration - avg) / avg
            return min(relative_deviation / 3.0, 1.0)
        return 0.0

    def time_score(self, session: SessionInDB, analytics: UserAnalytics) -> float:
        if in_unusual_hours(session.start_time) and not is_night_owl(analytics):
            return 0.8
        return 0.0

    def pattern_score(self, session: SessionInDB, history: Sequence[SessionInDB]) -> float:
        start = ensure_aware_utc(session.start_time)
        window_start = start - RAPID_SUCCESSION_WINDOW
        recent = [
            s for s in history
            if s.id != session.id and window_start <= ensure_aware_utc(s.start_time) < start
        ]
        if len(recent) > RAPID_SUCCESSION_LIMIT:
            return 0.9
        return 0.0

    def device_score(self, session: SessionInDB, known_device_ids: set) -> float:
        device_id = session.source.device_id
        if not device_id:
            return 0.5
        return 0.0 if device_id in known_device_ids else 0.3

    # --- flags ---

    def flags(self, session: SessionInDB) -> List[str]:
        flags: List[str] = []
        duration = session.duration_seconds

        if duration is not None:
            if duration > self.max_session_duration:
                flags.append(FLAG_EXCESSIVE_DURATION)
            if is_round_number(duration):
                flags.append(FLAG_ROUND_NUMBER)
            if duration < VERY_SHORT_SECONDS:
                flags.append(FLAG_VERY_SHORT)

        if self._is_overnight(session):
            flags.append(FLAG_OVERNIGHT)
        if self._is_weekend_marathon(session):
            flags.append(FLAG_WEEKEND_MARATHON)
        return flags

    @staticmethod
    def _is_overnight(session: SessionInDB) -> bool:
        if session.start_time is None or session.end_time is None:
            return False
        return ensure_aware_utc(session.start_time).date() != ensure_aware_utc(session.end_time).date()

    @staticmethod
    def _is_weekend_marathon(session: SessionInDB) -> bool:
        if session.start_time is None or session.duration_seconds is None:
            return False
        # Saturday=5, Sunday=6
        is_weekend = ensure_aware_utc(session.start_time).weekday() >= 5
        return is_weekend and session.duration_seconds > WEEKEND_MARATHON_SECONDS

    # --- rule checks ---

    def rules(self, session: SessionInDB, history: Sequence[SessionInDB], now: datetime) -> ValidationRules:
        duration = session.duration_seconds
        return ValidationRules(
            max_duration=duration is None or duration <= self.max_session_duration,
            reasonable_hours=not in_unusual_hours(session.start_time),
            device_consistent=bool(session.source.device_id),
            # no per-user timezone check yet
            timezone_match=True,
            no_overlap=not self._overlaps(session, history, now),
        )

    @staticmethod
    def _overlaps(session: SessionInDB, history: Sequence[SessionInDB], now: datetime) -> bool:
        """
        Half-open intervals [start, end): a session ending exactly when the
        candidate starts does not overlap it.
        """
        start = ensure_aware_utc(session.start_time)
        end = ensure_aware_utc(session.end_time or now)
        for other in history:
            if other.id == session.id or other.end_time is None:
                continue
            other_start = ensure_aware_utc(other.start_time)
            other_end = ensure_aware_utc(other.end_time)
            if other_start < end and start < other_end:
                return True
        return False
