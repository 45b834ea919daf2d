# backend/studysync/schemas/session.py

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from studysync.core.clock import ensure_aware_utc
from studysync.models.session import SessionInDB, SessionStatus


def _strip_or_none(v: Optional[str]) -> Optional[str]:
    if v is None:
        return None
    if not isinstance(v, str):
        return v
    s = v.strip()
    return s or None


# --- request schemas ---

class SessionStartRequest(BaseModel):
    """
    Input of `start`. Everything is optional; the platform defaults to "mobile".
    """
    model_config = ConfigDict(str_strip_whitespace=True)

    group_id: Optional[str] = None
    study_subject: Optional[str] = None
    location: Optional[str] = None
    platform: Optional[str] = None
    app_version: Optional[str] = None
    device_id: Optional[str] = None

    @field_validator("group_id", "study_subject", "location", "platform", "app_version", "device_id")
    @classmethod
    def blank_to_none(cls, v: Optional[str]) -> Optional[str]:
        return _strip_or_none(v)


class SessionEndRequest(BaseModel):
    """
    Input of `end`: post-hoc reflection on the session.
    """
    model_config = ConfigDict(str_strip_whitespace=True)

    mood: Optional[str] = None
    notes: Optional[str] = None
    productivity: Optional[int] = Field(default=None, ge=1, le=5)


# --- response schemas ---

class SessionValidationRead(BaseModel):
    anomaly_score: float
    flags: List[str]
    is_valid: bool
    validated_at: Optional[datetime] = None


class SessionRead(BaseModel):
    id: str
    user_id: str
    group_id: Optional[str] = None
    start_time: datetime
    end_time: Optional[datetime] = None
    duration_seconds: Optional[int] = None
    # live elapsed seconds, only for active sessions; never persisted
    current_duration: Optional[int] = None
    status: SessionStatus
    study_subject: Optional[str] = None
    location: Optional[str] = None
    mood: Optional[str] = None
    notes: Optional[str] = None
    productivity: Optional[int] = None
    validation: Optional[SessionValidationRead] = None

    model_config = ConfigDict(from_attributes=True)


class SessionPage(BaseModel):
    items: List[SessionRead]
    page: int
    size: int
    total: int


def serialize_session(session: SessionInDB, now: Optional[datetime] = None) -> SessionRead:
    """
    SessionInDB -> SessionRead. `now` is needed only to fill
    `current_duration` on active sessions.
    """
    current_duration = None
    if session.status == SessionStatus.ACTIVE and now is not None:
        elapsed = ensure_aware_utc(now) - ensure_aware_utc(session.start_time)
        current_duration = max(0, int(elapsed.total_seconds()))

    validation = None
    if session.validation.validated_at is not None:
        validation = SessionValidationRead(
            anomaly_score=session.validation.anomaly_score,
            flags=list(session.validation.flags),
            is_valid=session.validation.server_validated,
            validated_at=session.validation.validated_at,
        )

    return SessionRead(
        id=session.id,
        user_id=session.user_id,
        group_id=session.group_id,
        start_time=session.start_time,
        end_time=session.end_time,
        duration_seconds=session.duration_seconds,
        current_duration=current_duration,
        status=session.status,
        study_subject=session.metadata.study_subject,
        location=session.metadata.location,
        mood=session.metadata.mood,
        notes=session.metadata.notes,
        productivity=session.metadata.productivity,
        validation=validation,
    )
