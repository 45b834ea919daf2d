# backend/studysync/models/session.py

from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field


class SessionStatus(str, Enum):
    ACTIVE = "active"
    COMPLETED = "completed"
    INVALID = "invalid"
    SUSPICIOUS = "suspicious"


# statuses that count toward a user's study analytics
COUNTED_STATUSES = (SessionStatus.COMPLETED, SessionStatus.SUSPICIOUS)
TERMINAL_STATUSES = (SessionStatus.COMPLETED, SessionStatus.SUSPICIOUS, SessionStatus.INVALID)


class _Frozen(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)


class SessionSource(_Frozen):
    platform: str = "mobile"
    app_version: Optional[str] = None
    device_id: Optional[str] = None  # opaque, fingerprint matching happens elsewhere


class ValidationRules(_Frozen):
    """Informational rule checks. None of them is fatal on its own."""

    max_duration: bool = True
    reasonable_hours: bool = True
    device_consistent: bool = True
    timezone_match: bool = True
    no_overlap: bool = True


class SessionValidation(_Frozen):
    server_validated: bool = False
    anomaly_score: float = 0.0
    flags: List[str] = Field(default_factory=list)
    rules: ValidationRules = Field(default_factory=ValidationRules)
    validated_at: Optional[datetime] = None


class SessionMetadata(_Frozen):
    study_subject: Optional[str] = None
    location: Optional[str] = None
    # post-hoc, set at end
    mood: Optional[str] = None
    notes: Optional[str] = None
    productivity: Optional[int] = Field(default=None, ge=1, le=5)


class SessionInDB(_Frozen):
    """
    A document of the `sessions` collection.

    Values are never edited in place: the lifecycle manager builds the next
    state with `model_copy(update=...)` and hands it to the store's
    conditional transition, which bumps `version`.
    """

    id: str = Field(..., alias="_id")
    user_id: str
    group_id: Optional[str] = None

    start_time: datetime
    end_time: Optional[datetime] = None
    duration_seconds: Optional[int] = None

    status: SessionStatus = SessionStatus.ACTIVE
    source: SessionSource = Field(default_factory=SessionSource)
    validation: SessionValidation = Field(default_factory=SessionValidation)
    metadata: SessionMetadata = Field(default_factory=SessionMetadata)

    version: int = 0
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def to_document(self) -> dict:
        doc = self.model_dump(by_alias=True, mode="python")
        doc["status"] = SessionStatus(self.status).value
        return doc
