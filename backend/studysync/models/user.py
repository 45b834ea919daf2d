# backend/studysync/models/user.py

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field


class DeviceFingerprint(BaseModel):
    device_id: str
    last_seen: Optional[datetime] = None
    is_active: bool = True


class UserAnalytics(BaseModel):
    """Rolling study aggregates, rewritten once per counted session."""

    total_study_time: int = 0  # seconds
    average_session_duration: int = 0  # seconds
    current_streak: int = 0
    longest_streak: int = 0
    # bucket labels such as "00:00-03:00"
    preferred_study_times: List[str] = Field(default_factory=list)
    last_activity_date: Optional[datetime] = None

    model_config = ConfigDict(frozen=True)


class UserInDB(BaseModel):
    """
    The slice of a `users` document this engine reads and writes.
    Identity, credentials and group membership are owned elsewhere.
    """

    id: str = Field(..., alias="_id")
    display_name: str = ""
    avatar_url: Optional[str] = None
    timezone: Optional[str] = None

    device_fingerprints: List[DeviceFingerprint] = Field(default_factory=list)
    analytics: UserAnalytics = Field(default_factory=UserAnalytics)

    # optimistic concurrency token
    version: int = 0

    model_config = ConfigDict(
        frozen=True,
        populate_by_name=True,
        from_attributes=True,
    )

    @property
    def known_device_ids(self) -> List[str]:
        return [fp.device_id for fp in self.device_fingerprints if fp.device_id]
