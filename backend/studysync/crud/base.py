# backend/studysync/crud/base.py
"""
Contracts the services are written against. The Mongo/Redis adapters in
this package implement them; tests plug in in-memory fakes.
"""

import functools
from datetime import datetime
from typing import List, Optional, Protocol, Sequence, Tuple

from pymongo.errors import DuplicateKeyError, PyMongoError

from studysync.core.exceptions import StoreUnavailable
from studysync.core.logging import get_logger
from studysync.models.session import SessionInDB, SessionStatus
from studysync.models.user import UserInDB

logger = get_logger(__name__)


def store_errors(fn):
    """Surface driver failures as StoreUnavailable. DuplicateKeyError passes
    through for the caller to map."""

    @functools.wraps(fn)
    async def wrapper(*args, **kwargs):
        try:
            return await fn(*args, **kwargs)
        except DuplicateKeyError:
            raise
        except PyMongoError as e:
            logger.error(f"store failure in {fn.__qualname__}: {e}")
            raise StoreUnavailable(str(e)) from e

    return wrapper


class SessionStore(Protocol):
    async def ensure_indexes(self) -> None: ...

    async def insert_active(self, session: SessionInDB) -> SessionInDB:
        """
        Insert a new active session. Raises ActiveSessionExists when the
        user already has one, atomically with the insert.
        """

    async def transition(
        self,
        session: SessionInDB,
        expected_status: SessionStatus,
        expected_version: int,
    ) -> Optional[SessionInDB]:
        """
        Replace the stored session with `session` only if it is still in
        `expected_status` at `expected_version`. Returns the stored value
        (version bumped) or None when the compare-and-set lost.
        """

    async def find_by_id(self, session_id: str) -> Optional[SessionInDB]: ...

    async def find_active_by_user(self, user_id: str) -> Optional[SessionInDB]: ...

    async def find_completed_by_user_in_range(
        self, user_id: str, start: datetime, end: datetime
    ) -> List[SessionInDB]: ...

    async def find_completed_by_group_in_range(
        self, group_id: str, start: datetime, end: datetime
    ) -> List[SessionInDB]: ...

    async def find_all_stale_active(self, before: datetime) -> List[SessionInDB]: ...

    async def count_by_user_in_range(
        self,
        user_id: str,
        start: datetime,
        end: datetime,
        statuses: Sequence[SessionStatus] = (),
    ) -> int: ...

    async def find_by_user_order_by_start_desc(
        self,
        user_id: str,
        page: int,
        size: int,
        statuses: Sequence[SessionStatus] = (),
    ) -> Tuple[List[SessionInDB], int]: ...

    async def find_suspicious(self, threshold: float, limit: int = 100) -> List[SessionInDB]: ...


class UserStore(Protocol):
    async def find_by_id(self, user_id: str) -> Optional[UserInDB]: ...

    async def find_many(self, user_ids: Sequence[str]) -> List[UserInDB]: ...

    async def save(self, user: UserInDB, expected_version: int) -> Optional[UserInDB]:
        """Write `user` if the stored version still equals `expected_version`."""


class LeaderboardCache(Protocol):
    async def get(self, key: str) -> Optional[str]: ...

    async def set(self, key: str, value: str) -> None: ...

    async def generation(self, group_id: str) -> int: ...

    async def bump_generation(self, group_id: str) -> int: ...

    async def set_if_generation(self, key: str, value: str, group_id: str, expected: int) -> bool:
        """Write only if no invalidation of `group_id` happened since `expected` was read."""

    async def evict_prefix(self, prefix: str) -> int: ...
