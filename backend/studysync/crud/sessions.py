# backend/studysync/crud/sessions.py

from datetime import datetime
from typing import List, Optional, Sequence, Tuple

from motor.motor_asyncio import AsyncIOMotorCollection
from pymongo import ASCENDING, DESCENDING, ReturnDocument
from pymongo.errors import DuplicateKeyError

from studysync.core.clock import Clock, SystemClock
from studysync.core.exceptions import ActiveSessionExists
from studysync.crud.base import store_errors
from studysync.db.mongo import get_db
from studysync.models.session import SessionInDB, SessionStatus

ONE_ACTIVE_PER_USER_INDEX = "one_active_per_user"


def get_sessions_collection() -> AsyncIOMotorCollection:
    """
    The sessions collection from the Motor handle set up by connect_to_mongo().
    """
    return get_db()["sessions"]


def serialize_session(doc) -> SessionInDB:
    """
    Mongo document(dict) -> SessionInDB
    """
    return SessionInDB.model_validate(doc)


def _status_filter(statuses: Sequence[SessionStatus]) -> dict:
    if not statuses:
        return {}
    return {"status": {"$in": [SessionStatus(s).value for s in statuses]}}


class MongoSessionStore:
    """SessionStore on the `sessions` collection."""

    def __init__(self, collection: Optional[AsyncIOMotorCollection] = None, clock: Optional[Clock] = None):
        self._collection = collection
        self.clock = clock or SystemClock()

    @property
    def col(self) -> AsyncIOMotorCollection:
        return self._collection if self._collection is not None else get_sessions_collection()

    @store_errors
    async def ensure_indexes(self) -> None:
        # the partial unique index is what makes "at most one active session
        # per user" hold under concurrent starts
        await self.col.create_index(
            [("user_id", ASCENDING)],
            name=ONE_ACTIVE_PER_USER_INDEX,
            unique=True,
            partialFilterExpression={"status": SessionStatus.ACTIVE.value},
        )
        await self.col.create_index([("user_id", ASCENDING), ("start_time", DESCENDING)], name="user_start_idx")
        await self.col.create_index([("group_id", ASCENDING), ("start_time", DESCENDING)], name="group_start_idx")
        await self.col.create_index([("status", ASCENDING), ("start_time", ASCENDING)], name="status_start_idx")

    # CREATE (START)
    @store_errors
    async def insert_active(self, session: SessionInDB) -> SessionInDB:
        now = self.clock.now()
        session = session.model_copy(
            update={"status": SessionStatus.ACTIVE, "version": 0, "created_at": now, "updated_at": now}
        )
        try:
            await self.col.insert_one(session.to_document())
        except DuplicateKeyError as e:
            raise ActiveSessionExists() from e
        return session

    # CONDITIONAL UPDATE (END / FORCED CLOSE)
    @store_errors
    async def transition(
        self,
        session: SessionInDB,
        expected_status: SessionStatus,
        expected_version: int,
    ) -> Optional[SessionInDB]:
        doc = session.model_copy(
            update={"version": expected_version + 1, "updated_at": self.clock.now()}
        ).to_document()
        doc.pop("_id")

        updated = await self.col.find_one_and_update(
            {
                "_id": session.id,
                "status": SessionStatus(expected_status).value,
                "version": expected_version,
            },
            {"$set": doc},
            return_document=ReturnDocument.AFTER,
        )
        if updated is None:
            return None
        return serialize_session(updated)

    # READ ONE
    @store_errors
    async def find_by_id(self, session_id: str) -> Optional[SessionInDB]:
        if isinstance(session_id, str):
            session_id = session_id.strip()
        doc = await self.col.find_one({"_id": session_id})
        return serialize_session(doc) if doc else None

    # READ CURRENT (the one active session)
    @store_errors
    async def find_active_by_user(self, user_id: str) -> Optional[SessionInDB]:
        doc = await self.col.find_one(
            {"user_id": user_id, "status": SessionStatus.ACTIVE.value},
            sort=[("start_time", DESCENDING)],
        )
        return serialize_session(doc) if doc else None

    @store_errors
    async def find_completed_by_user_in_range(
        self, user_id: str, start: datetime, end: datetime
    ) -> List[SessionInDB]:
        cursor = self.col.find(
            {
                "user_id": user_id,
                "status": SessionStatus.COMPLETED.value,
                "start_time": {"$gte": start, "$lt": end},
            }
        ).sort("start_time", DESCENDING)
        return [serialize_session(d) async for d in cursor]

    @store_errors
    async def find_completed_by_group_in_range(
        self, group_id: str, start: datetime, end: datetime
    ) -> List[SessionInDB]:
        cursor = self.col.find(
            {
                "group_id": group_id,
                "status": SessionStatus.COMPLETED.value,
                "start_time": {"$gte": start, "$lt": end},
            }
        ).sort("start_time", ASCENDING)
        return [serialize_session(d) async for d in cursor]

    @store_errors
    async def find_all_stale_active(self, before: datetime) -> List[SessionInDB]:
        # inclusive: a session exactly at the threshold is stale
        cursor = self.col.find(
            {"status": SessionStatus.ACTIVE.value, "start_time": {"$lte": before}}
        ).sort("start_time", ASCENDING)
        return [serialize_session(d) async for d in cursor]

    @store_errors
    async def count_by_user_in_range(
        self,
        user_id: str,
        start: datetime,
        end: datetime,
        statuses: Sequence[SessionStatus] = (),
    ) -> int:
        query = {"user_id": user_id, "start_time": {"$gte": start, "$lt": end}}
        query.update(_status_filter(statuses))
        return await self.col.count_documents(query)

    # READ PAGE (per user)
    @store_errors
    async def find_by_user_order_by_start_desc(
        self,
        user_id: str,
        page: int,
        size: int,
        statuses: Sequence[SessionStatus] = (),
    ) -> Tuple[List[SessionInDB], int]:
        query = {"user_id": user_id}
        query.update(_status_filter(statuses))

        safe_size = max(1, min(size, 100))
        safe_page = max(0, page)

        total = await self.col.count_documents(query)
        cursor = (
            self.col.find(query)
            .sort("start_time", DESCENDING)
            .skip(safe_page * safe_size)
            .limit(safe_size)
        )
        docs = await cursor.to_list(length=safe_size)
        return [serialize_session(d) for d in docs], total

    @store_errors
    async def find_suspicious(self, threshold: float, limit: int = 100) -> List[SessionInDB]:
        safe_limit = max(1, min(limit, 1000))
        cursor = (
            self.col.find({"validation.anomaly_score": {"$gte": threshold}})
            .sort("start_time", DESCENDING)
            .limit(safe_limit)
        )
        docs = await cursor.to_list(length=safe_limit)
        return [serialize_session(d) for d in docs]
