# backend/studysync/crud/users.py

from typing import Any, Dict, List, Optional, Sequence, Union

from bson import ObjectId
from bson.errors import InvalidId
from motor.motor_asyncio import AsyncIOMotorCollection

from studysync.core.logging import get_logger
from studysync.crud.base import store_errors
from studysync.db.mongo import get_db
from studysync.models.user import UserInDB

logger = get_logger(__name__)


def get_users_collection() -> AsyncIOMotorCollection:
    """
    The users collection; connect_to_mongo() must have run first.
    """
    return get_db()["users"]


def _safe_object_id(user_id: Union[str, ObjectId]) -> Optional[ObjectId]:
    if isinstance(user_id, ObjectId):
        return user_id
    try:
        return ObjectId(user_id)
    except (InvalidId, TypeError):
        return None


def _id_filter(user_id: Union[str, ObjectId]) -> Dict[str, Any]:
    """
    users._id may be an ObjectId or a plain string depending on who created
    the account; match both when the value parses as an ObjectId.
    """
    if isinstance(user_id, str):
        user_id = user_id.strip()

    oid = _safe_object_id(user_id)
    if isinstance(user_id, str) and oid is not None:
        return {"$or": [{"_id": oid}, {"_id": user_id}]}
    if oid is not None:
        return {"_id": oid}
    return {"_id": user_id}


def serialize_user(doc) -> UserInDB:
    doc = dict(doc)
    doc["_id"] = str(doc["_id"])
    return UserInDB.model_validate(doc)


class MongoUserStore:
    """UserStore on the `users` collection."""

    def __init__(self, collection: Optional[AsyncIOMotorCollection] = None):
        self._collection = collection

    @property
    def col(self) -> AsyncIOMotorCollection:
        return self._collection if self._collection is not None else get_users_collection()

    @store_errors
    async def find_by_id(self, user_id: str) -> Optional[UserInDB]:
        doc = await self.col.find_one(_id_filter(user_id))
        return serialize_user(doc) if doc else None

    @store_errors
    async def find_many(self, user_ids: Sequence[str]) -> List[UserInDB]:
        if not user_ids:
            return []
        ids: List[Any] = []
        for uid in user_ids:
            ids.append(uid)
            oid = _safe_object_id(uid)
            if oid is not None:
                ids.append(oid)
        docs = await self.col.find({"_id": {"$in": ids}}).to_list(length=len(ids))
        return [serialize_user(d) for d in docs]

    @store_errors
    async def save(self, user: UserInDB, expected_version: int) -> Optional[UserInDB]:
        """
        Only `analytics` and `version` are written; identity fields belong to
        the account service.
        """
        # documents created before versioning have no `version` field
        version_filter: Dict[str, Any] = (
            {"$or": [{"version": 0}, {"version": {"$exists": False}}]}
            if expected_version == 0
            else {"version": expected_version}
        )
        query = {"$and": [_id_filter(user.id), version_filter]}

        result = await self.col.update_one(
            query,
            {
                "$set": {
                    "analytics": user.analytics.model_dump(mode="python"),
                    "version": expected_version + 1,
                }
            },
        )
        if result.matched_count == 0:
            logger.debug("user save lost version check", extra={"user_id": user.id})
            return None
        return user.model_copy(update={"version": expected_version + 1})
