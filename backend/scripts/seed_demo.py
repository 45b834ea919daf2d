import asyncio
from datetime import datetime, timedelta, timezone

from studysync.core.config import settings
from studysync.core.logging import get_logger, setup_logging
from studysync.db.mongo import close_mongo_connection, connect_to_mongo, get_db
from studysync.schemas.session import SessionEndRequest, SessionStartRequest
from studysync.services.container import build_default_services

logger = get_logger("seed_demo")

DEMO_GROUP_ID = "demo_group"
DEMO_USERS = [
    {"_id": "demo_user_1", "display_name": "Aisha", "device": "demo-phone-1"},
    {"_id": "demo_user_2", "display_name": "Adam", "device": "demo-phone-2"},
    {"_id": "demo_user_3", "display_name": "Zoe", "device": "demo-phone-3"},
]
# (user index, hours ago, minutes studied)
DEMO_SESSIONS = [
    (0, 30, 50),
    (0, 20, 95),
    (1, 26, 40),
    (1, 5, 70),
    (2, 3, 25),
]


class ShiftedClock:
    """Wall clock moved into the past so seeded sessions land earlier this week."""

    def __init__(self):
        self.offset = timedelta(0)

    def now(self) -> datetime:
        return datetime.now(timezone.utc) - self.offset


async def seed():
    await connect_to_mongo()
    db = get_db()

    for user in DEMO_USERS:
        await db["users"].update_one(
            {"_id": user["_id"]},
            {
                "$setOnInsert": {
                    "display_name": user["display_name"],
                    "device_fingerprints": [{"device_id": user["device"], "is_active": True}],
                    "version": 0,
                }
            },
            upsert=True,
        )

    services = build_default_services()
    await services.session_store.ensure_indexes()

    clock = ShiftedClock()
    # re-point every component at the shifted clock
    for component in (
        services.sessions,
        services.scorer,
        services.analytics,
        services.leaderboard,
        services.session_store,
    ):
        component.clock = clock

    for user_index, hours_ago, minutes in DEMO_SESSIONS:
        user = DEMO_USERS[user_index]
        clock.offset = timedelta(hours=hours_ago)
        await services.sessions.start(
            user["_id"],
            SessionStartRequest(group_id=DEMO_GROUP_ID, study_subject="demo", device_id=user["device"]),
        )
        clock.offset = timedelta(hours=hours_ago) - timedelta(minutes=minutes, seconds=7)
        finished = await services.sessions.end(user["_id"], SessionEndRequest(productivity=4))
        logger.info(f"seeded {finished.id} for {user['_id']}: {finished.status.value}")

    board = await services.leaderboard.get_weekly_leaderboard(DEMO_GROUP_ID)
    for entry in board.entries:
        logger.info(f"#{entry.rank} {entry.display_name}: {entry.total_seconds}s")

    await close_mongo_connection()


if __name__ == "__main__":
    setup_logging(settings.LOG_LEVEL, "text")
    asyncio.run(seed())
