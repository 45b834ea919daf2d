# backend/studysync/api/health.py

from fastapi import APIRouter, Request

from studysync.db import redis as redis_db
from studysync.db.mongo import get_db

router = APIRouter(tags=["Health"])


@router.get("/health")
async def health_check(request: Request):
    """
    Liveness plus backing store reachability, for load balancers and probes.
    Redis being absent is fine (in-process cache); Mongo being down is not.
    """
    mongo_ok = False
    mongo_error = None

    try:
        await get_db().command("ping")
        mongo_ok = True
    except Exception as e:
        mongo_error = str(e)

    redis_client = redis_db.get_redis()
    redis_ok = None
    if redis_client is not None:
        try:
            redis_ok = bool(await redis_client.ping())
        except Exception:
            redis_ok = False

    services = getattr(request.app.state, "services", None)
    sweeper_running = bool(services and services.sweeper.running)

    return {
        "status": "ok" if mongo_ok else "degraded",
        "mongo": mongo_ok,
        "mongo_error": mongo_error,
        "redis": redis_ok,
        "sweeper": sweeper_running,
    }
