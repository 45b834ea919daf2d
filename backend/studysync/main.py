# main.py
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from studysync.api import health
from studysync.core.config import settings
from studysync.core.exceptions import StudySyncError
from studysync.core.logging import get_logger, setup_logging
from studysync.db.mongo import close_mongo_connection, connect_to_mongo
from studysync.db.redis import close_redis_connection, connect_to_redis
from studysync.services.container import build_default_services

load_dotenv()
setup_logging(settings.LOG_LEVEL, "json" if settings.is_production else settings.LOG_FORMAT)
logger = get_logger(__name__)


# [lifecycle] stores, services and the stale-session sweeper
@asynccontextmanager
async def lifespan(app: FastAPI):
    await connect_to_mongo()
    redis_client = await connect_to_redis()

    services = build_default_services(redis_client)
    await services.session_store.ensure_indexes()
    services.sweeper.start()
    app.state.services = services
    logger.info(f"StudySync started in {settings.ENVIRONMENT} mode")

    yield

    await services.sweeper.stop()
    await close_redis_connection()
    await close_mongo_connection()


app = FastAPI(title="StudySync Session Engine", lifespan=lifespan)


@app.exception_handler(StudySyncError)
async def studysync_error_handler(request: Request, exc: StudySyncError):
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": type(exc).__name__, "detail": exc.message},
    )


@app.get("/")
async def read_root():
    return {"message": "StudySync session engine is running!"}


app.include_router(health.router)
