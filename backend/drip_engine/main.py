import logging
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager
from datetime import datetime, timezone

from drip_engine import config
from drip_engine.db.init import close_db, init_db, get_database
from drip_engine.api.journeys import router as journeys_router
from drip_engine.api.webhooks import router as webhooks_router

logging.basicConfig(
    level=config.LOG_LEVEL,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("=== APPLICATION STARTUP ===")
    try:
        await init_db()
        logger.info("Database initialized successfully")
    except Exception as e:
        logger.error(f"Database initialization failed: {e}", exc_info=True)
        raise
    logger.info("Message processing runs in the Celery worker (beat schedule).")
    logger.info("API endpoints available:")
    logger.info("  - /api/journeys: Lead-captured trigger and journey inspection")
    logger.info("  - /api/webhooks/{provider}: Provider delivery callbacks")
    logger.info("=== APPLICATION STARTUP COMPLETE ===")

    yield

    logger.info("=== APPLICATION SHUTDOWN ===")
    close_db()


app = FastAPI(title="Drip Engine", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.get("/")
async def root():
    return {"message": "Drip Engine API"}


@app.get("/health")
async def health_check():
    try:
        await get_database().command("ping")
        db_status = "healthy"
    except Exception as e:
        db_status = f"unhealthy: {str(e)}"

    return {
        "status": "healthy" if db_status == "healthy" else "degraded",
        "database": db_status,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


app.include_router(journeys_router, prefix="/api", tags=["journeys"])
app.include_router(webhooks_router, prefix="/api", tags=["webhooks"])
