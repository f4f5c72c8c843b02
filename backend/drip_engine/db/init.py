import logging
from motor.motor_asyncio import AsyncIOMotorClient
from beanie import init_beanie

from drip_engine import config
from drip_engine.models.campaign import DripCampaign
from drip_engine.models.journey import LeadJourney
from drip_engine.models.message import Message
from drip_engine.models.journey_journal import JourneyJournal
from drip_engine.models.delivery_event import DeliveryEvent

DOCUMENT_MODELS = [DripCampaign, LeadJourney, Message, JourneyJournal, DeliveryEvent]

logger = logging.getLogger(__name__)

_client = None


def get_database():
    if _client is None:
        raise RuntimeError("Database not initialised; call init_db() first")
    return _client[config.MONGO_DB_NAME]


async def init_db(database=None):
    """
    Connect to MongoDB and register the Beanie documents.
    Tests pass their own (mock) database instead of connecting.
    """
    global _client
    try:
        if database is None:
            logger.info("Initializing database connection...")
            close_db()
            _client = AsyncIOMotorClient(config.MONGO_URI)

            # Test the connection
            await _client.admin.command('ping')
            logger.info("MongoDB connection test successful.")
            database = _client[config.MONGO_DB_NAME]

        await init_beanie(database=database, document_models=DOCUMENT_MODELS)
        logger.info("MongoDB connection established and Beanie initialized.")
    except Exception as e:
        logger.error(f"Database initialization failed: {e}", exc_info=True)
        raise


def close_db():
    """Close the current client, releasing its pool and monitor threads."""
    global _client
    if _client is not None:
        _client.close()
        _client = None
        logger.info("MongoDB connection closed.")
