"""
MongoDB Database Connection using MongoEngine
Handles connection and disconnection to MongoDB
"""

import logging

from mongoengine import connect, disconnect

from ridehail.config import Settings

logger = logging.getLogger(__name__)


def connect_db(settings: Settings, **kwargs):
    """
    Connect to MongoDB using MongoEngine

    Args:
        settings: Provides MONGO_URI and MONGO_DB
        kwargs: Extra connect() options, e.g. mongo_client_class for tests
    """
    try:
        connection = connect(
            db=settings.mongo_db,
            host=settings.mongo_uri,
            alias="default",
            **kwargs,
        )
        logger.info(f"Connected to MongoDB database {settings.mongo_db}")
        return connection

    except Exception as e:
        logger.error(f"Failed to connect to MongoDB: {str(e)}")
        raise


def disconnect_db():
    """Disconnect from MongoDB"""
    try:
        disconnect(alias="default")
        logger.info("Disconnected from MongoDB")
    except Exception as e:
        logger.error(f"Error disconnecting from MongoDB: {str(e)}")
