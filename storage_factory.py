import logging
from typing import Optional

from pymongo.database import Database
from sqlalchemy.engine import Engine

from database import get_mongo_database, is_connected
from mongo_storage import MongoStorage
from sql_storage import SqlStorage
from storage import StorageInterface

logger = logging.getLogger(__name__)


def select_storage(mongo_db: Optional[Database] = None, engine: Optional[Engine] = None) -> StorageInterface:
    """Pick the backend once, at startup.

    MongoDB wins when it answers a ping; otherwise the relational store is
    used and its tables are created if missing. The caller keeps the returned
    object for the lifetime of the process.
    """
    if mongo_db is None:
        mongo_db = get_mongo_database()
    if is_connected(mongo_db):
        logger.info("Using MongoDB storage (%s)", mongo_db.name)
        storage = MongoStorage(mongo_db)
        storage.ensure_indexes()
        return storage
    storage = SqlStorage(engine)
    logger.info("Using SQL storage (%s)", storage.engine.url.render_as_string(hide_password=True))
    storage.create_tables()
    return storage
