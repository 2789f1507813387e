"""
Connections for both backing stores.

MongoDB is reached through pymongo (``DATABASE_URL`` / ``DATABASE_NAME``),
the relational store through SQLAlchemy (``SQL_DATABASE_URL``).
"""
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel
from pymongo import MongoClient
from pymongo.database import Database
from pymongo.errors import PyMongoError
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

import config

logger = logging.getLogger(__name__)

Base = declarative_base()


# MongoDB

def get_mongo_database(url: Optional[str] = None, name: Optional[str] = None) -> Optional[Database]:
    url = url or config.DATABASE_URL
    name = name or config.DATABASE_NAME
    if not url or not name:
        return None
    client = MongoClient(url, serverSelectionTimeoutMS=config.MONGO_TIMEOUT_MS, tz_aware=True)
    return client[name]


def is_connected(db: Optional[Database]) -> bool:
    if db is None:
        return False
    try:
        db.client.admin.command("ping")
        return True
    except PyMongoError as e:
        logger.warning("MongoDB ping failed: %s", e)
        return False


def create_document(db: Database, collection_name: str, data: Union[BaseModel, Dict[str, Any]]) -> str:
    if isinstance(data, BaseModel):
        data_dict = data.model_dump()
    else:
        data_dict = dict(data)
    now = datetime.now(timezone.utc)
    data_dict.setdefault("created_at", now)
    data_dict["updated_at"] = now
    result = db[collection_name].insert_one(data_dict)
    return str(result.inserted_id)


def get_documents(db: Database, collection_name: str, filter_dict: Optional[Dict[str, Any]] = None,
                  sort: Optional[List[tuple]] = None, limit: Optional[int] = None) -> List[Dict[str, Any]]:
    cursor = db[collection_name].find(filter_dict or {})
    if sort:
        cursor = cursor.sort(sort)
    if limit:
        cursor = cursor.limit(limit)
    return list(cursor)


# Relational

def make_engine(url: Optional[str] = None) -> Engine:
    url = url or config.SQL_DATABASE_URL
    kwargs: Dict[str, Any] = {}
    if url.startswith("sqlite"):
        kwargs["connect_args"] = {"check_same_thread": False}
        if url in ("sqlite://", "sqlite:///:memory:"):
            # one shared connection, otherwise every checkout sees an empty database
            kwargs["poolclass"] = StaticPool
    return create_engine(url, **kwargs)


def make_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
