"""MongoDB Client - Connection and Collection Management"""
from typing import Any, Dict, Optional
from pymongo import MongoClient as PyMongoClient
from pymongo.database import Database
from pymongo.collection import Collection
from pymongo import ASCENDING, DESCENDING
from pymongo.errors import ConnectionFailure, PyMongoError

from ..config.settings import settings
from ..utils.logger import get_logger

logger = get_logger(__name__)

# Global client instance
_client: Optional[PyMongoClient] = None
_database: Optional[Database] = None

# Collection names
WORKFLOWS = "workflows"
WORKFLOW_STAGES = "workflow_stages"
WORKFLOW_TRANSITIONS = "workflow_transitions"
APPLICATION_STATUSES = "application_statuses"
APPLICATION_LOCKS = "application_locks"
AUDIT_EVENTS = "audit_events"


def get_client() -> PyMongoClient:
    """Get or create MongoDB client"""
    global _client
    if _client is None:
        logger.info(f"Connecting to MongoDB: {settings.mongo_uri}")
        _client = PyMongoClient(
            settings.mongo_uri,
            serverSelectionTimeoutMS=5000,
            connectTimeoutMS=5000,
            socketTimeoutMS=30000,
            tz_aware=True,
        )
        # Test connection
        try:
            _client.admin.command("ping")
            logger.info("MongoDB connection successful")
        except ConnectionFailure as e:
            logger.error(f"MongoDB connection failed: {e}")
            raise
    return _client


def get_database() -> Database:
    """Get the workflow database"""
    global _database
    if _database is None:
        client = get_client()
        _database = client[settings.mongo_db]
        logger.info(f"Using database: {settings.mongo_db}")
    return _database


def resolve_database(database: Optional[Database] = None) -> Database:
    """Use an injected database when given, else the configured one"""
    return database if database is not None else get_database()


def get_collection(name: str, database: Optional[Database] = None) -> Collection:
    """Get a collection from the database"""
    return resolve_database(database)[name]


def close_connection() -> None:
    """Close MongoDB connection"""
    global _client, _database
    if _client is not None:
        _client.close()
        _client = None
        _database = None
        logger.info("MongoDB connection closed")


def create_indexes(database: Optional[Database] = None) -> None:
    """Create all required indexes"""
    db = resolve_database(database)
    logger.info("Creating MongoDB indexes...")

    # Workflows collection
    workflows = db[WORKFLOWS]
    workflows.create_index("workflow_id", unique=True)
    workflows.create_index([("application_type", ASCENDING), ("is_active", ASCENDING)])
    workflows.create_index("updated_at")
    # At most one active workflow per application type
    workflows.create_index(
        "application_type",
        name="one_active_workflow_per_type",
        unique=True,
        partialFilterExpression={"is_active": True},
    )

    # Stages collection
    stages = db[WORKFLOW_STAGES]
    stages.create_index("stage_id", unique=True)
    stages.create_index([("workflow_id", ASCENDING), ("sequence", ASCENDING)])

    # Transitions collection
    transitions = db[WORKFLOW_TRANSITIONS]
    transitions.create_index("transition_id", unique=True)
    transitions.create_index([("workflow_id", ASCENDING), ("source_stage_id", ASCENDING)])
    transitions.create_index("target_stage_id")
    transitions.create_index([("is_automatic", ASCENDING), ("workflow_id", ASCENDING)])

    # Application status history (append-only)
    statuses = db[APPLICATION_STATUSES]
    statuses.create_index("status_id", unique=True)
    # Two writers can never append the same ordinal for one application
    statuses.create_index(
        [("application_id", ASCENDING), ("sequence", DESCENDING)],
        name="application_sequence_unique",
        unique=True,
    )
    statuses.create_index([("workflow_id", ASCENDING), ("stage_id", ASCENDING)])
    statuses.create_index("stage_id")

    # Per-application transition locks
    locks = db[APPLICATION_LOCKS]
    locks.create_index("application_id", unique=True)
    locks.create_index("locked_until")

    # Audit events collection
    audit_events = db[AUDIT_EVENTS]
    audit_events.create_index("audit_event_id", unique=True)
    audit_events.create_index([("application_id", ASCENDING), ("timestamp", DESCENDING)])
    audit_events.create_index([("workflow_id", ASCENDING), ("timestamp", DESCENDING)])
    audit_events.create_index("correlation_id")

    logger.info("MongoDB indexes created successfully")


def health_check(database: Optional[Database] = None) -> Dict[str, Any]:
    """Check MongoDB health"""
    try:
        db = resolve_database(database)
        db.command("ping")
        return {
            "status": "healthy",
            "database": db.name,
            "connection": "ok"
        }
    except PyMongoError as e:
        logger.error(f"MongoDB health check failed: {e}")
        return {
            "status": "unhealthy",
            "database": settings.mongo_db,
            "error": str(e)
        }
